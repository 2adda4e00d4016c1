import json

from click.testing import CliRunner

from livepreview.cli import cli

SECRET = "s3cr3t-value-that-is-long-enough-0123456789"


def _app(tmp_path, scripts=None, config=None):
    package = {"name": "demo", "scripts": scripts or {"build": "vite build", "dev": "vite"}}
    (tmp_path / "package.json").write_text(json.dumps(package))
    if config is not None:
        (tmp_path / "visudev.config.json").write_text(json.dumps(config))
    return tmp_path


class TestCheckCommand:
    def test_accepts_allowed_command(self):
        result = CliRunner().invoke(cli, ["check-command", "npm ci && npm run build"])
        assert result.exit_code == 0
        assert "Accepted" in result.output
        assert "--ignore-scripts" in result.output

    def test_rejects_chained_shell(self):
        result = CliRunner().invoke(cli, ["check-command", "npm run build; rm -rf /"])
        assert result.exit_code == 1
        assert "Rejected" in result.output


class TestInspection:
    def test_candidates_lists_root_app(self, tmp_path):
        _app(tmp_path)
        result = CliRunner().invoke(cli, ["candidates", str(tmp_path)])
        assert result.exit_code == 0
        assert "scan" in result.output

    def test_config_prints_resolved_commands(self, tmp_path):
        _app(tmp_path, config={"startCommand": "npm run start", "port": 5173})
        result = CliRunner().invoke(cli, ["config", str(tmp_path)])
        assert result.exit_code == 0
        assert "npm run start" in result.output
        assert "5173" in result.output

    def test_env_redacts_secrets(self, tmp_path):
        _app(tmp_path)
        (tmp_path / ".env").write_text(f"API_TOKEN={SECRET}\nPUBLIC_TITLE=demo\n")
        result = CliRunner().invoke(cli, ["env", str(tmp_path), "--inject"])
        assert result.exit_code == 0
        assert "API_TOKEN" in result.output
        assert SECRET not in result.output
        assert "forced_on" in result.output

    def test_missing_directory_is_usage_error(self, tmp_path):
        result = CliRunner().invoke(cli, ["config", str(tmp_path / "nope")])
        assert result.exit_code == 2
