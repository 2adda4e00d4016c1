import json
from types import SimpleNamespace

from livepreview.backend_scan import detect_backend_usage
from livepreview.env_resolver import (
    MODE_AUTO_DETECTED,
    MODE_AUTO_DISABLED,
    MODE_FORCED_OFF,
    MODE_FORCED_ON,
    PLACEHOLDER_VALUES,
    parse_env_file,
    read_dev_env,
    resolve_start_env,
    sanitize_preview_env,
)


def _config(root, **kwargs):
    base = {"preview_env": {}, "inject_placeholders": None, "workspace_root": root}
    base.update(kwargs)
    return SimpleNamespace(**base)


def test_sanitize_preview_env():
    assert sanitize_preview_env({"OK_1": "a", "1BAD": "b", "X": 1}) == {"OK_1": "a"}
    assert sanitize_preview_env(["not", "a", "dict"]) == {}


def test_parse_env_file_without_interpolation(tmp_path):
    (tmp_path / ".env").write_text("A=1\nB=${A}\n# comment\nexport C='quoted value'\n")
    assert parse_env_file(tmp_path / ".env") == {"A": "1", "B": "${A}", "C": "quoted value"}
    assert parse_env_file(tmp_path / "missing.env") == {}


def test_later_dev_env_files_win(tmp_path):
    (tmp_path / ".env").write_text("MODE=base\nKEEP=1\n")
    (tmp_path / ".env.development.local").write_text("MODE=local\n")
    assert read_dev_env(tmp_path) == {"MODE": "local", "KEEP": "1"}


def test_backend_detected_from_dependency(tmp_path):
    (tmp_path / "package.json").write_text(json.dumps({"dependencies": {"@supabase/supabase-js": "2"}}))
    assert detect_backend_usage(tmp_path) is True


def test_backend_detected_from_source(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "client.ts").write_text("import { createClient } from './lib'\n")
    assert detect_backend_usage(tmp_path) is True


def test_backend_scan_skips_node_modules(tmp_path):
    hidden = tmp_path / "node_modules" / "pkg"
    hidden.mkdir(parents=True)
    (hidden / "index.js").write_text("createClient()")
    (tmp_path / "main.js").write_text("console.log('hello')")
    assert detect_backend_usage(tmp_path) is False


def test_placeholders_injected_when_backend_detected(tmp_path):
    (tmp_path / "package.json").write_text(json.dumps({"dependencies": {"@supabase/supabase-js": "2"}}))
    result = resolve_start_env(tmp_path, _config(tmp_path), environ={})
    assert result.placeholder_mode == MODE_AUTO_DETECTED
    assert result.backend_detected is True
    assert sorted(result.injected_keys) == sorted(PLACEHOLDER_VALUES)
    for key, value in PLACEHOLDER_VALUES.items():
        assert result.env[key] == value


def test_defined_values_are_never_overwritten(tmp_path):
    (tmp_path / ".env").write_text("VITE_SUPABASE_URL=https://real.supabase.co\n")
    config = _config(tmp_path, inject_placeholders=True, preview_env={"VITE_SUPABASE_ANON_KEY": "declared"})
    result = resolve_start_env(tmp_path, config, environ={})
    assert result.placeholder_mode == MODE_FORCED_ON
    assert result.injected_keys == []
    assert result.env["VITE_SUPABASE_URL"] == "https://real.supabase.co"
    assert result.env["VITE_SUPABASE_ANON_KEY"] == "declared"


def test_process_env_blocks_injection(tmp_path):
    config = _config(tmp_path, inject_placeholders=True)
    result = resolve_start_env(tmp_path, config, environ={"VITE_SUPABASE_URL": "from-process"})
    assert result.injected_keys == ["VITE_SUPABASE_ANON_KEY"]
    assert "VITE_SUPABASE_URL" not in result.env


def test_forced_off_skips_detection_result(tmp_path):
    (tmp_path / "package.json").write_text(json.dumps({"dependencies": {"@supabase/supabase-js": "2"}}))
    result = resolve_start_env(tmp_path, _config(tmp_path, inject_placeholders=False), environ={})
    assert result.placeholder_mode == MODE_FORCED_OFF
    assert result.injected_keys == []


def test_no_backend_no_injection(tmp_path):
    result = resolve_start_env(tmp_path, _config(tmp_path), environ={})
    assert result.placeholder_mode == MODE_AUTO_DISABLED
    assert result.env == {}


def test_app_env_files_layer_over_root(tmp_path):
    app = tmp_path / "web"
    app.mkdir()
    (tmp_path / ".env").write_text("SHARED=root\nROOT_ONLY=1\n")
    (app / ".env").write_text("SHARED=app\n")
    config = _config(tmp_path, preview_env={"DECLARED": "yes"})
    result = resolve_start_env(app, config, environ={})
    assert result.env == {"SHARED": "app", "ROOT_ONLY": "1", "DECLARED": "yes"}
