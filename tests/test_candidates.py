import json
from pathlib import Path
from types import SimpleNamespace

from livepreview.candidates import (
    CONFIGURED_MIN_SCORE,
    ROOT_FALLBACK_SCORE,
    ScriptFlags,
    list_candidates,
    normalize_relative_dir,
    resolve_app_dir,
    score_directory,
)


def _package(directory: Path, scripts=None, dependencies=None) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    data = {"name": directory.name, "scripts": scripts or {}}
    if dependencies:
        data["dependencies"] = dependencies
    (directory / "package.json").write_text(json.dumps(data))
    return directory


def test_empty_workspace_falls_back_to_root(tmp_path):
    candidates = list_candidates(tmp_path)
    assert len(candidates) == 1
    assert candidates[0].source == "root-fallback"
    assert candidates[0].app_dir_relative == "."
    assert candidates[0].score == ROOT_FALLBACK_SCORE


def test_frontend_directory_outranks_backend(tmp_path):
    _package(tmp_path / "backend", {"start": "node server.js", "build": "tsc"})
    _package(tmp_path / "frontend", {"build": "vite build", "dev": "vite"}, {"react": "^18"})

    candidates = list_candidates(tmp_path)
    assert [c.app_dir_relative for c in candidates] == ["frontend", "backend"]
    assert candidates[0].framework_hint == "frontend"
    assert candidates[0].scripts == ScriptFlags(build=True, dev=True, start=False)


def test_nested_apps_are_found(tmp_path):
    _package(tmp_path / "apps" / "web", {"build": "next build", "start": "next start"}, {"next": "14"})
    found = resolve_app_dir(tmp_path)
    assert found.app_dir_relative == "apps/web"
    assert found.source == "scan"


def test_manifest_without_scripts_is_skipped(tmp_path):
    _package(tmp_path / "docs", {})
    _package(tmp_path, {"build": "vite build"})
    assert [c.app_dir_relative for c in list_candidates(tmp_path)] == ["."]


def test_configured_directory_ranks_first(tmp_path):
    _package(tmp_path / "frontend", {"build": "vite build"}, {"vite": "5"})
    _package(tmp_path / "tools" / "demo", {"dev": "vite"})
    config = SimpleNamespace(app_directory="./tools/demo/")

    candidates = list_candidates(tmp_path, config)
    assert candidates[0].app_dir_relative == "tools/demo"
    assert candidates[0].source == "config"
    assert candidates[0].score >= CONFIGURED_MIN_SCORE
    assert candidates[1].app_dir_relative == "frontend"


def test_configured_directory_without_manifest_is_ignored(tmp_path):
    _package(tmp_path, {"build": "vite build"})
    candidates = list_candidates(tmp_path, SimpleNamespace(app_directory="missing"))
    assert candidates[0].source == "scan"


def test_max_candidates_limits_output(tmp_path):
    for name in ("web", "client", "app", "frontend"):
        _package(tmp_path / name, {"build": "vite build"})
    assert len(list_candidates(tmp_path, max_candidates=2)) == 2


def test_score_directory():
    assert score_directory(".", ScriptFlags(), None) is None
    assert score_directory("frontend", ScriptFlags(build=True), None) > score_directory(
        "misc", ScriptFlags(build=True), None
    )
    assert score_directory("api", ScriptFlags(start=True), None) < 0


def test_normalize_relative_dir():
    assert normalize_relative_dir("./apps/web/") == "apps/web"
    assert normalize_relative_dir("apps\\web") == "apps/web"
    assert normalize_relative_dir(".") is None
    assert normalize_relative_dir("../outside") is None
    assert normalize_relative_dir(42) is None
