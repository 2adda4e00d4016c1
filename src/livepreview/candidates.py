"""Discovery of the application root inside a (possibly monorepo) checkout."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .runner_helpers import warn_non_fatal

logger = logging.getLogger(__name__)

APP_DIR_HINTS = [
    "frontend",
    "client",
    "web",
    "app",
    "apps/web",
    "apps/frontend",
    "packages/web",
    "packages/frontend",
]

BACKEND_DIR_HINTS = [
    "backend",
    "server",
    "api",
    "services",
    "workers",
    "supabase",
    "functions",
    "deployment",
    "infra",
]

FRONTEND_DEPENDENCIES = {"react", "next", "vite", "vue", "nuxt", "svelte", "@angular/core", "react-router"}

NESTED_APP_ROOTS = ("apps", "packages")

CONFIGURED_MIN_SCORE = 9_999
ROOT_FALLBACK_SCORE = -10_000
DEFAULT_MAX_CANDIDATES = 10


@dataclass
class ScriptFlags:
    build: bool = False
    dev: bool = False
    start: bool = False

    @property
    def any(self) -> bool:
        return self.build or self.dev or self.start

    def labels(self) -> List[str]:
        return [name for name in ("build", "dev", "start") if getattr(self, name)]


@dataclass
class Candidate:
    app_dir: Path
    app_dir_relative: str
    source: str = "scan"
    score: int = 0
    scripts: ScriptFlags = field(default_factory=ScriptFlags)
    framework_hint: str = "unknown"

    def describe(self) -> str:
        labels = self.scripts.labels()
        script_label = "/".join(labels) if labels else "no scripts"
        return f"{self.app_dir_relative} ({self.source}, score {self.score}, scripts: {script_label})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appDir": str(self.app_dir),
            "appDirRelative": self.app_dir_relative,
            "source": self.source,
            "score": self.score,
            "scripts": {"build": self.scripts.build, "dev": self.scripts.dev, "start": self.scripts.start},
            "frameworkHint": self.framework_hint,
        }


def read_package_json(directory: Path) -> Optional[Dict[str, Any]]:
    path = Path(directory) / "package.json"
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        warn_non_fatal(f"invalid package.json ({path})", e, logger)
        return None
    return data if isinstance(data, dict) else None


def package_scripts(pkg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    scripts = (pkg or {}).get("scripts")
    return scripts if isinstance(scripts, dict) else {}


def has_script(scripts: Dict[str, Any], name: str) -> bool:
    value = scripts.get(name)
    return isinstance(value, str) and value.strip() != ""


def has_frontend_dependency(pkg: Optional[Dict[str, Any]]) -> bool:
    if not pkg:
        return False
    names = set()
    for key in ("dependencies", "devDependencies"):
        deps = pkg.get(key)
        if isinstance(deps, dict):
            names.update(deps.keys())
    return bool(names & FRONTEND_DEPENDENCIES)


def normalize_relative_dir(value: object) -> Optional[str]:
    """Clean a configured relative directory; None for empty, root or traversal."""
    if not isinstance(value, str):
        return None
    raw = value.strip().replace("\\", "/")
    if not raw or raw == ".":
        return None
    while raw.startswith("./"):
        raw = raw[2:].lstrip("/")
    cleaned = raw.strip("/")
    if not cleaned or ".." in cleaned:
        return None
    return cleaned


def _relative(root: Path, directory: Path) -> str:
    try:
        rel = directory.relative_to(root).as_posix()
    except ValueError:
        rel = directory.as_posix()
    return rel if rel not in {"", "."} else "."


def _list_subdirs(directory: Path) -> List[Path]:
    try:
        return sorted(p for p in directory.iterdir() if p.is_dir())
    except OSError as e:
        warn_non_fatal(f"cannot list {directory}", e, logger)
        return []


def collect_manifest_dirs(workspace_root: Path) -> List[Path]:
    root = Path(workspace_root)
    found: List[Path] = []
    seen: set[Path] = set()

    def add(directory: Path) -> None:
        if directory in seen:
            return
        if (directory / "package.json").is_file():
            seen.add(directory)
            found.append(directory)

    add(root)
    for hint in APP_DIR_HINTS:
        add(root / hint)
    for entry in _list_subdirs(root):
        add(entry)
        if entry.name in NESTED_APP_ROOTS:
            for nested in _list_subdirs(entry):
                add(nested)
    return found


def score_directory(rel: str, scripts: ScriptFlags, pkg: Optional[Dict[str, Any]]) -> Optional[int]:
    """Score a manifest directory. None means it declares no runtime script."""
    if not scripts.any:
        return None
    rel_lower = rel.lower()
    score = 0
    if rel == ".":
        score += 20
    if scripts.build:
        score += 30
    if scripts.dev:
        score += 22
    if scripts.start:
        score += 14
    if has_frontend_dependency(pkg):
        score += 20

    hint_index = next((i for i, hint in enumerate(APP_DIR_HINTS) if hint == rel_lower), -1)
    if hint_index >= 0:
        score += 120 - hint_index
    elif "frontend" in rel_lower or "/web" in rel_lower or rel_lower.startswith("web/"):
        score += 60

    if any(rel_lower == token or f"/{token}/" in rel_lower for token in BACKEND_DIR_HINTS):
        score -= 80
    return score


def _flags(pkg: Optional[Dict[str, Any]]) -> ScriptFlags:
    scripts = package_scripts(pkg)
    return ScriptFlags(
        build=has_script(scripts, "build"),
        dev=has_script(scripts, "dev"),
        start=has_script(scripts, "start"),
    )


def list_candidates(
    workspace_root: Path,
    config: Any = None,
    max_candidates: int = DEFAULT_MAX_CANDIDATES,
) -> List[Candidate]:
    """Ordered application-root candidates, best first.

    A configured ``app_directory`` with a manifest always ranks first. When no
    directory qualifies a single root-fallback candidate is returned.
    """
    root = Path(workspace_root)
    limit = max_candidates if isinstance(max_candidates, int) and max_candidates > 0 else DEFAULT_MAX_CANDIDATES
    records: List[Candidate] = []
    seen: set[Path] = set()

    configured = normalize_relative_dir(getattr(config, "app_directory", None))
    if configured:
        configured_dir = root / configured
        if (configured_dir / "package.json").is_file():
            pkg = read_package_json(configured_dir)
            flags = _flags(pkg)
            score = max(score_directory(configured, flags, pkg) or 0, CONFIGURED_MIN_SCORE)
            records.append(
                Candidate(
                    app_dir=configured_dir,
                    app_dir_relative=configured,
                    source="config",
                    score=score,
                    scripts=flags,
                    framework_hint="frontend" if has_frontend_dependency(pkg) else "unknown",
                )
            )
            seen.add(configured_dir)
        else:
            logger.warning("Configured appDirectory %s has no package.json; scanning instead", configured)

    scanned: List[Candidate] = []
    for directory in collect_manifest_dirs(root):
        if directory in seen:
            continue
        pkg = read_package_json(directory)
        flags = _flags(pkg)
        rel = _relative(root, directory)
        score = score_directory(rel, flags, pkg)
        if score is None:
            continue
        scanned.append(
            Candidate(
                app_dir=directory,
                app_dir_relative=rel,
                source="scan",
                score=score,
                scripts=flags,
                framework_hint="frontend" if has_frontend_dependency(pkg) else "unknown",
            )
        )
    scanned.sort(key=lambda c: c.score, reverse=True)
    records.extend(scanned)

    if not records:
        records.append(Candidate(app_dir=root, app_dir_relative=".", source="root-fallback", score=ROOT_FALLBACK_SCORE))
    return records[:limit]


def resolve_app_dir(workspace_root: Path, config: Any = None) -> Candidate:
    return list_candidates(workspace_root, config, 1)[0]
