"""Heuristic detection of Supabase usage in an application directory.

Best effort only: it can miss real usage and it can flag unrelated code that
happens to mention ``createClient``. An explicit ``injectSupabasePlaceholders``
in the config always wins over this result.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from pathlib import Path

from .candidates import read_package_json
from .runner_helpers import warn_non_fatal

logger = logging.getLogger(__name__)

DEV_ENV_FILES = (".env", ".env.local", ".env.development", ".env.development.local")

SUPABASE_DEPENDENCIES = {"@supabase/supabase-js", "@supabase/ssr", "supabase"}

SCAN_SKIP_DIRS = {".git", "node_modules", "dist", "build", ".next", ".nuxt", "coverage", ".turbo"}
SCAN_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".json", ".env", ".md", ".yaml", ".yml"}
SCAN_MAX_FILES = 250
SCAN_MAX_DEPTH = 6
SCAN_MAX_BYTES = 64 * 1024

ENV_VAR_RE = re.compile(
    r"(VITE_SUPABASE_URL|VITE_SUPABASE_ANON_KEY|SUPABASE_URL|SUPABASE_ANON_KEY|SUPABASE_SERVICE_ROLE_KEY)",
    re.IGNORECASE,
)
SOURCE_RE = re.compile(
    r"\b(createClient|supabase)\b|VITE_SUPABASE_URL|VITE_SUPABASE_ANON_KEY|SUPABASE_URL|SUPABASE_ANON_KEY",
    re.IGNORECASE,
)


def _read_small_text(path: Path, max_bytes: int = SCAN_MAX_BYTES) -> str:
    try:
        if not path.is_file() or path.stat().st_size > max_bytes:
            return ""
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        warn_non_fatal(f"cannot read {path}", e, logger)
        return ""


def _has_supabase_dependency(app_dir: Path) -> bool:
    pkg = read_package_json(app_dir) or {}
    names = set()
    for key in ("dependencies", "devDependencies"):
        deps = pkg.get(key)
        if isinstance(deps, dict):
            names.update(str(name).lower() for name in deps)
    return bool(names & SUPABASE_DEPENDENCIES)


def _env_files_mention_supabase(app_dir: Path) -> bool:
    for name in DEV_ENV_FILES:
        text = _read_small_text(app_dir / name)
        if text and ENV_VAR_RE.search(text):
            return True
    return False


def _extension(name: str) -> str:
    dot = name.rfind(".")
    return name[dot:].lower() if dot >= 0 else ""


def _scan_sources(app_dir: Path) -> bool:
    queue = deque([(app_dir, 0)])
    scanned = 0
    while queue and scanned < SCAN_MAX_FILES:
        directory, depth = queue.popleft()
        if depth > SCAN_MAX_DEPTH:
            continue
        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            warn_non_fatal(f"cannot list {directory}", e, logger)
            continue
        for entry in entries:
            if entry.is_dir():
                if entry.name not in SCAN_SKIP_DIRS:
                    queue.append((entry, depth + 1))
                continue
            if not entry.is_file():
                continue
            scanned += 1
            if _extension(entry.name) not in SCAN_EXTENSIONS:
                continue
            if "supabase" in entry.name.lower():
                return True
            text = _read_small_text(entry)
            if text and SOURCE_RE.search(text):
                return True
    return False


def detect_backend_usage(app_dir: Path) -> bool:
    app_dir = Path(app_dir)
    if _has_supabase_dependency(app_dir):
        return True
    if _env_files_mention_supabase(app_dir):
        return True
    return _scan_sources(app_dir)
