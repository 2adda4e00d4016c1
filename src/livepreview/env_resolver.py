"""Environment for started preview apps.

Declared ``previewEnv`` values, values from the conventional dotenv files and,
when the app looks like a Supabase client, two placeholder variables so the
app can boot without a real backend.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values

from .backend_scan import DEV_ENV_FILES, detect_backend_usage
from .runner_helpers import warn_non_fatal

logger = logging.getLogger(__name__)

PLACEHOLDER_VALUES = {
    "VITE_SUPABASE_URL": "http://127.0.0.1:54321",
    "VITE_SUPABASE_ANON_KEY": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.preview.eyJyb2xlIjoiYW5vbiJ9.preview",
}

MODE_FORCED_ON = "forced_on"
MODE_FORCED_OFF = "forced_off"
MODE_AUTO_DETECTED = "auto_detected"
MODE_AUTO_DISABLED = "auto_disabled"

ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class StartEnv:
    env: Dict[str, str] = field(default_factory=dict)
    injected_keys: List[str] = field(default_factory=list)
    placeholder_mode: str = MODE_AUTO_DISABLED
    backend_detected: bool = False


def is_valid_env_key(key: object) -> bool:
    return isinstance(key, str) and bool(ENV_KEY_RE.match(key))


def sanitize_preview_env(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: v for k, v in raw.items() if is_valid_env_key(k) and isinstance(v, str)}


def parse_env_file(path: Path) -> Dict[str, str]:
    path = Path(path)
    if not path.is_file():
        return {}
    try:
        values = dotenv_values(path, interpolate=False, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        warn_non_fatal(f"cannot parse {path}", e, logger)
        return {}
    return {k: v for k, v in values.items() if is_valid_env_key(k) and v is not None}


def read_dev_env(directory: Path) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    for name in DEV_ENV_FILES:
        merged.update(parse_env_file(Path(directory) / name))
    return merged


def _non_empty(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.strip() != ""


def resolve_start_env(
    app_dir: Path,
    config: Any = None,
    environ: Optional[Mapping[str, str]] = None,
) -> StartEnv:
    """Compute the environment additions for a started app.

    Dotenv files are read from the workspace root, then from ``app_dir`` when it
    differs. Declared ``previewEnv`` values win over file values.
    """
    app_dir = Path(app_dir)
    process_env = os.environ if environ is None else environ
    declared = sanitize_preview_env(getattr(config, "preview_env", None))
    root = getattr(config, "workspace_root", None)
    root = Path(root) if root else app_dir

    file_env = read_dev_env(root)
    if root.resolve() != app_dir.resolve():
        file_env.update(read_dev_env(app_dir))

    env: Dict[str, str] = {**file_env, **declared}

    detected = detect_backend_usage(app_dir)
    explicit = getattr(config, "inject_placeholders", None)
    if isinstance(explicit, bool):
        inject = explicit
        mode = MODE_FORCED_ON if explicit else MODE_FORCED_OFF
    else:
        inject = detected
        mode = MODE_AUTO_DETECTED if detected else MODE_AUTO_DISABLED

    injected: List[str] = []
    if inject:
        for key, value in PLACEHOLDER_VALUES.items():
            if _non_empty(process_env.get(key)) or _non_empty(declared.get(key)) or _non_empty(file_env.get(key)):
                continue
            env[key] = value
            injected.append(key)
    if injected:
        logger.info("Injected preview placeholders (%s): %s", mode, ", ".join(injected))

    return StartEnv(env=env, injected_keys=injected, placeholder_mode=mode, backend_detected=detected)
