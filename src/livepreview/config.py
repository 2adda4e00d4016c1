"""Configuration for the preview runner.

Two layers live here:

* ``ResolvedConfig`` - the per-workspace build/start configuration read from
  ``visudev.config.json`` inside the checked-out repository.
* ``RunnerSettings`` - process-wide settings of the runner itself, read from
  environment variables and optionally a YAML file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .candidates import normalize_relative_dir, package_scripts, read_package_json
from .command_safety import ensure_ignore_scripts, is_safe, is_sane_command
from .env_resolver import sanitize_preview_env
from .errors import ConfigurationError
from .executor import get_package_manager
from .runner_helpers import warn_non_fatal
from .system import DEFAULT_DEPS, SystemDeps

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "visudev.config.json"

DEFAULT_BUILD_COMMAND = "npm ci --ignore-scripts && npm run build"
DEFAULT_START_COMMAND = "npx serve dist"
DEFAULT_APP_PORT = 3000
MIN_PREVIEW_PORT = 1024
MAX_PREVIEW_PORT = 65535

BOOT_MODE_BEST_EFFORT = "best_effort"
BOOT_MODE_STRICT = "strict"


@dataclass
class ResolvedConfig:
    build_command: str = DEFAULT_BUILD_COMMAND
    start_command: str = DEFAULT_START_COMMAND
    fallback_start_command: Optional[str] = None
    preview_env: Dict[str, str] = field(default_factory=dict)
    inject_placeholders: Optional[bool] = None
    app_directory: Optional[str] = None
    workspace_root: Optional[Path] = None
    port: int = DEFAULT_APP_PORT
    warnings: List[str] = field(default_factory=list)

    def with_start_command(self, command: str) -> "ResolvedConfig":
        return replace(
            self,
            start_command=command,
            preview_env=dict(self.preview_env),
            warnings=list(self.warnings),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buildCommand": self.build_command,
            "startCommand": self.start_command,
            "fallbackStartCommand": self.fallback_start_command,
            "previewEnv": dict(self.preview_env),
            "injectSupabasePlaceholders": self.inject_placeholders,
            "appDirectory": self.app_directory,
            "workspaceRoot": str(self.workspace_root) if self.workspace_root else None,
            "port": self.port,
            "warnings": list(self.warnings),
        }


def _record(config: ResolvedConfig, error: ConfigurationError) -> None:
    config.warnings.append(str(error))
    warn_non_fatal("config value rejected", error, logger)


def _read_command(raw: Any, fallback: Optional[str], source: str, key: str, config: ResolvedConfig) -> Optional[str]:
    if not isinstance(raw, str) or not raw.strip():
        return fallback
    value = raw.strip()
    if not is_sane_command(value) or not is_safe(value):
        _record(config, ConfigurationError(key, f"unsafe command rejected in {source}: {value!r}"))
        return fallback
    return value


def _read_port(raw: Any, fallback: int, source: str, config: ResolvedConfig) -> int:
    if raw is None:
        return fallback
    parsed: Optional[int] = None
    if isinstance(raw, int) and not isinstance(raw, bool):
        parsed = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        parsed = int(raw.strip())
    if parsed is not None and MIN_PREVIEW_PORT <= parsed <= MAX_PREVIEW_PORT:
        return parsed
    _record(
        config,
        ConfigurationError("port", f"expected {MIN_PREVIEW_PORT}-{MAX_PREVIEW_PORT} in {source}, got {raw!r}"),
    )
    return fallback


def _apply_file(config: ResolvedConfig, path: Path) -> None:
    if not path.is_file():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        _record(config, ConfigurationError(CONFIG_FILENAME, f"invalid JSON in {path}: {e}"))
        return
    if not isinstance(data, dict):
        _record(config, ConfigurationError(CONFIG_FILENAME, f"expected an object in {path}"))
        return

    source = str(path)
    config.build_command = _read_command(data.get("buildCommand"), config.build_command, source, "buildCommand", config)
    config.start_command = _read_command(data.get("startCommand"), config.start_command, source, "startCommand", config)
    config.fallback_start_command = _read_command(
        data.get("fallbackStartCommand"), config.fallback_start_command, source, "fallbackStartCommand", config
    )
    config.preview_env.update(sanitize_preview_env(data.get("previewEnv")))
    if isinstance(data.get("injectSupabasePlaceholders"), bool):
        config.inject_placeholders = data["injectSupabasePlaceholders"]
    app_directory = normalize_relative_dir(data.get("appDirectory"))
    if app_directory:
        config.app_directory = app_directory
    elif data.get("appDirectory") not in (None, "", "."):
        _record(config, ConfigurationError("appDirectory", f"invalid value in {source}: {data.get('appDirectory')!r}"))
    config.port = _read_port(data.get("port"), config.port, source, config)


def resolve_config(workspace_dir: Path, workspace_root: Optional[Path] = None) -> ResolvedConfig:
    """Layer the root config file and an optional app-local override over the defaults."""
    app_dir = Path(workspace_dir)
    root = Path(workspace_root) if workspace_root is not None else app_dir
    config = ResolvedConfig(workspace_root=root)

    _apply_file(config, root / CONFIG_FILENAME)
    if app_dir.resolve() != root.resolve():
        _apply_file(config, app_dir / CONFIG_FILENAME)

    config.build_command = ensure_ignore_scripts(config.build_command)
    return config


async def resolve_best_effort_start_command(
    app_dir: Path,
    config: Optional[ResolvedConfig] = None,
    deps: SystemDeps = DEFAULT_DEPS,
) -> Optional[str]:
    """Start command to try when the regular build or start failed."""
    if config is not None and is_sane_command(config.fallback_start_command):
        return config.fallback_start_command.strip()

    scripts = package_scripts(read_package_json(app_dir))
    manager = await get_package_manager(app_dir, deps)
    prefix = f"{manager} run"

    if is_sane_command(scripts.get("dev")):
        return f"{prefix} dev"
    if is_sane_command(scripts.get("start")):
        return f"{prefix} start"
    if (Path(app_dir) / "node_modules" / "vite" / "bin" / "vite.js").is_file():
        return "npx vite"
    return None


def resolve_boot_mode(value: Any, default: str = BOOT_MODE_BEST_EFFORT) -> str:
    raw = str(value if value not in (None, "") else default).strip().lower()
    return BOOT_MODE_STRICT if raw == BOOT_MODE_STRICT else BOOT_MODE_BEST_EFFORT


def coerce_tristate(value: Any) -> Optional[bool]:
    if value in (True, "true", 1, "1"):
        return True
    if value in (False, "false", 0, "0"):
        return False
    return None


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _float(value: Any, default: float) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


# env var -> (settings attribute, parser)
_ENV_FIELDS = {
    "LIVEPREVIEW_HOST": ("host", str),
    "LIVEPREVIEW_PORT": ("port", int),
    "GITHUB_WEBHOOK_SECRET": ("webhook_secret", str),
    "PREVIEW_PORT_MIN": ("port_min", int),
    "PREVIEW_PORT_MAX": ("port_max", int),
    "PREVIEW_BASE_URL": ("preview_base_url", str),
    "PREVIEW_BIND_HOST": ("bind_host", str),
    "USE_REAL_BUILD": ("use_real_build", bool),
    "SIMULATE_DELAY_MS": ("simulate_delay_ms", int),
    "PREVIEW_BOOT_MODE": ("boot_mode", str),
    "PREVIEW_READY_TIMEOUT_S": ("ready_timeout", float),
    "AUTO_REFRESH_INTERVAL_S": ("auto_refresh_interval", float),
    "LIVEPREVIEW_WORKSPACE_ROOT": ("workspace_root", Path),
    "GIT_BINARY": ("git_binary", str),
    "GITHUB_TOKEN": ("github_token", str),
    "LIVEPREVIEW_LOG_DIR": ("log_dir", Path),
    "RUNNER_WRITE_RATE_LIMIT_MAX": ("write_rate_limit_max", int),
}


@dataclass
class RunnerSettings:
    host: str = "127.0.0.1"
    port: int = 4000
    webhook_secret: str = ""
    port_min: int = 4001
    port_max: int = 4099
    preview_base_url: str = ""
    bind_host: str = "127.0.0.1"
    use_real_build: bool = False
    simulate_delay_ms: int = 3000
    boot_mode: str = BOOT_MODE_BEST_EFFORT
    ready_timeout: float = 60.0
    fallback_ready_timeout: float = 90.0
    auto_refresh_interval: float = 60.0
    workspace_root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "livepreview-workspaces")
    git_binary: Optional[str] = None
    github_token: Optional[str] = None
    log_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "livepreview-logs")
    write_rate_limit_max: int = 25
    probe_bind: bool = True

    def __post_init__(self) -> None:
        self.boot_mode = resolve_boot_mode(self.boot_mode)
        self.workspace_root = Path(self.workspace_root)
        self.log_dir = Path(self.log_dir)
        if self.port_min < MIN_PREVIEW_PORT:
            self.port_min = MIN_PREVIEW_PORT
        if self.port_max > MAX_PREVIEW_PORT:
            self.port_max = MAX_PREVIEW_PORT

    def preview_url(self, port: int) -> str:
        base = (self.preview_base_url or "").strip()
        if not base:
            return f"http://localhost:{port}"
        if "{port}" in base:
            return base.replace("{port}", str(port))
        return f"{base.rstrip('/')}/{port}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunnerSettings":
        known = {f for f in cls.__dataclass_fields__}
        kwargs = {k: v for k, v in dict(data or {}).items() if k in known}
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path, environ: Optional[Mapping[str, str]] = None) -> "RunnerSettings":
        """Load settings from a YAML file; environment variables still win."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        return cls.from_env(environ, base=data.get("runner", data))

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, Any]] = None,
    ) -> "RunnerSettings":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = dict(base or {})
        defaults = cls()
        for key, (attr, kind) in _ENV_FIELDS.items():
            raw = env.get(key)
            if raw is None or str(raw).strip() == "":
                continue
            if kind is bool:
                values[attr] = _truthy(raw)
            elif kind is int:
                values[attr] = _int(raw, getattr(defaults, attr))
            elif kind is float:
                values[attr] = _float(raw, getattr(defaults, attr))
            else:
                values[attr] = kind(raw.strip()) if kind is not str else raw.strip()
        return cls.from_dict(values)
