"""livepreview – clone, build and serve live previews of GitHub repositories."""

__version__ = "0.3.0"

from .candidates import Candidate, list_candidates, resolve_app_dir
from .command_safety import ensure_ignore_scripts, is_safe, sanitize
from .config import ResolvedConfig, RunnerSettings, resolve_config
from .env_resolver import StartEnv, resolve_start_env
from .errors import (
    CapacityError,
    CommandFailed,
    ConfigurationError,
    GitCommandError,
    PreviewError,
    RunNotFound,
    RunStateError,
    SecurityError,
    ValidationError,
)
from .git_sync import GitSynchronizer, normalize_repo_slug
from .network import PortPool
from .supervisor import Run, RunStatus, RunSupervisor
from .system import SystemDeps

__all__ = [
    "__version__",
    "Candidate",
    "list_candidates",
    "resolve_app_dir",
    "ensure_ignore_scripts",
    "is_safe",
    "sanitize",
    "ResolvedConfig",
    "RunnerSettings",
    "resolve_config",
    "StartEnv",
    "resolve_start_env",
    "CapacityError",
    "CommandFailed",
    "ConfigurationError",
    "GitCommandError",
    "PreviewError",
    "RunNotFound",
    "RunStateError",
    "SecurityError",
    "ValidationError",
    "GitSynchronizer",
    "normalize_repo_slug",
    "PortPool",
    "Run",
    "RunStatus",
    "RunSupervisor",
    "SystemDeps",
]
