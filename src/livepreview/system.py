"""Process, filesystem and clock access used by the runner.

Everything that touches the outside world goes through a ``SystemDeps``
instance so the git synchronizer, executor and supervisor can run against
fakes in tests.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional


def _default_environ() -> Dict[str, str]:
    return dict(os.environ)


def _file_mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


def _remove_file(path: Path) -> None:
    path.unlink()


def _remove_tree(path: Path) -> None:
    shutil.rmtree(path)


@dataclass(frozen=True)
class SystemDeps:
    spawn_exec: Callable[..., Awaitable[Any]] = asyncio.create_subprocess_exec
    spawn_shell: Callable[..., Awaitable[Any]] = asyncio.create_subprocess_shell
    environ: Callable[[], Mapping[str, str]] = _default_environ
    now: Callable[[], float] = time.time
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    path_exists: Callable[[Path], bool] = Path.exists
    file_mtime: Callable[[Path], Optional[float]] = _file_mtime
    remove_file: Callable[[Path], None] = _remove_file
    remove_tree: Callable[[Path], None] = _remove_tree
    which: Callable[..., Optional[str]] = shutil.which
    platform: str = field(default_factory=lambda: sys.platform)

    def with_overrides(self, **overrides: Any) -> "SystemDeps":
        return replace(self, **overrides)


DEFAULT_DEPS = SystemDeps()
