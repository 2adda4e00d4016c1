from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

# Load .env from project root; settings read in tests are always explicit
load_dotenv(_PROJECT_ROOT / ".env", override=False)

# Keep runner logs out of the shared temp dir while testing
os.environ.setdefault("LIVEPREVIEW_LOG_DIR", str(_PROJECT_ROOT / ".pytest-logs"))


class FakeStream:
    """Minimal ``asyncio.StreamReader`` stand-in returning canned chunks in order."""

    def __init__(self, *chunks: bytes):
        self._chunks = [c for c in chunks if c]

    async def read(self, n: int = -1) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


class FakeProcess:
    """Child process double. ``hold=True`` keeps it alive until terminated."""

    def __init__(self, exit_code: int = 0, stdout: bytes = b"", stderr: bytes = b"", hold: bool = False):
        self.pid = 4242
        self.stdout = FakeStream(stdout)
        self.stderr = FakeStream(stderr)
        self._exit_code = exit_code
        self._exited = asyncio.Event()
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        if not hold:
            self._finish(exit_code)

    def _finish(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self._finish(-15)

    def kill(self) -> None:
        self.killed = True
        self._finish(-9)

    def exit(self, code: int) -> None:
        self._finish(code)


class FakePlaceholder:
    """Placeholder responder that never binds a socket."""

    instances: List["FakePlaceholder"] = []

    def __init__(self, port: int, host: str, message: Optional[str] = None):
        self.port = port
        self.host = host
        self.message = message
        self.started = False
        self.stopped = False
        FakePlaceholder.instances.append(self)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def fake_placeholder():
    FakePlaceholder.instances = []
    return FakePlaceholder
