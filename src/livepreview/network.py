"""Port pool and placeholder pages for preview runs."""

from __future__ import annotations

import asyncio
import contextlib
import html
import logging
import socket
from threading import Lock
from typing import Any, Callable, Dict, Optional

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse
from starlette.routing import Route

from .errors import CapacityError

logger = logging.getLogger(__name__)

# Minimum safe port - below this are privileged/system ports
MIN_SAFE_PORT = 1024

FRAME_ANCESTORS = "frame-ancestors *"

_PAGE_STYLE = "font-family:sans-serif;padding:2rem;background:#1a1a2e;color:#eee;max-width:48rem;"


def render_placeholder_page(port: int, message: Optional[str] = None) -> str:
    if message:
        return (
            '<!DOCTYPE html><html><head><meta charset="utf-8"><title>Preview error</title></head>'
            f'<body style="{_PAGE_STYLE}"><h1>Preview error</h1>'
            f'<pre style="white-space:pre-wrap;color:#f88;">{html.escape(message)}</pre></body></html>'
        )
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"><title>Preview (stub)</title></head>'
        f'<body style="{_PAGE_STYLE}"><h1>Preview (stub)</h1>'
        f"<p>Port {port}: the built app would be served here.</p>"
        "<p>The runner is in simulated mode and does not build or start apps. "
        "Restart it with <code>USE_REAL_BUILD=1</code> for real previews "
        "(set <code>GITHUB_TOKEN</code> for private repositories).</p></body></html>"
    )


def check_port(port: int, host: str = "127.0.0.1") -> bool:
    """Check if a specific port can be bound."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
            return True
    except OSError:
        return False


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host app."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class PlaceholderResponder:
    """Minimal HTTP server answering every GET with a stub or error page."""

    def __init__(self, port: int, host: str = "127.0.0.1", message: Optional[str] = None):
        self.port = port
        self.host = host
        self.message = message
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None

    def build_app(self) -> Starlette:
        page = render_placeholder_page(self.port, self.message)

        async def placeholder(request: Request) -> HTMLResponse:
            return HTMLResponse(page, headers={"Content-Security-Policy": FRAME_ANCESTORS})

        return Starlette(routes=[Route("/{path:path}", placeholder, methods=["GET", "HEAD"])])

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        config = uvicorn.Config(self.build_app(), log_level="warning", access_log=False, lifespan="off")
        server = self._server = _EmbeddedServer(config)
        task = self._task = asyncio.create_task(server.serve(sockets=[sock]))
        try:
            while not server.started and not task.done():
                await asyncio.sleep(0.01)
        except BaseException:
            await self.stop()
            raise
        logger.info("Placeholder listening on http://%s:%s", self.host, self.port)

    async def stop(self) -> None:
        """Ask uvicorn to shut down and wait for the listening socket to close."""
        server, task = self._server, self._task
        if server is None or task is None:
            return
        self._server = None
        self._task = None
        server.should_exit = True
        # asyncio.wait leaves the serve task running when the caller is cancelled
        done, _ = await asyncio.wait({task}, timeout=5.0)
        if not done:
            task.cancel()


PlaceholderFactory = Callable[[int, str, Optional[str]], Any]


class PortPool:
    """Fixed inclusive port range; each port belongs to at most one Run.

    Ports below 1024 are never handed out. ``probe_bind`` skips ports that are
    occupied by processes outside this pool.
    """

    def __init__(
        self,
        port_min: int,
        port_max: int,
        *,
        bind_host: str = "127.0.0.1",
        probe_bind: bool = True,
        placeholder_factory: Optional[PlaceholderFactory] = None,
    ):
        if port_min < MIN_SAFE_PORT:
            port_min = MIN_SAFE_PORT
        if port_max > 65535:
            port_max = 65535

        self.port_min = port_min
        self.port_max = port_max
        self.bind_host = bind_host
        self.probe_bind = probe_bind
        self._placeholder_factory = placeholder_factory or PlaceholderResponder
        self._in_use: set[int] = set()
        self._placeholders: Dict[int, Any] = {}
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return max(0, self.port_max - self.port_min + 1)

    def in_use(self) -> set[int]:
        with self._lock:
            return set(self._in_use)

    def allocate(self) -> int:
        """Reserve and return the lowest free port."""
        with self._lock:
            for port in range(self.port_min, self.port_max + 1):
                if port in self._in_use:
                    continue
                if self.probe_bind and not check_port(port, self.bind_host):
                    continue
                self._in_use.add(port)
                return port
        raise CapacityError(f"No free preview port in {self.port_min}-{self.port_max}")

    async def release(self, port: Optional[int]) -> None:
        """Tear down any placeholder on ``port``, then mark it free."""
        if port is None:
            return
        await self.clear_placeholder(port)
        with self._lock:
            self._in_use.discard(port)

    async def show_placeholder(self, port: int, message: Optional[str] = None) -> bool:
        """Serve a stub (or error) page on ``port``. Returns False when it cannot bind."""
        await self.clear_placeholder(port)
        responder = self._placeholder_factory(port, self.bind_host, message)
        # registered before starting so a concurrent release always reaches it
        self._placeholders[port] = responder
        try:
            await responder.start()
        except OSError as e:
            self._forget(port, responder)
            logger.warning("Placeholder could not start on http://%s:%s: %s", self.bind_host, port, e)
            return False
        except BaseException:
            self._forget(port, responder)
            raise
        return True

    def _forget(self, port: int, responder: Any) -> None:
        if self._placeholders.get(port) is responder:
            del self._placeholders[port]

    async def clear_placeholder(self, port: int) -> None:
        responder = self._placeholders.pop(port, None)
        if responder is not None:
            await responder.stop()

    def has_placeholder(self, port: int) -> bool:
        return port in self._placeholders

    async def close(self) -> None:
        for port in list(self._placeholders):
            await self.clear_placeholder(port)
        with self._lock:
            self._in_use.clear()
