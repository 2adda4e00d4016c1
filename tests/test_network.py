"""Tests for the port pool and placeholder pages."""

import asyncio
import socket

import httpx
import pytest

from livepreview.errors import CapacityError
from livepreview.network import (
    FRAME_ANCESTORS,
    MIN_SAFE_PORT,
    PlaceholderResponder,
    PortPool,
    check_port,
    render_placeholder_page,
)


def _pool(factory, low=4001, high=4002):
    return PortPool(low, high, probe_bind=False, placeholder_factory=factory)


def test_pool_allocates_lowest_first_until_exhausted(fake_placeholder):
    pool = _pool(fake_placeholder)
    assert pool.allocate() == 4001
    assert pool.allocate() == 4002
    with pytest.raises(CapacityError):
        pool.allocate()


@pytest.mark.asyncio
async def test_released_port_is_reused(fake_placeholder):
    pool = _pool(fake_placeholder)
    pool.allocate()
    pool.allocate()
    await pool.release(4001)
    assert pool.allocate() == 4001
    assert pool.in_use() == {4001, 4002}


def test_pool_never_hands_out_privileged_ports(fake_placeholder):
    pool = PortPool(80, 1025, probe_bind=False, placeholder_factory=fake_placeholder)
    assert pool.port_min == MIN_SAFE_PORT
    assert pool.allocate() == MIN_SAFE_PORT
    assert pool.capacity == 2


@pytest.mark.asyncio
async def test_release_tears_down_placeholder_first(fake_placeholder):
    pool = _pool(fake_placeholder)
    port = pool.allocate()
    assert await pool.show_placeholder(port) is True
    assert pool.has_placeholder(port)

    await pool.release(port)
    responder = fake_placeholder.instances[0]
    assert responder.started and responder.stopped
    assert not pool.has_placeholder(port)
    assert port not in pool.in_use()


@pytest.mark.asyncio
async def test_show_placeholder_replaces_previous(fake_placeholder):
    pool = _pool(fake_placeholder)
    port = pool.allocate()
    await pool.show_placeholder(port)
    await pool.show_placeholder(port, "build failed")
    first, second = fake_placeholder.instances
    assert first.stopped is True
    assert second.message == "build failed"


@pytest.mark.asyncio
async def test_show_placeholder_reports_bind_failure():
    class Busy:
        def __init__(self, port, host, message=None):
            pass

        async def start(self):
            raise OSError("address already in use")

        async def stop(self):
            pass

    pool = _pool(Busy)
    port = pool.allocate()
    assert await pool.show_placeholder(port) is False
    assert not pool.has_placeholder(port)


def test_error_page_is_escaped():
    page = render_placeholder_page(4001, "<script>alert(1)</script>")
    assert "<script>alert(1)</script>" not in page
    assert "&lt;script&gt;" in page


def test_stub_page_mentions_port():
    assert "Port 4001" in render_placeholder_page(4001)


@pytest.mark.asyncio
async def test_placeholder_app_allows_framing():
    app = PlaceholderResponder(4001, message="boom").build_app()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/any/path")
    assert resp.status_code == 200
    assert resp.headers["content-security-policy"] == FRAME_ANCESTORS
    assert "boom" in resp.text


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def _port_freed(port, attempts=100):
    for _ in range(attempts):
        if check_port(port):
            return True
        await asyncio.sleep(0.05)
    return False


@pytest.mark.asyncio
async def test_release_during_placeholder_startup_frees_port():
    port = _free_port()
    pool = PortPool(port, port, probe_bind=False)
    assert pool.allocate() == port

    showing = asyncio.ensure_future(pool.show_placeholder(port))
    await asyncio.sleep(0)
    assert pool.has_placeholder(port)

    showing.cancel()
    await pool.release(port)
    with pytest.raises(asyncio.CancelledError):
        await showing

    assert not pool.has_placeholder(port)
    assert pool.in_use() == set()
    assert await _port_freed(port)
