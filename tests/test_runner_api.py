import asyncio
import json

import httpx
import pytest

from livepreview.config import RunnerSettings
from livepreview.network import PortPool
from livepreview.runner_api import RATE_LIMIT_MESSAGE, create_runner_api
from livepreview.security import compute_signature
from livepreview.supervisor import RunSupervisor

WEBHOOK_SECRET = "s3cret"


def _runner(factory, **overrides):
    values = dict(port_min=4001, port_max=4002, simulate_delay_ms=0, probe_bind=False)
    values.update(overrides)
    settings = RunnerSettings(**values)
    pool = PortPool(settings.port_min, settings.port_max, probe_bind=False, placeholder_factory=factory)
    supervisor = RunSupervisor(settings, pool=pool)
    app = create_runner_api(supervisor=supervisor, settings=settings)
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    return supervisor, client


async def _wait_status(client, run_id, wanted="ready", attempts=100):
    payload = {}
    for _ in range(attempts):
        payload = (await client.get(f"/status/{run_id}")).json()
        if payload.get("status") == wanted:
            break
        await asyncio.sleep(0.01)
    return payload


@pytest.mark.asyncio
async def test_start_status_stop_lifecycle(fake_placeholder):
    supervisor, client = _runner(fake_placeholder)
    async with client:
        resp = await client.post("/start", json={"repo": "acme/app", "branchOrCommit": "main", "projectId": "p1"})
        assert resp.status_code == 200
        started = resp.json()
        assert started["success"] is True
        assert started["status"] == "starting"
        assert started["port"] == 4001
        assert started["previewUrl"] == "http://localhost:4001"

        status = await _wait_status(client, started["runId"])
        assert status["status"] == "ready"
        assert status["repo"] == "acme/app"
        assert status["readyAt"]
        assert status["logs"]

        resp = await client.post(f"/stop/{started['runId']}")
        assert resp.json() == {"success": True, "runId": started["runId"], "status": "stopped"}
        assert (await client.get(f"/status/{started['runId']}")).json()["status"] == "stopped"

        resp = await client.post("/start", json={"repo": "acme/app", "projectId": "p1"})
        assert resp.json()["port"] == 4001
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_start_rejects_invalid_input(fake_placeholder):
    supervisor, client = _runner(fake_placeholder)
    async with client:
        resp = await client.post("/start", json={"repo": "not a repo", "projectId": "p1"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False

        resp = await client.post("/start", json={"repo": "acme/app", "projectId": "../p1"})
        assert resp.status_code == 400

        resp = await client.post("/start", content=b"{broken", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid request body"}
    assert supervisor.pool.in_use() == set()


@pytest.mark.asyncio
async def test_start_returns_503_when_ports_are_exhausted(fake_placeholder):
    supervisor, client = _runner(fake_placeholder)
    async with client:
        for project in ("p1", "p2"):
            assert (await client.post("/start", json={"repo": "acme/app", "projectId": project})).status_code == 200
        resp = await client.post("/start", json={"repo": "acme/app", "projectId": "p3"})
        assert resp.status_code == 503
        assert "4001-4002" in resp.json()["error"]
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_status_and_refresh_errors(fake_placeholder):
    supervisor, client = _runner(fake_placeholder)
    async with client:
        resp = await client.get("/status/not-a-run")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid runId"

        assert (await client.get("/status/run_0000000000001_abcd")).status_code == 404
        assert (await client.post("/refresh", json={"runId": "nope"})).status_code == 400

        run_id = (await client.post("/start", json={"repo": "acme/app", "projectId": "p1"})).json()["runId"]
        await client.post(f"/stop/{run_id}")
        resp = await client.post("/refresh", json={"runId": run_id})
        assert resp.status_code == 409
        assert resp.json()["success"] is False

        assert (await client.get("/no-such-route")).json() == {"success": False, "error": "Not Found"}
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_refresh_restarts_ready_run(fake_placeholder):
    supervisor, client = _runner(fake_placeholder)
    async with client:
        run_id = (await client.post("/start", json={"repo": "acme/app", "projectId": "p1"})).json()["runId"]
        await _wait_status(client, run_id)

        resp = await client.post("/refresh", json={"runId": run_id, "bootMode": "strict"})
        assert resp.json() == {"success": True, "runId": run_id, "status": "starting"}
        status = await _wait_status(client, run_id)
        assert status["status"] == "ready"
        assert status["bootMode"] == "strict"
        assert status["port"] == 4001
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_runs_listing_health_and_stop_project(fake_placeholder):
    supervisor, client = _runner(fake_placeholder, port_max=4003)
    async with client:
        ids = []
        for project in ("p1", "p1", "p2"):
            resp = await client.post("/start", json={"repo": "acme/app", "projectId": project})
            ids.append(resp.json()["runId"])

        resp = await client.post("/stop-project/p1")
        body = resp.json()
        assert body["stopped"] == 2
        assert sorted(body["runIds"]) == sorted(ids[:2])
        assert (await client.post("/stop-project/bad%20id")).status_code == 400

        listing = (await client.get("/runs")).json()
        assert [r["runId"] for r in listing["runs"]] == [ids[2]]
        assert listing["totals"]["total"] == 1

        listing = (await client.get("/runs", params={"includeStopped": "1"})).json()
        assert listing["totals"]["total"] == 3
        assert listing["totals"]["stopped"] == 2

        listing = (await client.get("/runs", params={"projectId": "p2"})).json()
        assert listing["runs"][0]["projectId"] == "p2"

        health = (await client.get("/health")).json()
        assert health["ok"] is True
        assert health["mode"] == "stub"
        assert health["useRealBuild"] is False
        assert health["totalRuns"] == 3
        assert health["stoppedRuns"] == 2
        assert health["activeRuns"] == 1
    await supervisor.shutdown()


def _signed(payload, event, secret=WEBHOOK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "content-type": "application/json",
        "x-github-event": event,
        "x-hub-signature-256": compute_signature(secret, body),
    }
    return body, headers


@pytest.mark.asyncio
async def test_webhook_signature_and_events(fake_placeholder):
    supervisor, client = _runner(fake_placeholder, webhook_secret=WEBHOOK_SECRET)
    async with client:
        body, headers = _signed({"zen": "Keep it simple."}, "ping")
        resp = await client.post("/webhook/github", content=body, headers=headers)
        assert resp.json() == {"success": True, "ok": True, "message": "pong"}

        body, headers = _signed({"zen": "x"}, "ping", secret="wrong")
        assert (await client.post("/webhook/github", content=body, headers=headers)).status_code == 401

        body, headers = _signed({"zen": "x"}, "ping")
        del headers["x-hub-signature-256"]
        assert (await client.post("/webhook/github", content=body, headers=headers)).status_code == 401

        body, headers = _signed({}, "issues")
        assert (await client.post("/webhook/github", content=body, headers=headers)).json()["ignored"] is True

        body, headers = _signed({"ref": "refs/heads/main"}, "push")
        assert (await client.post("/webhook/github", content=body, headers=headers)).status_code == 400
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_webhook_push_refreshes_matching_runs(fake_placeholder):
    supervisor, client = _runner(fake_placeholder, webhook_secret=WEBHOOK_SECRET)
    async with client:
        main_id = (await client.post("/start", json={"repo": "acme/app", "projectId": "p1"})).json()["runId"]
        dev_id = (
            await client.post("/start", json={"repo": "acme/app", "branchOrCommit": "dev", "projectId": "p2"})
        ).json()["runId"]
        await _wait_status(client, main_id)
        await _wait_status(client, dev_id)

        payload = {"ref": "refs/heads/main", "repository": {"full_name": "acme/app"}}
        body, headers = _signed(payload, "push")
        resp = await client.post("/webhook/github", content=body, headers=headers)
        assert resp.json() == {"success": True, "ok": True, "refreshed": 1, "runIds": [main_id]}
        assert (await _wait_status(client, main_id))["status"] == "ready"
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_webhook_rejects_invalid_json_without_secret(fake_placeholder):
    supervisor, client = _runner(fake_placeholder)
    async with client:
        resp = await client.post("/webhook/github", content=b"{nope", headers={"x-github-event": "push"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON"


@pytest.mark.asyncio
async def test_write_endpoints_are_rate_limited(fake_placeholder):
    supervisor, client = _runner(fake_placeholder, write_rate_limit_max=2, port_max=4010)
    async with client:
        for project in ("p1", "p2"):
            assert (await client.post("/start", json={"repo": "acme/app", "projectId": project})).status_code == 200
        resp = await client.post("/start", json={"repo": "acme/app", "projectId": "p3"})
        assert resp.status_code == 429
        assert resp.json()["error"] == RATE_LIMIT_MESSAGE
        assert int(resp.headers["retry-after"]) >= 1

        # buckets are per route and client
        resp = await client.post("/start", json={"repo": "acme/app", "projectId": "p3"}, headers={"x-forwarded-for": "10.0.0.9"})
        assert resp.status_code == 200
        assert (await client.get("/health")).status_code == 200
    await supervisor.shutdown()
