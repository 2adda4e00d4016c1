"""FastAPI control API and GitHub webhook listener for the preview runner."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from .config import RunnerSettings
from .errors import (
    CapacityError,
    PreviewError,
    RunNotFound,
    RunStateError,
    SecurityError,
    ValidationError,
)
from .git_sync import normalize_project_id
from .runner_helpers import configure_logging
from .security import RateLimiter, verify_webhook_signature
from .supervisor import RunStatus, RunSupervisor, normalize_run_id

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Rate limit exceeded for write operations. Please retry shortly."


def _validate_run_id(run_id: Any) -> str:
    normalized = normalize_run_id(run_id)
    if not normalized:
        raise HTTPException(status_code=400, detail="Invalid runId")
    return normalized


def _validate_project_id(project_id: Any) -> str:
    normalized = normalize_project_id(project_id)
    if not normalized:
        raise HTTPException(status_code=400, detail="Invalid projectId")
    return normalized


def _status_code_for(error: PreviewError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, SecurityError):
        return 401
    if isinstance(error, RunNotFound):
        return 404
    if isinstance(error, RunStateError):
        return 409
    if isinstance(error, CapacityError):
        return 503
    return 500


def _truthy_flag(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true"}


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else "unknown"


class StartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo: Any = None
    branch_or_commit: Any = Field(default="main", alias="branchOrCommit")
    project_id: Any = Field(default=None, alias="projectId")
    commit_sha: Any = Field(default=None, alias="commitSha")
    boot_mode: Optional[str] = Field(default=None, alias="bootMode")
    inject_placeholders: Any = Field(default=None, alias="injectSupabasePlaceholders")


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: Any = Field(default=None, alias="runId")
    boot_mode: Optional[str] = Field(default=None, alias="bootMode")
    inject_placeholders: Any = Field(default=None, alias="injectSupabasePlaceholders")


def create_runner_api(*, supervisor: RunSupervisor, settings: RunnerSettings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        refresher = asyncio.create_task(supervisor.auto_refresh_loop())
        try:
            yield
        finally:
            refresher.cancel()
            await supervisor.shutdown()

    app = FastAPI(title="livepreview-runner", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = RateLimiter(requests_per_minute=settings.write_rate_limit_max)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(PreviewError)
    async def preview_error(request: Request, exc: PreviewError) -> JSONResponse:
        return JSONResponse(status_code=_status_code_for(exc), content={"success": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body"})

    def write_limit(route: str):
        def check(request: Request) -> None:
            key = f"{route}:{client_address(request)}"
            if not limiter.consume(key):
                retry_after = max(1, int(limiter.get_wait_time(key) + 0.999))
                raise HTTPException(
                    status_code=429, detail=RATE_LIMIT_MESSAGE, headers={"Retry-After": str(retry_after)}
                )

        return Depends(check)

    def uptime() -> int:
        return max(0, int(supervisor.deps.now() - supervisor.started_at))

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        counts = supervisor.counts()
        return {
            "success": True,
            "ok": True,
            "service": "livepreview",
            "mode": supervisor.mode,
            "useRealBuild": settings.use_real_build,
            "port": settings.port,
            "uptimeSec": uptime(),
            "activeRuns": counts["active"],
            "totalRuns": counts["total"],
            "readyRuns": counts["ready"],
            "startingRuns": counts["starting"],
            "failedRuns": counts["failed"],
            "stoppedRuns": counts["stopped"],
        }

    @app.get("/runs")
    async def list_runs(projectId: Optional[str] = None, includeStopped: Optional[str] = None) -> Dict[str, Any]:
        project_id = _validate_project_id(projectId) if projectId is not None else None
        runs = supervisor.list_runs(project_id, include_stopped=_truthy_flag(includeStopped))
        entries = [run.summary() for run in runs]
        statuses = [run.status for run in runs]
        return {
            "success": True,
            "runner": {"port": settings.port, "uptimeSec": uptime()},
            "totals": {
                "total": len(entries),
                "active": sum(1 for s in statuses if s in (RunStatus.STARTING, RunStatus.READY)),
                "ready": statuses.count(RunStatus.READY),
                "starting": statuses.count(RunStatus.STARTING),
                "failed": statuses.count(RunStatus.FAILED),
                "stopped": statuses.count(RunStatus.STOPPED),
            },
            "runs": entries,
        }

    @app.post("/start", dependencies=[write_limit("/start")])
    async def start(req: StartRequest) -> Dict[str, Any]:
        run = supervisor.start_run(
            req.repo,
            req.branch_or_commit,
            req.project_id,
            commit_sha=req.commit_sha,
            boot_mode=req.boot_mode,
            inject_placeholders=req.inject_placeholders,
        )
        return {
            "success": True,
            "runId": run.run_id,
            "status": RunStatus.STARTING.value,
            "port": run.port,
            "previewUrl": run.preview_url,
        }

    @app.get("/status/{run_id}")
    async def status(run_id: str) -> Dict[str, Any]:
        run = supervisor.get(_validate_run_id(run_id))
        return {"success": True, **run.to_status()}

    @app.post("/stop/{run_id}", dependencies=[write_limit("/stop")])
    async def stop(run_id: str) -> Dict[str, Any]:
        run = await supervisor.stop_run(_validate_run_id(run_id))
        return {"success": True, "runId": run.run_id, "status": RunStatus.STOPPED.value}

    @app.post("/stop-project/{project_id}", dependencies=[write_limit("/stop-project")])
    async def stop_project(project_id: str) -> Dict[str, Any]:
        project = _validate_project_id(project_id)
        stopped = await supervisor.stop_project(project)
        return {"success": True, "projectId": project, "stopped": len(stopped), "runIds": stopped}

    @app.post("/refresh", dependencies=[write_limit("/refresh")])
    async def refresh(req: RefreshRequest) -> Dict[str, Any]:
        run = await supervisor.refresh_run(
            _validate_run_id(req.run_id),
            boot_mode=req.boot_mode,
            inject_placeholders=req.inject_placeholders,
        )
        return {"success": True, "runId": run.run_id, "status": RunStatus.STARTING.value}

    @app.post("/webhook/github", dependencies=[write_limit("/webhook/github")])
    async def github_webhook(request: Request) -> Dict[str, Any]:
        body = await request.body()
        verify_webhook_signature(settings.webhook_secret, body, request.headers.get("x-hub-signature-256"))
        try:
            payload = json.loads(body.decode("utf-8") or "null")
        except (UnicodeDecodeError, ValueError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

        event = request.headers.get("x-github-event", "")
        if event == "ping":
            return {"success": True, "ok": True, "message": "pong"}
        if event != "push":
            return {"success": True, "ok": True, "ignored": True}

        repository = payload.get("repository") if isinstance(payload, dict) else None
        repo = repository.get("full_name") if isinstance(repository, dict) else None
        if not isinstance(repo, str) or not repo:
            raise HTTPException(status_code=400, detail="Missing repository.full_name")

        ref = payload.get("ref")
        branch = ref[len("refs/heads/"):] if isinstance(ref, str) and ref.startswith("refs/heads/") else None
        refreshed = supervisor.refresh_matching(repo, branch)
        return {"success": True, "ok": True, "refreshed": len(refreshed), "runIds": refreshed}

    return app


def load_settings() -> RunnerSettings:
    """Runner settings from the environment, layered over the LIVEPREVIEW_CONFIG YAML file when set."""
    config_path = os.environ.get("LIVEPREVIEW_CONFIG")
    if config_path:
        return RunnerSettings.from_yaml(Path(config_path))
    return RunnerSettings.from_env()


def create_app(settings: Optional[RunnerSettings] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_dir)
    supervisor = RunSupervisor(settings)
    logger.info(
        "Port pool %s-%s, mode %s, webhook signature %s",
        settings.port_min,
        settings.port_max,
        supervisor.mode,
        "verified" if settings.webhook_secret else "not verified (set GITHUB_WEBHOOK_SECRET)",
    )
    return create_runner_api(supervisor=supervisor, settings=settings)


def main() -> None:
    import uvicorn

    load_dotenv()
    settings = load_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)
