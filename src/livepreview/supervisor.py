"""Run registry, lifecycle state machine and the build/start pipeline.

A ``RunSupervisor`` owns the runs of one runner process together with the
port pool. Control requests only ever touch the registry synchronously; the
expensive work (git sync, install, build, start, readiness probing) happens in
one background task per run. Refresh and stop cancel that task and terminate
the child before anything new is scheduled.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx

from .candidates import Candidate, list_candidates, resolve_app_dir
from .config import (
    BOOT_MODE_STRICT,
    ResolvedConfig,
    RunnerSettings,
    coerce_tristate,
    resolve_best_effort_start_command,
    resolve_boot_mode,
    resolve_config,
)
from .errors import (
    CommandFailed,
    InvalidCommitSha,
    InvalidProjectId,
    InvalidRef,
    InvalidRepoFormat,
    PreviewError,
    RunNotFound,
    RunStateError,
)
from .executor import (
    AppProcess,
    is_tool_help_output,
    normalize_build_error,
    run_build,
    run_build_node_direct,
    start_app,
    warn_unsafe_scripts,
)
from .git_sync import (
    GitSynchronizer,
    normalize_commit_sha,
    normalize_project_id,
    normalize_ref,
    normalize_repo_slug,
    workspace_dir,
)
from .network import PortPool
from .redaction import sanitize_diagnostic_text
from .runner_helpers import error_message, warn_non_fatal
from .system import DEFAULT_DEPS, SystemDeps

logger = logging.getLogger(__name__)

MAX_BOOT_CANDIDATES = 8
MAX_REPORTED_FAILURES = 4
MAX_RUN_LOGS = 500
READY_POLL_INTERVAL = 0.5
READY_REQUEST_TIMEOUT = 5.0

RUN_ID_RE = re.compile(r"^run_[0-9]{10,}_[a-z0-9]{4,20}$", re.IGNORECASE)

StatusProbe = Callable[[int], Awaitable[Optional[int]]]


class RunStatus(str, Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


def normalize_run_id(value: object) -> Optional[str]:
    run_id = str(value or "").strip()
    return run_id if RUN_ID_RE.match(run_id) else None


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Run:
    run_id: str
    project_id: str
    repo: str
    branch_or_commit: str
    port: int
    preview_url: str
    started_at: str
    status: RunStatus = RunStatus.STARTING
    commit_sha: Optional[str] = None
    boot_mode: str = "best_effort"
    inject_placeholders: Optional[bool] = None
    error: Optional[str] = None
    degraded: bool = False
    candidate: Optional[str] = None
    ready_at: Optional[str] = None
    stopped_at: Optional[str] = None
    logs: List[Dict[str, str]] = field(default_factory=list)
    app: Optional[AppProcess] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    generation: int = 0

    @property
    def active(self) -> bool:
        return self.status in (RunStatus.STARTING, RunStatus.READY)

    def summary(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "projectId": self.project_id,
            "repo": self.repo,
            "branchOrCommit": self.branch_or_commit,
            "status": self.status.value,
            "port": self.port,
            "bootMode": self.boot_mode,
            "degraded": self.degraded,
            "previewUrl": self.preview_url,
            "startedAt": self.started_at,
            "readyAt": self.ready_at,
            "stoppedAt": self.stopped_at,
        }

    def to_status(self) -> Dict[str, Any]:
        data = self.summary()
        data.update(
            {
                "commitSha": self.commit_sha,
                "error": self.error,
                "candidate": self.candidate,
                "logs": list(self.logs),
            }
        )
        return data


class RunSupervisor:
    """Owns runs, their ports and their child processes."""

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        deps: SystemDeps = DEFAULT_DEPS,
        pool: Optional[PortPool] = None,
        git: Optional[GitSynchronizer] = None,
        status_probe: Optional[StatusProbe] = None,
    ):
        self.settings = settings
        self.deps = deps
        self.pool = pool or PortPool(
            settings.port_min,
            settings.port_max,
            bind_host=settings.bind_host,
            probe_bind=settings.probe_bind,
        )
        self.git = git or GitSynchronizer(deps=deps, token=settings.github_token, git_binary=settings.git_binary)
        self._status_probe = status_probe
        self._runs: Dict[str, Run] = {}
        self._project_locks: Dict[str, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()
        self.started_at = deps.now()

    # -- registry -----------------------------------------------------------

    @property
    def mode(self) -> str:
        return "real" if self.settings.use_real_build else "stub"

    def _timestamp(self) -> str:
        return _iso(self.deps.now())

    def _new_run_id(self) -> str:
        while True:
            run_id = f"run_{int(self.deps.now() * 1000):013d}_{secrets.token_hex(4)}"
            if run_id not in self._runs:
                return run_id

    def get(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def list_runs(self, project_id: Optional[str] = None, include_stopped: bool = False) -> List[Run]:
        runs = []
        for run in self._runs.values():
            if project_id is not None and run.project_id != project_id:
                continue
            if not include_stopped and run.status == RunStatus.STOPPED:
                continue
            runs.append(run)
        return runs

    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in RunStatus}
        for run in self._runs.values():
            totals[run.status.value] += 1
        totals["active"] = totals["starting"] + totals["ready"]
        totals["total"] = len(self._runs)
        return totals

    def push_log(self, run: Run, message: str) -> None:
        run.logs.append({"time": self._timestamp(), "message": sanitize_diagnostic_text(message)})
        if len(run.logs) > MAX_RUN_LOGS:
            del run.logs[: len(run.logs) - MAX_RUN_LOGS]

    # -- control operations ---------------------------------------------------

    def start_run(
        self,
        repo: Any,
        branch_or_commit: Any = "main",
        project_id: Any = None,
        commit_sha: Any = None,
        boot_mode: Any = None,
        inject_placeholders: Any = None,
    ) -> Run:
        """Validate the request, reserve a port and schedule the pipeline.

        Nothing is awaited between allocating the port and registering the
        run, so two concurrent starts can never share a port.
        """
        slug = normalize_repo_slug(repo)
        if not slug:
            raise InvalidRepoFormat(repo)
        ref = normalize_ref(branch_or_commit)
        if not ref:
            raise InvalidRef(branch_or_commit)
        project = normalize_project_id(project_id)
        if not project:
            raise InvalidProjectId(project_id)
        sha = None
        if commit_sha not in (None, ""):
            sha = normalize_commit_sha(commit_sha)
            if not sha:
                raise InvalidCommitSha(commit_sha)

        port = self.pool.allocate()
        run = Run(
            run_id=self._new_run_id(),
            project_id=project,
            repo=slug,
            branch_or_commit=ref,
            commit_sha=sha,
            port=port,
            preview_url=self.settings.preview_url(port),
            started_at=self._timestamp(),
            boot_mode=resolve_boot_mode(boot_mode, self.settings.boot_mode),
            inject_placeholders=coerce_tristate(inject_placeholders),
        )
        self._runs[run.run_id] = run
        self.push_log(run, f"Start requested ({slug} @ {ref}). Run: {run.run_id}")
        logger.info("Run %s: %s @ %s on port %s (%s)", run.run_id, slug, ref, port, self.mode)
        self._schedule(run)
        return run

    async def stop_run(self, run_id: str) -> Run:
        run = self.get(run_id)
        if run.status == RunStatus.STOPPED:
            return run
        run.generation += 1
        self._cancel_pipeline(run)
        self._terminate_app(run)
        run.status = RunStatus.STOPPED
        run.stopped_at = self._timestamp()
        self.push_log(run, "Run stopped.")
        logger.info("Run %s stopped (port %s released)", run.run_id, run.port)
        await self.pool.release(run.port)
        return run

    async def stop_project(self, project_id: Any) -> List[str]:
        project = normalize_project_id(project_id)
        if not project:
            raise InvalidProjectId(project_id)
        stopped = []
        for run in list(self._runs.values()):
            if run.project_id != project or run.status == RunStatus.STOPPED:
                continue
            await self.stop_run(run.run_id)
            stopped.append(run.run_id)
        return stopped

    async def refresh_run(self, run_id: str, boot_mode: Any = None, inject_placeholders: Any = None) -> Run:
        """Re-run the pipeline for ``run_id`` on the port it already owns."""
        run = self.get(run_id)
        if run.status == RunStatus.STOPPED:
            raise RunStateError("Run is stopped; start a new run instead")
        if boot_mode is not None:
            run.boot_mode = resolve_boot_mode(boot_mode, self.settings.boot_mode)
        if inject_placeholders is not None:
            run.inject_placeholders = coerce_tristate(inject_placeholders)

        run.generation += 1
        generation = run.generation
        self._cancel_pipeline(run)
        self._terminate_app(run)
        run.status = RunStatus.STARTING
        run.error = None
        run.degraded = False
        run.ready_at = None
        run.candidate = None
        run.logs = []
        self.push_log(run, "Refresh started.")

        await self.pool.clear_placeholder(run.port)
        if run.generation == generation and run.status == RunStatus.STARTING:
            self._schedule(run)
        return run

    def refresh_matching(self, repo: str, branch: Optional[str] = None) -> List[str]:
        """Schedule a refresh for every ready run of ``repo`` (and ``branch``)."""
        refreshed = []
        for run in list(self._runs.values()):
            if run.repo != repo or run.status != RunStatus.READY:
                continue
            if branch is not None and run.branch_or_commit != branch:
                continue
            self._spawn(self._refresh_quietly(run.run_id))
            refreshed.append(run.run_id)
        if refreshed:
            logger.info("Webhook: push to %s %s -> refreshing %d preview(s)", repo, branch or "*", len(refreshed))
        return refreshed

    async def _refresh_quietly(self, run_id: str) -> None:
        try:
            await self.refresh_run(run_id)
        except PreviewError as e:
            warn_non_fatal(f"refresh of {run_id} skipped", e, logger)

    async def auto_refresh_once(self) -> List[str]:
        refreshed = []
        for run in list(self._runs.values()):
            if run.status != RunStatus.READY:
                continue
            workspace = workspace_dir(self.settings.workspace_root, run.project_id)
            if await self.git.has_new_commits(workspace, run.branch_or_commit):
                if run.status != RunStatus.READY:
                    continue
                logger.info("Auto-refresh %s: new commits on %s", run.run_id, run.branch_or_commit)
                await self.refresh_run(run.run_id)
                refreshed.append(run.run_id)
        return refreshed

    async def auto_refresh_loop(self, interval: Optional[float] = None) -> None:
        interval = self.settings.auto_refresh_interval if interval is None else interval
        if not self.settings.use_real_build or interval <= 0:
            return
        logger.info("Auto-refresh: checking for new commits every %ss", interval)
        while True:
            await self.deps.sleep(interval)
            try:
                await self.auto_refresh_once()
            except (PreviewError, OSError) as e:
                warn_non_fatal("auto-refresh pass failed", e, logger)

    async def shutdown(self) -> None:
        for run in list(self._runs.values()):
            if run.status != RunStatus.STOPPED:
                await self.stop_run(run.run_id)
        for task in list(self._background):
            task.cancel()
        await self.pool.close()

    # -- pipeline -----------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _schedule(self, run: Run) -> None:
        if self.settings.use_real_build:
            self.push_log(run, "Queued for build and start ...")
        run.task = self._spawn(self._pipeline(run, run.generation))

    def _cancel_pipeline(self, run: Run) -> None:
        task, run.task = run.task, None
        if task is not None and not task.done():
            task.cancel()

    def _terminate_app(self, run: Run) -> None:
        app, run.app = run.app, None
        if app is not None:
            app.terminate()

    def _current(self, run: Run, generation: int) -> bool:
        return run.generation == generation and run.status == RunStatus.STARTING

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        lock = self._project_locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._project_locks[project_id] = lock
        return lock

    async def _pipeline(self, run: Run, generation: int) -> None:
        try:
            if self.settings.use_real_build:
                await self._boot_real(run, generation)
            else:
                await self._boot_simulated(run, generation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._current(run, generation):
                return
            if not isinstance(e, (PreviewError, OSError)):
                logger.exception("Run %s: unexpected pipeline error", run.run_id)
            await self._mark_failed(run, error_message(e), generation)

    async def _boot_simulated(self, run: Run, generation: int) -> None:
        if not await self.pool.show_placeholder(run.port):
            self.push_log(run, f"Placeholder could not bind port {run.port}")
        await self.deps.sleep(max(0, self.settings.simulate_delay_ms) / 1000.0)
        if self._current(run, generation):
            self._mark_ready(run)

    async def _boot_real(self, run: Run, generation: int) -> None:
        workspace = workspace_dir(self.settings.workspace_root, run.project_id)
        async with self._project_lock(run.project_id):
            self.push_log(run, f"Git: syncing {run.repo} @ {run.branch_or_commit} ...")
            outcome = await self.git.sync_repository(run.repo, run.branch_or_commit, workspace)
            self.push_log(run, f"Git: {outcome.value}")
            if run.commit_sha:
                await self.git.checkout_commit(workspace, run.commit_sha, run.branch_or_commit)
                self.push_log(run, f"Git: checked out {run.commit_sha[:12]}")

            root_config = resolve_config(workspace, workspace)
            for warning in root_config.warnings:
                self.push_log(run, f"Config: {warning}")
            candidates = list_candidates(workspace, root_config, MAX_BOOT_CANDIDATES)
            if not candidates:
                candidates = [resolve_app_dir(workspace, root_config)]
            if candidates[0].app_dir_relative != ".":
                self.push_log(
                    run,
                    f'Monorepo detected: using app directory "{candidates[0].app_dir_relative}" '
                    f"({candidates[0].source}).",
                )

            chosen = await self._boot_candidates(run, workspace, candidates)
            if not self._current(run, generation):
                return
            run.candidate = chosen.app_dir_relative
            self.push_log(run, f"Active candidate: {chosen.describe()}")
            self._mark_ready(run)

    async def _boot_candidates(self, run: Run, workspace: Path, candidates: List[Candidate]) -> Candidate:
        """Try each candidate in order; the first one that answers wins.

        Raises ``CommandFailed`` with a summary once every candidate failed.
        """
        best_effort = run.boot_mode != BOOT_MODE_STRICT
        failures: List[Tuple[str, str]] = []
        total = len(candidates)

        for index, candidate in enumerate(candidates, start=1):
            label = candidate.describe()
            self.push_log(run, f"Candidate {index}/{total}: {label}")
            for name in warn_unsafe_scripts(candidate.app_dir):
                self.push_log(run, f"Warning: package.json script {name!r} only calls the package manager")

            config = resolve_config(candidate.app_dir, workspace)
            if run.inject_placeholders is not None:
                config.inject_placeholders = run.inject_placeholders

            build_error = await self._build(run, candidate, config)
            if build_error is not None:
                if not best_effort:
                    failures.append((label, normalize_build_error(build_error)))
                    continue
                reason = await self._boot_fallback(run, candidate, config, f"build failed: {build_error}")
                if reason is None:
                    return candidate
                failures.append((label, reason))
                continue

            self.push_log(run, f"Starting app ({config.start_command}) on port {run.port} ...")
            start_error = await self._start(run, candidate, config, self.settings.ready_timeout)
            if start_error is None:
                run.degraded = False
                self.push_log(run, "Ready")
                return candidate
            if not best_effort:
                failures.append((label, start_error))
                continue
            reason = await self._boot_fallback(
                run, candidate, config, f"start failed: {start_error}", skip=config.start_command
            )
            if reason is None:
                return candidate
            failures.append((label, reason))

        raise CommandFailed(self._failure_summary(failures, total))

    async def _boot_fallback(
        self,
        run: Run,
        candidate: Candidate,
        config: ResolvedConfig,
        cause: str,
        skip: Optional[str] = None,
    ) -> Optional[str]:
        """Start the candidate with its dev/start fallback. Returns a failure reason or None."""
        fallback = await resolve_best_effort_start_command(candidate.app_dir, config, self.deps)
        if not fallback:
            return f"{cause} (no dev/start fallback available)"
        if skip is not None and fallback.strip() == skip.strip():
            return cause
        self.push_log(run, f"Best-effort: {cause.splitlines()[0]}. Trying fallback ({fallback}) ...")
        error = await self._start(
            run, candidate, config.with_start_command(fallback), self.settings.fallback_ready_timeout
        )
        if error is not None:
            return f"{cause}; fallback ({fallback}) failed: {error}"
        run.degraded = True
        self.push_log(run, "Ready (best-effort fallback, the regular build did not succeed)")
        return None

    async def _build(self, run: Run, candidate: Candidate, config: ResolvedConfig) -> Optional[str]:
        """Install and build. Returns the error text or None on success."""
        self.push_log(run, f"Build: installing and building in {candidate.app_dir_relative} ...")
        try:
            manager = await run_build_node_direct(candidate.app_dir, self.deps)
        except CommandFailed as e:
            if not is_tool_help_output(str(e)):
                return str(e)
            self.push_log(run, f"Build: retrying with configured command ({config.build_command})")
            try:
                await run_build(candidate.app_dir, config, self.deps)
            except CommandFailed as retry:
                return str(retry)
            manager = "configured"
        self.push_log(run, f"Build finished ({manager})")
        return None

    async def _start(self, run: Run, candidate: Candidate, config: ResolvedConfig, timeout: float) -> Optional[str]:
        """Start the app and wait for it to answer. Returns the error text or None."""
        try:
            app = await start_app(candidate.app_dir, run.port, config, self.deps)
        except CommandFailed as e:
            return str(e)
        run.app = app
        if app.injected_keys:
            self.push_log(run, f"Env placeholders injected ({app.placeholder_mode}): {', '.join(app.injected_keys)}")

        self.push_log(run, f"Waiting for app (timeout {int(timeout)}s) ...")
        outcome, detail = await self._wait_for_ready(app, timeout)
        if outcome == "exited":
            if run.app is app:
                run.app = None
            return f"app exited with code {detail} before answering on port {run.port}"
        if outcome == "timeout":
            self.push_log(run, f"App did not answer on port {run.port} within {int(timeout)}s; keeping it running")
            logger.warning("Run %s: readiness timeout after %ss on port %s", run.run_id, timeout, run.port)
        self._spawn(self._watch_exit(run, app))
        return None

    async def _wait_for_ready(self, app: AppProcess, timeout: float) -> Tuple[str, Optional[int]]:
        """Poll ``GET /`` until any status below 500, child exit, or ``timeout``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        exited = asyncio.ensure_future(app.wait())
        url = f"http://{self.settings.bind_host}:{app.port}/"
        try:
            async with httpx.AsyncClient(timeout=READY_REQUEST_TIMEOUT) as client:

                async def probe() -> Optional[int]:
                    if self._status_probe is not None:
                        return await self._status_probe(app.port)
                    try:
                        response = await client.get(url)
                    except httpx.HTTPError:
                        return None
                    return response.status_code

                while True:
                    if exited.done():
                        return "exited", exited.result()
                    status = await probe()
                    if status is not None and 200 <= status < 500:
                        return "ready", status
                    if loop.time() >= deadline:
                        return "timeout", status
                    await asyncio.wait({exited}, timeout=READY_POLL_INTERVAL)
        finally:
            if not exited.done():
                exited.cancel()

    async def _watch_exit(self, run: Run, app: AppProcess) -> None:
        code = await app.wait()
        if run.app is not app:
            return
        run.app = None
        if run.status == RunStatus.READY:
            run.status = RunStatus.FAILED
            run.error = f"Preview app exited (exit {code}). Refresh the preview to restart it."
            self.push_log(run, run.error)
            logger.warning("Run %s: preview app exited with code %s", run.run_id, code)

    def _failure_summary(self, failures: List[Tuple[str, str]], checked: int) -> str:
        if not failures:
            return "No preview candidate could be started."
        lines = [f"{label}: {reason}" for label, reason in failures[:MAX_REPORTED_FAILURES]]
        if len(failures) > MAX_REPORTED_FAILURES:
            lines.append(f"... plus {len(failures) - MAX_REPORTED_FAILURES} more")
        lines.append(f"Checked candidates: {checked}")
        return "No preview candidate could be started.\n" + "\n".join(lines)

    def _mark_ready(self, run: Run) -> None:
        run.status = RunStatus.READY
        run.ready_at = self._timestamp()
        run.error = None
        logger.info(
            "Preview ready%s: %s (run %s)", " (best-effort)" if run.degraded else "", run.preview_url, run.run_id
        )

    async def _mark_failed(self, run: Run, message: str, generation: int) -> None:
        text = sanitize_diagnostic_text(message)
        self._terminate_app(run)
        run.status = RunStatus.FAILED
        run.error = text
        run.degraded = False
        self.push_log(run, f"Failed:\n{text}")
        logger.error("Run %s failed: %s", run.run_id, text)
        await self.pool.show_placeholder(run.port, text)
        if run.generation != generation or run.status != RunStatus.FAILED:
            # stopped or refreshed while the error page was starting
            await self.pool.clear_placeholder(run.port)
