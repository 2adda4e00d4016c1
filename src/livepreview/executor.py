"""Install, build and start steps for preview apps.

Every child process writes into a ``BoundedOutput`` ring buffer; what leaves
this module (exceptions, log lines) has been passed through redaction first.
Builds and start commands have no timeout. Only the tool availability probe
is bounded.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .candidates import package_scripts, read_package_json
from .command_safety import is_sane_command
from .env_resolver import StartEnv, resolve_start_env
from .errors import CommandFailed
from .redaction import redact_output
from .runner_helpers import warn_non_fatal
from .system import DEFAULT_DEPS, SystemDeps

logger = logging.getLogger(__name__)
preview_logger = logging.getLogger("livepreview.preview")

MAX_CAPTURED_OUTPUT_BYTES = 262_144
READ_CHUNK_SIZE = 64 * 1024
MAX_FORWARDED_LINE_BYTES = 16 * 1024
TOOL_PROBE_TIMEOUT = 1.5

@dataclass(frozen=True)
class BuildBinary:
    pattern: re.Pattern
    bin: str
    args: str


NODE_BUILD_BINARIES = (
    BuildBinary(re.compile(r"^vite\s+build", re.IGNORECASE), "node_modules/vite/bin/vite.js", "build"),
    BuildBinary(
        re.compile(r"^react-scripts\s+build", re.IGNORECASE),
        "node_modules/react-scripts/bin/react-scripts.js",
        "build",
    ),
    BuildBinary(
        re.compile(r"^vue-cli-service\s+build", re.IGNORECASE),
        "node_modules/@vue/cli-service/bin/vue-cli-service.js",
        "build",
    ),
)


class BoundedOutput:
    """Byte ring buffer keeping the most recent ``limit`` bytes."""

    def __init__(self, limit: int = MAX_CAPTURED_OUTPUT_BYTES):
        self.limit = limit
        self.truncated = False
        self._buf = bytearray()

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._buf.extend(chunk)
        overflow = len(self._buf) - self.limit
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True

    def __len__(self) -> int:
        return len(self._buf)

    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace")

    def render(self, env: Optional[Mapping[str, object]] = None) -> str:
        redacted = redact_output(self.text(), env)
        if not self.truncated:
            return redacted
        return f"[output truncated to last {self.limit} bytes]\n{redacted}"


@dataclass
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int


async def pump_stream(stream: Any, sink: Callable[[bytes], None]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        sink(chunk)


async def pump_lines(stream: Any, sink: Callable[[bytes], None], max_line: int = MAX_FORWARDED_LINE_BYTES) -> None:
    """Like ``pump_stream`` but hands ``sink`` whole lines.

    A line longer than ``max_line`` is flushed in pieces of that size.
    """
    if stream is None:
        return
    pending = b""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            sink(line)
        while len(pending) > max_line:
            sink(pending[:max_line])
            pending = pending[max_line:]
    if pending:
        sink(pending)


def kill_quietly(proc: Any) -> None:
    if getattr(proc, "returncode", None) is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def capture(proc: Any, env: Optional[Mapping[str, object]] = None) -> CommandOutput:
    """Drain stdout/stderr into bounded buffers and wait for exit.

    Cancelling the awaiting task kills the child.
    """
    out, err = BoundedOutput(), BoundedOutput()
    try:
        await asyncio.gather(pump_stream(proc.stdout, out.append), pump_stream(proc.stderr, err.append))
        code = await proc.wait()
    except asyncio.CancelledError:
        kill_quietly(proc)
        raise
    return CommandOutput(stdout=out.render(env), stderr=err.render(env), exit_code=int(code if code is not None else -1))


def _merged_env(deps: SystemDeps, env: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {**deps.environ(), **(env or {})}


def _raise_for_exit(result: CommandOutput, label: str) -> CommandOutput:
    if result.exit_code == 0:
        return result
    message = result.stderr or result.stdout or f"{label} exit {result.exit_code}"
    raise CommandFailed(message, output=message, exit_code=result.exit_code)


async def run_command(
    cwd: Path,
    command: str,
    env: Optional[Mapping[str, str]] = None,
    deps: SystemDeps = DEFAULT_DEPS,
) -> CommandOutput:
    """Run ``command`` through the shell; raise ``CommandFailed`` on non-zero exit."""
    merged = _merged_env(deps, env)
    try:
        proc = await deps.spawn_shell(
            command,
            cwd=str(cwd),
            env=merged,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        message = redact_output(f"spawn failed: {e}", merged)
        raise CommandFailed(message, output=message) from e
    return _raise_for_exit(await capture(proc, merged), "command")


async def run_package_manager(
    cwd: Path,
    tool: str,
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    deps: SystemDeps = DEFAULT_DEPS,
) -> CommandOutput:
    argv = [str(a) for a in (args or []) if a is not None and a != ""]
    if not argv:
        raise ValueError(f"{tool}: args must be a non-empty sequence")
    merged = _merged_env(deps, env)
    try:
        proc = await deps.spawn_exec(
            tool,
            *argv,
            cwd=str(cwd),
            env=merged,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        message = redact_output(f"{tool}: spawn failed: {e}", merged)
        raise CommandFailed(message, output=message) from e
    return _raise_for_exit(await capture(proc, merged), tool)


async def is_command_available(tool: str, deps: SystemDeps = DEFAULT_DEPS, timeout: float = TOOL_PROBE_TIMEOUT) -> bool:
    """``<tool> --version`` exits 0 within ``timeout`` seconds."""
    try:
        proc = await deps.spawn_exec(
            tool,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        warn_non_fatal(f"tool probe failed ({tool})", e, logger)
        return False
    try:
        code = await asyncio.wait_for(proc.wait(), timeout)
    except asyncio.TimeoutError:
        kill_quietly(proc)
        warn_non_fatal(f"tool probe timed out ({tool})", f"no answer within {timeout}s", logger)
        return False
    return code == 0


async def get_package_manager(app_dir: Path, deps: SystemDeps = DEFAULT_DEPS) -> str:
    app_dir = Path(app_dir)
    if (app_dir / "pnpm-lock.yaml").is_file() and await is_command_available("pnpm", deps):
        return "pnpm"
    if (app_dir / "yarn.lock").is_file() and await is_command_available("yarn", deps):
        return "yarn"
    return "npm"


def get_build_script(app_dir: Path) -> Optional[str]:
    script = package_scripts(read_package_json(app_dir)).get("build")
    if not is_sane_command(script):
        return None
    return script.strip()


def warn_unsafe_scripts(app_dir: Path) -> List[str]:
    """Log package.json scripts that are only a bare package-manager call."""
    bad: List[str] = []
    for name, value in package_scripts(read_package_json(app_dir)).items():
        if not is_sane_command(value):
            bad.append(str(name))
            warn_non_fatal("unsafe package.json script", f"{name!r} in {Path(app_dir) / 'package.json'}", logger)
    return bad


async def install_dependencies(app_dir: Path, manager: str, deps: SystemDeps = DEFAULT_DEPS) -> None:
    if manager in ("pnpm", "yarn"):
        await run_package_manager(app_dir, manager, ["install", "--ignore-scripts"], deps=deps)
        return
    if (Path(app_dir) / "package-lock.json").is_file():
        await run_package_manager(app_dir, "npm", ["ci", "--ignore-scripts"], deps=deps)
    else:
        await run_package_manager(app_dir, "npm", ["install", "--ignore-scripts"], deps=deps)


def _delegates_to_manager(script: Optional[str]) -> bool:
    if not script:
        return True
    s = script.strip()
    if "&&" in s or re.match(r"^npm(\s|$)", s, re.IGNORECASE):
        return True
    return s.startswith("echo ")


async def run_build_step(app_dir: Path, manager: str, script: Optional[str], deps: SystemDeps = DEFAULT_DEPS) -> None:
    if _delegates_to_manager(script):
        await run_package_manager(app_dir, manager, ["run", "build"], deps=deps)
        return

    for binary in NODE_BUILD_BINARIES:
        if binary.pattern.match(script):
            if (Path(app_dir) / binary.bin).is_file():
                logger.info("[build] node direct: %s %s", binary.bin, binary.args)
                await run_package_manager(app_dir, "node", [binary.bin, binary.args], deps=deps)
                return
            break

    if manager in ("pnpm", "yarn"):
        logger.info("[build] %s run build", manager)
        await run_package_manager(app_dir, manager, ["run", "build"], deps=deps)
        return
    logger.info("[build] npx fallback: %s", script)
    await run_command(app_dir, f"npx {script}", deps=deps)


async def run_build_node_direct(app_dir: Path, deps: SystemDeps = DEFAULT_DEPS) -> str:
    """Install dependencies with lifecycle scripts disabled, then build.

    Returns the package manager that was used.
    """
    manager = await get_package_manager(app_dir, deps)
    logger.info("[build] package manager: %s (%s)", manager, app_dir)
    await install_dependencies(app_dir, manager, deps)
    await run_build_step(app_dir, manager, get_build_script(app_dir), deps)
    return manager


async def run_build(app_dir: Path, config: Any, deps: SystemDeps = DEFAULT_DEPS) -> CommandOutput:
    """Run the configured (already validated) build command."""
    logger.info("[build] %s", config.build_command)
    return await run_command(app_dir, config.build_command, deps=deps)


_DEV_RE = re.compile(r"^(npm|pnpm|yarn)\s+run\s+dev(\s|$)")
_START_RE = re.compile(r"^(npm|pnpm|yarn)\s+run\s+start(\s|$)")
_NPX_VITE_RE = re.compile(r"^npx\s+vite(\s|$)")


def effective_start_command(command: Optional[str], port: int) -> str:
    """Append host/port flags for dev-server shapes that ignore ``PORT``."""
    cmd = (command or "").strip()
    if "--port" in cmd:
        return cmd
    if _DEV_RE.match(cmd):
        return f"{cmd} -- --host 127.0.0.1 --port {port}"
    if _START_RE.match(cmd):
        return f"{cmd} -- --port {port}"
    if _NPX_VITE_RE.match(cmd):
        return f"{cmd} --host 127.0.0.1 --port {port}"
    return cmd


@dataclass
class AppProcess:
    """A started preview app and the environment metadata it was started with."""

    process: Any
    port: int
    command: str
    injected_keys: List[str] = field(default_factory=list)
    placeholder_mode: str = ""
    backend_detected: bool = False
    pump_tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def returncode(self) -> Optional[int]:
        return getattr(self.process, "returncode", None)

    def terminate(self) -> None:
        """Send SIGTERM and return immediately."""
        if self.returncode is not None:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        return await self.process.wait()


def _forward_output(port: int, env: Mapping[str, str], level: int) -> Callable[[bytes], None]:
    def sink(chunk: bytes) -> None:
        text = redact_output(chunk.decode("utf-8", errors="replace"), env).rstrip("\r\n")
        if text:
            preview_logger.log(level, "[preview %s] %s", port, text)

    return sink


async def start_app(
    app_dir: Path,
    port: int,
    config: Any,
    deps: SystemDeps = DEFAULT_DEPS,
    env_resolver: Callable[..., StartEnv] = resolve_start_env,
) -> AppProcess:
    """Spawn the long-lived app process bound to ``port``."""
    process_env = deps.environ()
    start_env = env_resolver(app_dir, config, process_env)
    env = {**process_env, **start_env.env, "PORT": str(port)}
    command = effective_start_command(config.start_command, port)
    logger.info("[start] %s (port %s, %s)", command, port, app_dir)
    try:
        proc = await deps.spawn_shell(
            command,
            cwd=str(app_dir),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        message = redact_output(str(e), env)
        preview_logger.error("[preview %s] error: %s", port, message)
        raise CommandFailed(message, output=message) from e

    app = AppProcess(
        process=proc,
        port=port,
        command=command,
        injected_keys=list(start_env.injected_keys),
        placeholder_mode=start_env.placeholder_mode,
        backend_detected=start_env.backend_detected,
    )
    app.pump_tasks = [
        asyncio.create_task(pump_lines(proc.stdout, _forward_output(port, env, logging.INFO))),
        asyncio.create_task(pump_lines(proc.stderr, _forward_output(port, env, logging.WARNING))),
    ]
    return app


def is_tool_help_output(message: object) -> bool:
    """True when ``message`` is git or npm usage text rather than a real error."""
    t = str(message or "")
    if "Usage: git" in t or ("git [-v | --version]" in t and "<command>" in t):
        return True
    if "npm <command>" in t:
        return True
    if "Usage:" in t and "npm install" in t and "npm run" in t:
        return True
    return "Specify configs" in t and "npm help config" in t


def normalize_build_error(message: object) -> str:
    t = str(message or "")
    if "Usage: git" in t or ("git [-v | --version]" in t and "<command>" in t):
        return (
            "Build/start failed: 'git' appears to be invoked without a subcommand "
            "(for example in a postinstall script). Check package.json scripts and dependencies."
        )
    if is_tool_help_output(t):
        return (
            "Build/start failed: 'npm' is invoked without a subcommand. "
            "Check package.json scripts (build, postinstall, start) and dependencies; "
            "a script must not be just 'npm' or 'npm -h'."
        )
    return t
