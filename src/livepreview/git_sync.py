"""Clone and update project workspaces from GitHub.

Git runs as a child process with a fixed subcommand allow-list. The access
token only ever travels through ``GIT_CONFIG_*`` environment variables of the
child and is replaced by a marker in all captured output.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import GitCommandError, InvalidCommitSha, InvalidProjectId, InvalidRef, InvalidRepoFormat
from .executor import capture
from .redaction import redact_token
from .runner_helpers import warn_non_fatal
from .system import DEFAULT_DEPS, SystemDeps

logger = logging.getLogger(__name__)

GIT_SUBCOMMANDS = frozenset({"clone", "fetch", "checkout", "pull", "rev-parse", "rev-list"})
KNOWN_GIT_LOCATIONS = ("/usr/bin/git", "/opt/homebrew/bin/git", "/usr/local/bin/git")
GITHUB_EXTRAHEADER_KEY = "http.https://github.com/.extraheader"
GIT_LOCK_MAX_AGE_S = 5 * 60

DIRTY_WORKSPACE_MARKERS = (
    "cannot pull with rebase: You have unstaged changes",
    "Please commit or stash",
    "would be overwritten by merge",
)

MAX_REF_LENGTH = 128
_SLUG_PART_RE = re.compile(r"^[A-Za-z0-9_.-]{1,100}$")
_REF_FORBIDDEN_RE = re.compile(r"[\s~^:?*\[\]\\]")
_COMMIT_SHA_RE = re.compile(r"^[a-fA-F0-9]{40}$")
_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_GITHUB_PREFIX_RE = re.compile(r"^https?://github\.com/", re.IGNORECASE)


class SyncOutcome(str, Enum):
    CLONED = "cloned"
    PULLED = "pulled"
    RECLONED = "recloned"


def normalize_repo_slug(value: object) -> Optional[str]:
    """``owner/name`` from a slug or GitHub URL; None when it has no valid form."""
    raw = str(value or "").strip()
    raw = _GITHUB_PREFIX_RE.sub("", raw)
    if raw.lower().endswith(".git"):
        raw = raw[:-4]
    parts = [p for p in raw.strip("/").split("/") if p]
    if len(parts) != 2:
        return None
    owner, name = parts
    if not _SLUG_PART_RE.match(owner) or not _SLUG_PART_RE.match(name):
        return None
    return f"{owner}/{name}"


def normalize_ref(value: object, default: str = "main") -> Optional[str]:
    candidate = value.strip() if isinstance(value, str) and value.strip() else str(default or "").strip()
    if not candidate or len(candidate) > MAX_REF_LENGTH:
        return None
    if ".." in candidate or candidate.startswith("/") or candidate.endswith("/") or candidate.startswith("-"):
        return None
    if _REF_FORBIDDEN_RE.search(candidate) or any(ord(ch) < 32 or ord(ch) == 127 for ch in candidate):
        return None
    return candidate


def normalize_commit_sha(value: object) -> Optional[str]:
    sha = str(value or "").strip()
    return sha.lower() if _COMMIT_SHA_RE.match(sha) else None


def normalize_project_id(value: object) -> Optional[str]:
    project_id = str(value or "").strip()
    return project_id if _PROJECT_ID_RE.match(project_id) else None


def workspace_dir(root: Path, project_id: str) -> Path:
    normalized = normalize_project_id(project_id)
    if not normalized:
        raise InvalidProjectId(project_id)
    return Path(root) / normalized


def repository_url(slug: str) -> str:
    return f"https://github.com/{slug}.git"


def is_lock_error(message: str) -> bool:
    return "index.lock" in message


def is_dirty_workspace_error(message: str) -> bool:
    return any(marker in message for marker in DIRTY_WORKSPACE_MARKERS)


@dataclass
class GitResult:
    stdout: str
    stderr: str


class GitSynchronizer:
    """The only component that mutates workspace directories."""

    def __init__(
        self,
        *,
        deps: SystemDeps = DEFAULT_DEPS,
        token: Optional[str] = None,
        git_binary: Optional[str] = None,
    ):
        self.deps = deps
        self._token = (token or "").strip() or None
        self._git_binary = git_binary

    @property
    def token(self) -> Optional[str]:
        if self._token:
            return self._token
        return str(self.deps.environ().get("GITHUB_TOKEN") or "").strip() or None

    def resolve_git_binary(self) -> str:
        env = self.deps.environ()
        explicit = self._git_binary or env.get("GIT_BINARY")
        if explicit and self.deps.path_exists(Path(explicit)):
            return explicit

        for entry in str(env.get("PATH") or "").split(os.pathsep):
            if not entry or "/.local/bin" in entry:
                continue
            candidate = Path(entry) / "git"
            if self.deps.path_exists(candidate):
                return str(candidate)

        for location in KNOWN_GIT_LOCATIONS:
            if self.deps.path_exists(Path(location)):
                return location
        return "git"

    def auth_env(self) -> Dict[str, str]:
        env = {"GIT_TERMINAL_PROMPT": "0"}
        token = self.token
        if not token:
            return env
        try:
            existing = max(0, int(str(self.deps.environ().get("GIT_CONFIG_COUNT") or "0")))
        except ValueError:
            existing = 0
        env["GIT_CONFIG_COUNT"] = str(existing + 1)
        env[f"GIT_CONFIG_KEY_{existing}"] = GITHUB_EXTRAHEADER_KEY
        env[f"GIT_CONFIG_VALUE_{existing}"] = f"AUTHORIZATION: bearer {token}"
        return env

    def redact(self, text: str) -> str:
        return redact_token(text, self.token)

    async def run_git(self, cwd: Path, args: Sequence[str], env: Optional[Mapping[str, str]] = None) -> GitResult:
        argv: List[str] = [str(a) for a in args if a is not None and a != ""]
        if not argv or argv[0] not in GIT_SUBCOMMANDS:
            raise ValueError(f"git subcommand not allowed: {argv[0] if argv else '(none)'}")
        merged = {**self.deps.environ(), **(env or {})}
        binary = self.resolve_git_binary()
        logger.debug("git %s (cwd=%s)", " ".join(argv), cwd)
        try:
            proc = await self.deps.spawn_exec(
                binary,
                *argv,
                cwd=str(cwd),
                env=merged,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            message = self.redact(f"git {argv[0]}: spawn failed: {e}")
            raise GitCommandError(message, output=message) from e
        result = await capture(proc)
        stdout, stderr = self.redact(result.stdout), self.redact(result.stderr)
        if result.exit_code != 0:
            message = stderr or stdout or f"git exit {result.exit_code}"
            raise GitCommandError(message, output=message, exit_code=result.exit_code)
        return GitResult(stdout=stdout, stderr=stderr)

    def remove_stale_lock(self, workspace: Path, max_age: float = GIT_LOCK_MAX_AGE_S) -> bool:
        lock_path = Path(workspace) / ".git" / "index.lock"
        if not self.deps.path_exists(lock_path):
            return False
        mtime = self.deps.file_mtime(lock_path)
        if mtime is None:
            return False
        age = self.deps.now() - mtime
        if age < max_age:
            return False
        try:
            self.deps.remove_file(lock_path)
        except OSError as e:
            warn_non_fatal(f"cannot remove stale lock {lock_path}", e, logger)
            return False
        logger.warning("Removed stale index.lock (%ss old) in %s", int(age), workspace)
        return True

    async def _clone(self, url: str, ref: str, workspace: Path, auth: Mapping[str, str]) -> None:
        parent = workspace.parent
        await asyncio.to_thread(parent.mkdir, parents=True, exist_ok=True)
        await self.run_git(parent, ["clone", "--depth", "1", "-b", ref, url, str(workspace)], auth)

    async def sync_repository(self, repo: str, ref: str, workspace: Path) -> SyncOutcome:
        """Clone ``repo`` at ``ref`` into ``workspace`` or bring an existing clone up to date.

        A workspace with local changes that block the pull is deleted and
        cloned again.
        """
        slug = normalize_repo_slug(repo)
        if not slug:
            raise InvalidRepoFormat(repo)
        safe_ref = normalize_ref(ref)
        if not safe_ref:
            raise InvalidRef(ref)
        workspace = Path(workspace)
        url = repository_url(slug)
        auth = self.auth_env()

        async def attempt() -> SyncOutcome:
            if not self.deps.path_exists(workspace):
                await self._clone(url, safe_ref, workspace, auth)
                return SyncOutcome.CLONED
            await self.run_git(workspace, ["fetch", "origin", safe_ref], auth)
            await self.run_git(workspace, ["checkout", safe_ref])
            await self.run_git(workspace, ["pull", "origin", safe_ref, "--rebase"], auth)
            return SyncOutcome.PULLED

        self.remove_stale_lock(workspace)
        try:
            return await attempt()
        except GitCommandError as e:
            message = str(e)
            if is_lock_error(message) and self.remove_stale_lock(workspace):
                return await attempt()
            if is_dirty_workspace_error(message) and self.deps.path_exists(workspace):
                logger.warning("Workspace %s has local changes; removing it and cloning again", workspace)
                await asyncio.to_thread(self.deps.remove_tree, workspace)
                await self._clone(url, safe_ref, workspace, auth)
                return SyncOutcome.RECLONED
            raise

    async def checkout_commit(self, workspace: Path, commit_sha: str, ref: str) -> None:
        sha = normalize_commit_sha(commit_sha)
        if not sha:
            raise InvalidCommitSha(commit_sha)
        safe_ref = normalize_ref(ref)
        if not safe_ref:
            raise InvalidRef(ref)
        workspace = Path(workspace)
        if not self.deps.path_exists(workspace):
            raise GitCommandError(f"workspace missing for checkout: {workspace}")
        auth = self.auth_env()
        self.remove_stale_lock(workspace)
        try:
            await self.run_git(workspace, ["fetch", "origin", safe_ref, "--unshallow"], auth)
        except GitCommandError as e:
            warn_non_fatal(f"--unshallow fetch failed, using plain fetch ({workspace})", e, logger)
            await self.run_git(workspace, ["fetch", "origin", safe_ref], auth)
        await self.run_git(workspace, ["checkout", sha])

    async def has_new_commits(self, workspace: Path, ref: str) -> bool:
        """True when ``origin/<ref>`` is ahead of HEAD. Any failure counts as False."""
        workspace = Path(workspace)
        safe_ref = normalize_ref(ref)
        if not safe_ref or not self.deps.path_exists(workspace):
            return False
        try:
            auth = self.auth_env()
            self.remove_stale_lock(workspace)
            await self.run_git(workspace, ["fetch", "origin", safe_ref], auth)
            result = await self.run_git(workspace, ["rev-list", "--count", f"HEAD..origin/{safe_ref}"], auth)
            return int(result.stdout.strip() or "0") > 0
        except (GitCommandError, ValueError) as e:
            warn_non_fatal(f"new-commit check failed ({workspace})", e, logger)
            return False
