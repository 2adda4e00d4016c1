"""Allow-list based validation of configuration-supplied shell commands.

Commands come from ``visudev.config.json`` and ``package.json`` inside
untrusted repositories. A command is executable only if it contains no shell
metacharacters and every ``&&`` segment matches one of ``ALLOWED_COMMANDS``.
The table is an approximation of "safe"; anything it does not cover is
rejected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AllowedCommand:
    pattern: re.Pattern
    rationale: str

    def matches(self, segment: str) -> bool:
        return bool(self.pattern.match(segment))


ALLOWED_COMMANDS: tuple[AllowedCommand, ...] = (
    AllowedCommand(re.compile(r"^npm\s+(run|ci|install|exec)\b"), "npm script, clean install, install or local bin"),
    AllowedCommand(re.compile(r"^pnpm\s+(run|install|exec)\b"), "pnpm script, install or local bin"),
    AllowedCommand(re.compile(r"^yarn\s+(run|install)\b"), "yarn script or install"),
    AllowedCommand(re.compile(r"^npx\s+[a-z0-9@/_-]+"), "package runner with a plain package name"),
    AllowedCommand(re.compile(r"^node\s+[\w./@-]+"), "node with a script path"),
    AllowedCommand(re.compile(r"^vite(\s|$)"), "vite dev server or build"),
    AllowedCommand(re.compile(r"^next\s+(dev|start|build)\b"), "next.js lifecycle commands"),
    AllowedCommand(re.compile(r"^react-scripts\s+(start|build)\b"), "create-react-app lifecycle commands"),
    AllowedCommand(re.compile(r"^serve(\s|$)"), "static file server"),
)

# pipes, redirection, substitution, statement separators, newlines
FORBIDDEN_CHARS_RE = re.compile(r"[|;<>`$\n\r]")
SINGLE_AMPERSAND_RE = re.compile(r"(^|[^&])&([^&]|$)")

_INSTALL_SEGMENT_RE = re.compile(r"^(npm\s+(?:ci|install)|pnpm\s+install|yarn\s+install)(?=\s|$)(.*)$")
_NPM_FLAG_ONLY_RE = re.compile(r"^npm\s+--?[a-z-]+$", re.IGNORECASE)


def _segments(command: str) -> list[str]:
    return [s.strip() for s in command.split("&&")]


def is_safe(command: Optional[str]) -> bool:
    if not isinstance(command, str):
        return False
    trimmed = command.strip()
    if not trimmed:
        return False
    if FORBIDDEN_CHARS_RE.search(trimmed):
        return False
    if SINGLE_AMPERSAND_RE.search(trimmed):
        return False
    parts = [p for p in _segments(trimmed) if p]
    if not parts:
        return False
    return all(any(rule.matches(p) for rule in ALLOWED_COMMANDS) for p in parts)


def _force_ignore_scripts(segment: str) -> str:
    m = _INSTALL_SEGMENT_RE.match(segment)
    if not m:
        return segment
    if "--ignore-scripts" in segment.split():
        return segment
    head, rest = m.group(1), m.group(2)
    return f"{head} --ignore-scripts{rest}"


def ensure_ignore_scripts(command: str) -> str:
    """Add ``--ignore-scripts`` to every install segment that lacks it."""
    if not isinstance(command, str):
        return command
    parts = _segments(command.strip())
    return " && ".join(_force_ignore_scripts(p) for p in parts if p)


def sanitize(command: Optional[str]) -> Optional[str]:
    """Return the executable form of ``command`` or None when it is not safe."""
    if not is_safe(command):
        return None
    return ensure_ignore_scripts(command.strip())


def is_sane_command(command: Optional[str]) -> bool:
    """Reject empty scripts and bare package-manager invocations.

    ``npm``, ``npm -h`` or ``npm --help`` only print usage text, which used to
    surface as a confusing build error.
    """
    if not isinstance(command, str):
        return False
    s = command.strip()
    if not s:
        return False
    if s in {"npm", "npm -h", "npm --help"}:
        return False
    if _NPM_FLAG_ONLY_RE.match(s):
        return False
    return True


def explain(command: str) -> list[tuple[str, Optional[str]]]:
    """Pair each ``&&`` segment with the rationale of the rule accepting it."""
    out: list[tuple[str, Optional[str]]] = []
    for part in _segments(command or ""):
        if not part:
            continue
        rule = next((r for r in ALLOWED_COMMANDS if r.matches(part)), None)
        out.append((part, rule.rationale if rule else None))
    return out
