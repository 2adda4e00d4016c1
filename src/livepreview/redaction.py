"""Secret redaction for captured process output, Run logs and error text."""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional

REDACTED = "[REDACTED]"
REDACTED_GITHUB_TOKEN = "[REDACTED_GITHUB_TOKEN]"
REDACTED_JWT = "[REDACTED_JWT]"

SENSITIVE_ENV_KEY_RE = re.compile(r"(token|secret|password|apikey|api_key|service_role|anon_key)", re.IGNORECASE)
LONG_SECRET_RE = re.compile(r"[A-Za-z0-9+/_=-]{32,}")
MIN_SECRET_LENGTH = 8

MAX_DIAGNOSTIC_CHARS = 12_000
_DIAGNOSTIC_KEEP = 5_800

_BEARER_RE = re.compile(r"(authorization\s*:\s*bearer\s+)[a-z0-9._-]{12,}", re.IGNORECASE)
_GITHUB_TOKEN_RE = re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})\b")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b")
_KEY_VALUE_SECRET_RE = re.compile(
    r"((?:password|secret|token|api[_-]?key|service[_-]?role[_-]?key)\s*[:=]\s*)([\"']?)[^\s,\"']+\2",
    re.IGNORECASE,
)


def sensitive_values(env: Optional[Mapping[str, object]]) -> list[str]:
    """Values of secret-looking keys that are long enough to redact literally."""
    values: list[str] = []
    for key, value in (env or {}).items():
        if not SENSITIVE_ENV_KEY_RE.search(str(key)):
            continue
        normalized = str(value if value is not None else "").strip()
        if len(normalized) < MIN_SECRET_LENGTH:
            continue
        values.append(normalized)
    # longest first so a value containing another is replaced whole
    return sorted(set(values), key=len, reverse=True)


def redact_values(text: str, values: Iterable[str], marker: str = REDACTED) -> str:
    out = text
    for value in values:
        if value:
            out = out.replace(value, marker)
    return out


def redact_output(text: object, env: Optional[Mapping[str, object]] = None) -> str:
    source = text if isinstance(text, str) else str(text if text is not None else "")
    if not source:
        return ""
    out = redact_values(source, sensitive_values(env))
    return LONG_SECRET_RE.sub(REDACTED, out)


def redact_token(text: str, token: Optional[str]) -> str:
    """Replace a configured access token with a fixed marker."""
    if not token or not text:
        return text
    return text.replace(token, REDACTED_GITHUB_TOKEN)


def sanitize_diagnostic_text(value: object) -> str:
    raw = str(value if value is not None else "")
    s = _BEARER_RE.sub(lambda m: m.group(1) + REDACTED, raw)
    s = _GITHUB_TOKEN_RE.sub(REDACTED_GITHUB_TOKEN, s)
    s = _JWT_RE.sub(REDACTED_JWT, s)
    s = _KEY_VALUE_SECRET_RE.sub(lambda m: m.group(1) + REDACTED, s)
    if len(s) > MAX_DIAGNOSTIC_CHARS:
        s = f"{s[:_DIAGNOSTIC_KEEP]}\n...[truncated]...\n{s[-_DIAGNOSTIC_KEEP:]}"
    return s
