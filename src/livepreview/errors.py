"""Error taxonomy for the preview engine.

Validation and security errors fail fast, configuration errors are absorbed
with a warning, external tool errors end up on the owning Run as ``failed``.
"""

from __future__ import annotations

from typing import Optional


class PreviewError(Exception):
    """Base class for all preview engine errors."""


class ConfigurationError(PreviewError):
    """Invalid value in a config file. Never surfaced to API callers."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class ValidationError(PreviewError):
    """Malformed caller input, rejected before any side effect."""


class InvalidRepoFormat(ValidationError):
    def __init__(self, value: object):
        super().__init__("Invalid repository format. Expected owner/name")
        self.value = value


class InvalidRef(ValidationError):
    def __init__(self, value: object):
        super().__init__("Invalid branch or ref")
        self.value = value


class InvalidCommitSha(ValidationError):
    def __init__(self, value: object):
        super().__init__("Invalid commit sha. Expected 40 hex characters")
        self.value = value


class InvalidProjectId(ValidationError):
    def __init__(self, value: object):
        super().__init__("Invalid projectId. Allowed: A-Z a-z 0-9 _ - (max 64)")
        self.value = value


class ExternalToolError(PreviewError):
    """An external process (git, package manager, build) failed."""

    def __init__(self, message: str, *, output: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class GitCommandError(ExternalToolError):
    pass


class CommandFailed(ExternalToolError):
    pass


class CapacityError(PreviewError):
    """The port pool is exhausted."""


class SecurityError(PreviewError):
    """Webhook signature missing or invalid."""


class RunNotFound(PreviewError):
    def __init__(self, run_id: str):
        super().__init__("Run not found")
        self.run_id = run_id


class RunStateError(PreviewError):
    """Operation not allowed in the Run's current state."""
