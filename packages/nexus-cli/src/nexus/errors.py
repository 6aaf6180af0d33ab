"""Error taxonomy for workspace operations.

Every error carries the operation that failed and the identity it failed
for (workspace name, session ID, provider name) so the CLI can render it
as a single line without further lookups.

Hierarchy:
    NexusError
    ├── ValidationError        bad input, never retried
    │   ├── InvalidWorkspaceNameError
    │   ├── ConfigError
    │   └── UnknownProviderError
    ├── ConflictError          "already exists"
    │   └── WorkspaceExistsError
    ├── NotFoundError          tolerated in cleanup paths
    │   ├── WorkspaceNotFoundError
    │   └── SessionNotFoundError
    ├── BackendError           provider / VCS subprocess failure
    │   ├── ProviderError
    │   ├── WorktreeError
    │   └── ProcessTimeoutError
    └── HookError              a required setup hook failed
"""

from __future__ import annotations

from typing import Optional


class NexusError(Exception):
    """Base class for all workspace engine errors."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        identity: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.identity = identity

    def __str__(self) -> str:
        prefix = " ".join(part for part in (self.operation, self.identity) if part)
        if prefix:
            return f"{prefix}: {self.message}"
        return self.message


class ValidationError(NexusError):
    """Malformed input: workspace name, configuration, provider name."""


class InvalidWorkspaceNameError(ValidationError):
    pass


class ConfigError(ValidationError):
    pass


class UnknownProviderError(ValidationError):
    pass


class ConflictError(NexusError):
    """The resource already exists and will not be overwritten."""


class WorkspaceExistsError(ConflictError):
    pass


class NotFoundError(NexusError):
    """A workspace, session or node is absent."""


class WorkspaceNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    pass


class BackendError(NexusError):
    """An external tool (container engine, git) failed."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        identity: Optional[str] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message, operation=operation, identity=identity)
        self.returncode = returncode
        self.output = output


class ProviderError(BackendError):
    pass


class WorktreeError(BackendError):
    pass


class ProcessTimeoutError(BackendError):
    pass


class HookError(NexusError):
    """A required setup hook failed; the session is left running."""


__all__ = [
    "NexusError",
    "ValidationError",
    "InvalidWorkspaceNameError",
    "ConfigError",
    "UnknownProviderError",
    "ConflictError",
    "WorkspaceExistsError",
    "NotFoundError",
    "WorkspaceNotFoundError",
    "SessionNotFoundError",
    "BackendError",
    "ProviderError",
    "WorktreeError",
    "ProcessTimeoutError",
    "HookError",
]
