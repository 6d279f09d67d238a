"""Error taxonomy for the runtime.

Every failure the engine records carries an ErrorKind so that `error`
events and rejected calls can be told apart by consumers.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Kinds of failure surfaced on the event stream."""

    PROVIDER_ERROR = "ProviderError"
    TOOL_TIMEOUT = "ToolTimeout"
    TOOL_DENIED = "ToolDenied"
    PERMISSION_PENDING = "PermissionPending"
    POLICY_VIOLATION = "PolicyViolation"
    STORE_ERROR = "StoreError"


class TurnloopError(Exception):
    """Base class for all runtime errors."""

    kind: ErrorKind | None = None


class ProviderError(TurnloopError):
    """The model provider call failed. The turn aborts to READY."""

    kind = ErrorKind.PROVIDER_ERROR


class ToolDenied(TurnloopError):
    """A hook or the permission policy rejected a tool call."""

    kind = ErrorKind.TOOL_DENIED

    def __init__(self, tool_name: str, reason: str | None = None) -> None:
        self.tool_name = tool_name
        self.reason = reason or "Denied by policy"
        super().__init__(f"{tool_name}: {self.reason}")


class PolicyViolation(TurnloopError):
    kind = ErrorKind.POLICY_VIOLATION


class StoreError(TurnloopError):
    """Persistence failed. Wraps the underlying OSError/ValueError."""

    kind = ErrorKind.STORE_ERROR


class PermissionNotFoundError(TurnloopError):
    """decide() was called for an unknown or already resolved call id."""

    def __init__(self, call_id: str) -> None:
        self.call_id = call_id
        super().__init__(f"Permission not found: {call_id}")


class ResumeErrorCode(Enum):
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SNAPSHOT_NOT_FOUND = "SNAPSHOT_NOT_FOUND"
    PERMISSION_MODE_MISSING = "PERMISSION_MODE_MISSING"
    CORRUPTED_DATA = "CORRUPTED_DATA"


class ResumeError(TurnloopError):
    """A session could not be restored from the store."""

    def __init__(self, code: ResumeErrorCode, message: str) -> None:
        self.code = code
        super().__init__(message)


class PoolError(TurnloopError):
    """Pool capacity or membership problem."""


class SandboxError(TurnloopError):
    """Sandbox boundary violation or unknown process."""


class TodoError(TurnloopError):
    """Invalid todo list update."""
