"""Exception types shared by the scheduler core and its surfaces."""


class DispatchError(Exception):
    """Base class for agent dispatch errors."""


class ValidationError(DispatchError, ValueError):
    """Raised when input is malformed. Nothing has been written."""


class InvalidDependency(ValidationError):
    """Raised for self, cross-project, unknown or cycle-closing dependencies."""


class NotFound(DispatchError, LookupError):
    """Raised when a task, agent or project does not exist."""


class ConflictingState(DispatchError):
    """Raised when the current state forbids the requested transition."""

    def __init__(self, message: str, reason: str | None = None, blocked_by: list[str] | None = None):
        super().__init__(message)
        self.reason = reason
        self.blocked_by = blocked_by or []


class ExecutorFailure(DispatchError):
    """Raised when the external executor fails to spawn, signal or terminate."""


class ReconciliationRecordSkipped(DispatchError):
    """Raised for a malformed ledger record. Counted, never fatal to a sync pass."""
