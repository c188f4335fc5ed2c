from __future__ import annotations

from datetime import datetime


class SessionNotFound(ValueError):
    pass


class GameNotFound(ValueError):
    pass


class NotSessionOwner(ValueError):
    pass


class SessionBusy(ValueError):
    pass


class TerminalStateViolation(ValueError):
    """A call was made against a session that has already ended."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} has ended")
        self.session_id = session_id


class RateLimited(ValueError):
    """An agent exceeded one of its rolling-window limits.

    `reset_at` is the UTC instant at which one more call of this kind will be accepted.
    """

    def __init__(self, *, kind: str, limit: int, reset_at: datetime) -> None:
        super().__init__(f"Rate limit exceeded for {kind} ({limit}); resets at {reset_at.isoformat()}")
        self.kind = kind
        self.limit = limit
        self.reset_at = reset_at


class BootstrapFault(RuntimeError):
    """The isolation boundary could not stand the module up."""


class RuntimeFault(RuntimeError):
    """A bridge call timed out, returned an invalid shape, or the instance died mid-call."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class CancellationFault(RuntimeFault):
    """An in-flight bridge call was cut short because its instance was torn down."""


class ModuleError(RuntimeError):
    """The module raised inside one of its own operations (reported by the runner)."""

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message)
        self.operation = operation
