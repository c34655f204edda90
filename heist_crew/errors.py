"""Exception taxonomy for the heist orchestrator."""
from __future__ import annotations

from typing import Optional


class HeistError(RuntimeError):
    """Base class for all heist failures."""


class WrongPhaseError(HeistError):
    """Raised when an operation is not valid in the room's current phase."""

    def __init__(self, current: str, operation: str) -> None:
        self.current = current
        self.operation = operation
        super().__init__(f"Cannot {operation} while the heist is {current.lower()}")


class NotFoundError(HeistError):
    """Raised when a referenced crime or session does not exist."""


class PersistenceError(HeistError):
    """Raised when the durable store is unavailable or rejects a write."""


class DuplicatePayoutGuard(HeistError):
    """Signals that a session was already distributed.

    Never escapes the distributor: it is caught there and turned into a no-op.
    """

    def __init__(self, session_id: int) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} already distributed")


class InvalidVoteError(HeistError):
    """Raised when a vote names a crime that is not on offer."""


class PermissionDeniedError(HeistError):
    """Raised when a privileged command comes from an unprivileged user."""

    def __init__(self, username: str, operation: str, reason: Optional[str] = None) -> None:
        self.username = username
        self.operation = operation
        message = f"{username} is not allowed to {operation}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


__all__ = [
    "HeistError",
    "WrongPhaseError",
    "NotFoundError",
    "PersistenceError",
    "DuplicatePayoutGuard",
    "InvalidVoteError",
    "PermissionDeniedError",
]
