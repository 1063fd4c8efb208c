"""Exception hierarchy shared by every driftwatch layer."""

from __future__ import annotations


class DriftwatchError(Exception):
    """Base class for all driftwatch errors."""


class NotFoundError(DriftwatchError, KeyError):
    """The referenced session does not exist (or was terminated)."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return f"Session not found: {self.session_id}"


class StorageError(DriftwatchError):
    """Durable storage failed. Transient failures are retried before this surfaces."""


class RecoveryExhaustedError(DriftwatchError):
    """A session needed another recovery attempt after its retry budget was spent."""

    def __init__(self, session_id: str, attempts: int) -> None:
        self.session_id = session_id
        self.attempts = attempts
        super().__init__(
            f"Recovery exhausted for session {session_id} after {attempts} attempt(s)"
        )


class AlertDeliveryError(DriftwatchError):
    """An operator alert channel could not deliver an alert."""
