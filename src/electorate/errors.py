"""Exceptions raised by elections and coordination stores."""

from __future__ import annotations


class ElectionError(Exception):
    """Base class for election failures."""


class NotLeaderError(ElectionError):
    """Raised when an operation requires leadership this session does not hold."""

    def __init__(self, message: str = "election: not leader"):
        super().__init__(message)


class NoLeaderError(ElectionError):
    """Raised when an election has no live candidates."""

    def __init__(self, message: str = "election: no leader"):
        super().__init__(message)


class WatchError(ElectionError):
    """Raised when a watch fails before the awaited event arrives."""


class LeaseLostError(ElectionError):
    """Raised when the session lease disappears without being revoked."""

    def __init__(self, lease_id: int | None = None, message: str | None = None):
        self.lease_id = lease_id
        if message is None:
            message = "election: lease lost"
            if lease_id is not None:
                message = f"election: lease {lease_id:x} lost"
        super().__init__(message)


class ObservationError(ElectionError):
    """Raised through the error channel when observation gives up retrying."""

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"election: observation stopped after {attempts} failed attempts")


class StoreError(Exception):
    """Base class for coordination store failures."""


class LeaseNotFoundError(StoreError):
    """Raised when a write references a lease the store does not know."""

    def __init__(self, lease_id: int):
        self.lease_id = lease_id
        super().__init__(f"lease {lease_id:x} not found")
