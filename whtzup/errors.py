"""Exception hierarchy for the whtzup sync client."""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for sync client errors."""


class TransportError(SyncError):
    """A network call failed: connection error, timeout or non-2xx response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[Any] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        return True


class ValidationRejected(TransportError):
    """The server refused the request as invalid. Retrying will not help."""

    @property
    def retryable(self) -> bool:
        return False


class QueueError(SyncError):
    """The local operation queue could not be read or written."""
