"""Domain errors raised inside the sync backend.

Routes translate these into HTTP responses; the queue processor records them
on the failing entry instead.
"""

from postgrest.exceptions import APIError
from pydantic import ValidationError


class SyncDomainError(Exception):
    """Base class for expected, per-request failures."""


class EventNotFoundError(SyncDomainError):
    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


class EventDeletedError(SyncDomainError):
    """The target event is soft-deleted and may not be changed."""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} is deleted")
        self.event_id = event_id


class VersionConflictError(SyncDomainError):
    """The event changed between read and write."""

    def __init__(self, event_id: str, expected_version: int):
        super().__init__(f"Event {event_id} changed concurrently (expected version {expected_version})")
        self.event_id = event_id
        self.expected_version = expected_version


class UnknownOperationError(SyncDomainError):
    def __init__(self, operation: str):
        super().__init__(f"Unknown operation: {operation}")
        self.operation = operation


class InvalidPayloadError(SyncDomainError):
    """A queued payload does not describe a valid event."""


class UnknownStrategyError(SyncDomainError):
    def __init__(self, strategy: str):
        super().__init__(f"Unknown resolution strategy: {strategy}")
        self.strategy = strategy


def describe_error(error: Exception) -> str:
    """Short, client-safe description of a per-entry failure."""
    if isinstance(error, ValidationError):
        first = error.errors()[0] if error.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "invalid value")
        return f"Invalid event data: {location + ': ' if location else ''}{message}"
    if isinstance(error, APIError):
        return f"Database error: {error.message or error.code}"
    return str(error)
