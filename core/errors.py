"""Error taxonomy of the calendar synchronisation engine."""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    retryable: bool = False
    error_type: str = "api_error"


class AuthExpiredError(SyncError):
    """The refresh token was rejected; the owner has to reconnect."""

    error_type = "auth_error"

    def __init__(self, owner_id: str, message: str = "reconnect required") -> None:
        super().__init__(f"{message} (owner={owner_id})")
        self.owner_id = owner_id


class TransientNetworkError(SyncError):
    retryable = True


class RateLimitedError(TransientNetworkError):
    error_type = "rate_limit"


class CalendarApiError(SyncError):
    """Non-retryable HTTP failure reported by the calendar provider."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class EventNotFoundError(CalendarApiError):
    pass


class SyncTokenInvalidError(CalendarApiError):
    """HTTP 410: the provider no longer accepts the stored sync token."""


class ConflictResolutionError(SyncError):
    error_type = "conflict_error"


class MappingIntegrityError(SyncError):
    """A second live mapping was about to be created for the same key."""

    error_type = "conflict_error"


class TaskValidationError(SyncError):
    error_type = "validation_error"


class SyncInProgressError(SyncError):
    def __init__(self, owner_id: str, calendar_id: str) -> None:
        super().__init__(f"sync already in progress (owner={owner_id}, calendar={calendar_id})")
        self.owner_id = owner_id
        self.calendar_id = calendar_id


class SyncDisabledError(SyncError):
    pass


class SyncTimeoutError(SyncError):
    error_type = "timeout"


FATAL_ERRORS = (AuthExpiredError, SyncTokenInvalidError, MappingIntegrityError)


def error_type_of(exc: BaseException) -> str:
    return getattr(exc, "error_type", "api_error")


__all__ = [
    "AuthExpiredError",
    "CalendarApiError",
    "ConflictResolutionError",
    "EventNotFoundError",
    "FATAL_ERRORS",
    "MappingIntegrityError",
    "RateLimitedError",
    "SyncDisabledError",
    "SyncError",
    "SyncInProgressError",
    "SyncTimeoutError",
    "SyncTokenInvalidError",
    "TaskValidationError",
    "TransientNetworkError",
    "error_type_of",
]
