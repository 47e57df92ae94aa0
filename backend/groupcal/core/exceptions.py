"""
Custom exception classes for unified error handling.
"""

from fastapi import HTTPException, status


class AppBaseError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


# ── Sync run errors ──────────────────────────────────────

class SyncError(AppBaseError):
    """Base for errors that end a sync run."""


class RemoteStoreError(SyncError):
    """Raised when the remote store is unreachable or rejects a query."""
    def __init__(self, message: str = "Remote store unavailable", detail: str | None = None):
        super().__init__(message=message, detail=detail)


class AuthError(SyncError):
    """Raised when the remote store refuses our credentials."""
    def __init__(self, message: str = "Not authorized against the remote store", detail: str | None = None):
        super().__init__(
            message=message,
            detail=detail or "Sign in again and retry the sync.",
        )


class LocalStoreError(SyncError):
    """Raised when the local calendar store cannot be read or written."""
    def __init__(self, message: str = "Local calendar store unavailable", detail: str | None = None):
        super().__init__(message=message, detail=detail)


class LocalEventNotFoundError(LocalStoreError):
    """Raised when a local identifier no longer exists in the local store."""
    def __init__(self, local_id: str):
        self.local_id = local_id
        super().__init__(
            message=f"Local event '{local_id}' not found",
            detail="The local copy was already removed.",
        )


class DataIntegrityError(AppBaseError):
    """Raised when a remote row violates the data model (e.g. malformed recurrence)."""
    def __init__(self, row_id: str | None, original_error: str):
        self.row_id = row_id
        super().__init__(
            message=f"Row '{row_id}' failed validation",
            detail=original_error,
        )


# ── Event lifecycle errors ───────────────────────────────

class EventNotFoundError(AppBaseError):
    """Raised when an event id does not resolve to a row."""
    def __init__(self, event_id: str):
        super().__init__(
            message=f"Event '{event_id}' not found",
            detail="It may have been deleted by its owner.",
        )


class PermissionDeniedError(AppBaseError):
    """Raised when the acting user may not perform an operation on an event."""
    def __init__(self, message: str = "Only the event creator can do this"):
        super().__init__(message=message)


class InvalidOccurrenceError(AppBaseError):
    """Raised when an occurrence edit targets a non-series or a date the series never produces."""
    def __init__(self, event_id: str, detail: str):
        super().__init__(
            message=f"Invalid occurrence of event '{event_id}'",
            detail=detail,
        )


class RainCheckError(AppBaseError):
    """Raised on an illegal rain-check transition."""
    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message=message, detail=detail)


# ── Utility: convert to HTTPException ────────────────────

def app_error_to_http(error: AppBaseError, status_code: int = 400) -> HTTPException:
    """Convert an AppBaseError to an HTTPException with consistent JSON body."""
    return HTTPException(
        status_code=status_code,
        detail={
            "error": error.message,
            "detail": error.detail,
            "type": type(error).__name__,
        },
    )


def status_for_error(error: AppBaseError) -> int:
    """Pick the HTTP status that matches an application error."""
    if isinstance(error, EventNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, PermissionDeniedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, AuthError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(error, RainCheckError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, SyncError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST
