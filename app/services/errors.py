"""Sync engine error taxonomy.

Every error carries an HTTP status and a machine-readable code so the API layer
can render it as ``{"error": code, "message": ...}`` without knowing the type.
Queue-level failures never reach the API: the worker records them on the
report and queue entry instead.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for sync engine errors"""

    code = "SYNC_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.code)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ConfigError(SyncError):
    """A user-fixable prerequisite (e.g. the public app URL) is missing."""

    code = "CONFIG_ERROR"
    status_code = 400


class WebhookRegistrationError(SyncError):
    """The tracker rejected our webhook subscription."""

    code = "WEBHOOK_REGISTRATION_ERROR"
    status_code = 502


class TrackerError(SyncError):
    """Failure reported by (or while reaching) the issue tracker."""

    code = "TRACKER_ERROR"
    status_code = 502

    def __init__(self, message: str = "", *, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.status = status


class RetryableTransportError(TrackerError):
    """Network error, 5xx or (secondary) rate limit. Safe to retry later."""

    code = "TRACKER_UNAVAILABLE"
    status_code = 503
    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status=status)
        self.retry_after = retry_after


class TerminalTrackerError(TrackerError):
    """Auth, permission or not-found errors. Retrying only burns quota."""


class IntegrationUnavailableError(SyncError):
    """Integration is inactive or does not belong to the report's project."""

    code = "INTEGRATION_UNAVAILABLE"
    status_code = 400


class ForwardInProgressError(SyncError):
    """Another forward for the same report is queued or running."""

    code = "FORWARD_IN_PROGRESS"
    status_code = 409


class DuplicateEventError(SyncError):
    """Webhook redelivery; absorbed by the reconciler."""

    code = "DUPLICATE_EVENT"
    status_code = 200


def is_retryable(exc: BaseException) -> bool:
    """Queue classification: only explicitly terminal errors skip the retry budget."""
    if isinstance(exc, SyncError):
        return exc.retryable
    # Unexpected errors (DB hiccups, bugs in payload building) get the bounded retry budget.
    return True
