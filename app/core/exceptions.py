"""Error taxonomy for the earnings sync pipeline.

Fatal:        ConfigurationError, AuthError, StorageUnavailableError
Retryable:    RateLimitError, NetworkError
Per-record:   ValidationError, MalformedResponseError
Rejected:     RequestRejectedError (bad request parameters)
Not an error: IdempotencyConflict
Soft-fail:    SnapshotWriteError
"""
from typing import Any, Dict, Optional


class EarningsSyncError(Exception):
    """Base exception for earnings sync errors."""
    retryable = False
    fatal = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class ConfigurationError(EarningsSyncError):
    """Missing credentials or settings; raised before any work begins."""
    fatal = True


class AuthError(EarningsSyncError):
    """Provider rejected our credentials. Never retried."""
    fatal = True


class StorageUnavailableError(EarningsSyncError):
    """Database connection lost or unusable; the run is aborted."""
    fatal = True


class RateLimitError(EarningsSyncError):
    """Provider throttled the request (HTTP 429)."""
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, context)


class NetworkError(EarningsSyncError):
    """Transport failure, timeout or 5xx response."""
    retryable = True


class RequestRejectedError(EarningsSyncError):
    """Provider rejected the request parameters (4xx other than auth/throttle)."""

    def __init__(self, message: str, status_code: int, context: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        super().__init__(message, context)


class MalformedResponseError(EarningsSyncError):
    """Response body could not be interpreted; the page is skipped."""


class ValidationError(EarningsSyncError):
    """A single record failed validation; skipped, batch continues."""


class IdempotencyConflict(EarningsSyncError):
    """A ledger row for this external transaction already exists."""

    def __init__(self, external_transaction_id: str, context: Optional[Dict[str, Any]] = None):
        self.external_transaction_id = external_transaction_id
        super().__init__(
            f"Earning already recorded for transaction {external_transaction_id}",
            context,
        )


class SnapshotWriteError(EarningsSyncError):
    """Audit snapshot could not be written; the earning is kept."""


class SnapshotImmutableError(EarningsSyncError):
    """Attempted to modify an existing earnings snapshot."""
