"""
Sync error taxonomy.

Every failure the sync core can observe is classified into one of these
kinds. The worker resolves all of them into job state transitions; none of
them escapes to callers of enqueue.
"""

from typing import Optional

from qbosync.models.enums import FailureReason


class SyncError(Exception):
    """Base class for classified sync failures."""

    reason: FailureReason = FailureReason.TRANSIENT_NETWORK
    retryable: bool = True

    def __init__(self, message: str, *, detail: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.status_code = status_code


class TransientNetworkError(SyncError):
    """Network failure, timeout or 5xx. Retry with backoff."""

    reason = FailureReason.TRANSIENT_NETWORK


class JobTimeoutError(TransientNetworkError):
    """The job exceeded its wall-clock budget. Retry with backoff."""

    reason = FailureReason.TIMEOUT


class RateLimited(SyncError):
    """HTTP 429. Retry honoring the provider's hint."""

    reason = FailureReason.RATE_LIMITED

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ReauthorizationRequired(SyncError):
    """Refresh token revoked or expired. Halts automatic retries for the org."""

    reason = FailureReason.REAUTHORIZATION_REQUIRED
    retryable = False


class ValidationRejected(SyncError):
    """QuickBooks rejected the payload as semantically invalid."""

    reason = FailureReason.VALIDATION_REJECTED
    retryable = False

    def __init__(self, message: str, *, fault_code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.fault_code = fault_code


class NotFoundRemote(SyncError):
    """The external record is gone. Re-create it."""

    reason = FailureReason.NOT_FOUND_REMOTE
    retryable = False


class PermanentLocalError(SyncError):
    """The local entity no longer exists. Nothing to sync."""

    reason = FailureReason.PERMANENT_LOCAL
    retryable = False


class ConflictError(Exception):
    """An active connection already exists for the organization."""

    pass


class NotConnectedError(Exception):
    """The organization has no active QuickBooks connection."""

    pass


class LeaseLostError(Exception):
    """The worker no longer holds the lease on the job it tried to update."""

    pass


class JobNotFoundError(Exception):
    """No job with the given id exists for the organization."""

    pass


class InvalidJobStateError(Exception):
    """The job is not in a state that allows the requested operation."""

    pass
