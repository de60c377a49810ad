"""Service error hierarchy for the ingestion pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, rejected uploads)

Every error below except StoreUnavailableError is recorded on the task by the
upload worker and retried on a later poll. StoreUnavailableError aborts the run.
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed without operator action.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Destination rejected the upload
    """

    pass


# Alist (external source) errors
class SourceError(ServiceError):
    """Base exception for Alist source errors."""

    pass


class TransientSourceError(SourceError, TransientError):
    """Alist unreachable, timed out or answered with a retryable failure."""

    pass


class SourceAuthError(SourceError, PermanentError):
    """Alist rejected the configured credentials."""

    pass


class SourceFileError(SourceError, PermanentError):
    """File moved, missing, or has no downloadable raw URL."""

    pass


# Object storage errors
class StorageError(ServiceError):
    """Base exception for object storage errors."""

    pass


class StorageRejectionError(StorageError, PermanentError):
    """Destination answered the upload with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StorageNetworkError(StorageError, TransientError):
    """Upload or presign request failed at the transport level."""

    pass


# Task store errors
class StoreUnavailableError(ServiceError):
    """Task store unreachable; no further progress is possible in this run."""

    pass


class ClaimLostError(ServiceError):
    """The worker no longer holds the task's claim (re-queued or reclaimed)."""

    pass
