"""Exception hierarchy for the job storage backend.

JobStoreError
├── ArgumentError            invalid or missing input, raised before any I/O
├── ConfigurationError       queues of one request resolve to several backends
├── JobLoadError             stored invocation cannot be reconstructed
├── LockTimeoutError         distributed lock not acquired in time
└── OperationCancelledError  a blocking dequeue observed its cancellation event

Transport failures from the relational store are not wrapped: SQLAlchemy's
OperationalError reaches the caller as-is and is re-exported here as
StoreUnavailableError for callers that want to catch it by name.
"""

from sqlalchemy.exc import OperationalError as StoreUnavailableError


class JobStoreError(Exception):
    """Base class for all jobstore exceptions."""


class ArgumentError(JobStoreError, ValueError):
    """Raised when an argument is missing or out of range."""

    def __init__(self, name: str, message: str = None):
        self.name = name
        super().__init__(message or f"Argument {name!r} must not be None")


class ConfigurationError(JobStoreError):
    """Raised when the storage is wired up in a way it cannot serve."""


class JobLoadError(JobStoreError):
    """Raised when a stored job invocation cannot be turned back into a job."""

    def __init__(self, message: str, cause: Exception = None):
        self.cause = cause
        super().__init__(f"{message}: {cause}" if cause else message)


class LockTimeoutError(JobStoreError, TimeoutError):
    """Raised when a distributed lock could not be acquired within its timeout."""

    def __init__(self, resource: str, timeout: float):
        self.resource = resource
        self.timeout = timeout
        super().__init__(
            f"Timeout expired while acquiring lock on {resource!r} ({timeout:.3f}s)"
        )


class OperationCancelledError(JobStoreError):
    """Raised when a blocking operation is cancelled by its caller."""


__all__ = [
    "JobStoreError",
    "ArgumentError",
    "ConfigurationError",
    "JobLoadError",
    "LockTimeoutError",
    "OperationCancelledError",
    "StoreUnavailableError",
]
