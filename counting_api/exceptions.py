from typing import Any, List, Optional


class ApplicationError(Exception):
    """Base class for application-specific errors."""
    pass


class ValidationError(ApplicationError):
    """Raised when a request is rejected before anything is persisted."""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(ApplicationError):
    """Raised when a scanned code, zone, run or event cannot be found."""
    pass


class AmbiguousMatchError(ApplicationError):
    """Raised when a scanned code only matched by similarity.

    Not a failure: the caller must pick one of ``candidates`` and resubmit.
    """
    def __init__(self, message: str, candidates: List[Any]):
        super().__init__(message)
        self.candidates = candidates


class ConflictError(ApplicationError):
    """Raised when the stored state forbids the requested transition or insert."""
    pass


class PreconditionFailedError(ApplicationError):
    """Raised by a store when a conditioned write loses against a concurrent one (ETag mismatch)."""
    pass


class PartialBatchFailure(ApplicationError):
    """Raised when one or more catalog sync batches failed after retries.

    ``result`` holds the counts of the batches that were committed; ``failures``
    identifies each failed batch so it can be retried.
    """
    def __init__(self, message: str, result: Any, failures: List[Any]):
        super().__init__(message)
        self.result = result
        self.failures = failures


class DatabaseError(ApplicationError):
    """Raised for general database-related errors not specifically handled."""
    def __init__(self, message="A database error occurred.", original_exception=None):
        super().__init__(message)
        self.original_exception = original_exception
