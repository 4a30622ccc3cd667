"""
JPK reporting error taxonomy.

Lifecycle and input errors are returned to the caller immediately.
UpstreamFailureError is the only retryable class. Validation issues are
never raised; they come back as data from the validation engine.
"""
from typing import Iterable, Optional


class JPKReportingError(Exception):
    """Base exception for the JPK reporting engine."""
    pass


class NotFoundError(JPKReportingError):
    """Report, record or client does not exist."""
    pass


class PreconditionFailedError(JPKReportingError):
    """Report is in the wrong lifecycle status for the requested operation."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        required_statuses: Optional[Iterable[str]] = None,
    ):
        super().__init__(message)
        self.current_status = current_status
        self.required_statuses = sorted(required_statuses or [])


class ConflictError(JPKReportingError):
    """Duplicate period filing, re-assembly of a filed report, and similar."""
    pass


class AlreadyExistsError(ConflictError):
    """An artifact already exists and the caller did not ask to replace it."""
    pass


class UpstreamFailureError(JPKReportingError):
    """Signature provider or gateway failed or timed out."""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class FatalError(JPKReportingError):
    """Internal inconsistency; the report is pushed to ERROR."""
    pass
