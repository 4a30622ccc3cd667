# JPK reporting engine
from jpk_reporting.services.jpk.errors import (
    JPKReportingError,
    NotFoundError,
    PreconditionFailedError,
    ConflictError,
    AlreadyExistsError,
    UpstreamFailureError,
    FatalError,
)

__all__ = [
    "JPKReportingError",
    "NotFoundError",
    "PreconditionFailedError",
    "ConflictError",
    "AlreadyExistsError",
    "UpstreamFailureError",
    "FatalError",
]
