from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.core.database import get_db
from jpk_reporting.services.jpk.errors import (
    AlreadyExistsError,
    ConflictError,
    FatalError,
    JPKReportingError,
    NotFoundError,
    PreconditionFailedError,
    UpstreamFailureError,
)
from jpk_reporting.services.jpk.reporting import JPKReportingService


def get_reporting_service(db: Annotated[AsyncSession, Depends(get_db)]) -> JPKReportingService:
    return JPKReportingService(db)


ReportingService = Annotated[JPKReportingService, Depends(get_reporting_service)]


def get_actor_id(x_user_id: Annotated[Optional[UUID], Header()] = None) -> Optional[UUID]:
    """Acting user for the audit trail, from the X-User-Id header."""
    return x_user_id


ActorId = Annotated[Optional[UUID], Depends(get_actor_id)]


def http_error(exc: JPKReportingError) -> HTTPException:
    """
    Map an engine error to an HTTP error.

    404 not found, 412 wrong lifecycle status, 409 conflict or existing
    artifact, 502/504 upstream failure, 500 internal error.
    """
    if isinstance(exc, NotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": str(exc)},
        )
    if isinstance(exc, PreconditionFailedError):
        return HTTPException(
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            detail={
                "code": "PRECONDITION_FAILED",
                "message": str(exc),
                "current_status": exc.current_status,
                "required_statuses": exc.required_statuses,
            },
        )
    if isinstance(exc, AlreadyExistsError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "ALREADY_EXISTS", "message": str(exc)},
        )
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "CONFLICT", "message": str(exc)},
        )
    if isinstance(exc, UpstreamFailureError):
        return HTTPException(
            status_code=(
                status.HTTP_504_GATEWAY_TIMEOUT if exc.status_code == 504 else status.HTTP_502_BAD_GATEWAY
            ),
            detail={"code": "UPSTREAM_FAILURE", "message": str(exc), "retryable": exc.retryable},
        )
    if isinstance(exc, FatalError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "FATAL", "message": str(exc)},
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "BAD_REQUEST", "message": str(exc)},
    )
