"""
HTTP mapping for enrollment exceptions.

Routes let domain exceptions propagate; these handlers turn them into
``{"detail": ..., "code": ...}`` responses.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.db.helpers import DatabaseError
from app.features.sequence_enrollment.domain import (
    CollaboratorError,
    ConfigConflict,
    DuplicateEnrollment,
    EnrollmentConflict,
    EnrollmentError,
    EventQueueUnavailable,
    InvalidAutoEnrollmentConfig,
    InvalidBulkRequest,
    InvalidQuery,
    InvalidSequence,
    InvalidTransition,
    InvalidUpdate,
    NotFound,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Checked in order, first isinstance match wins
STATUS_BY_ERROR: list[tuple[type[EnrollmentError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (DuplicateEnrollment, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (EnrollmentConflict, status.HTTP_409_CONFLICT),
    (ConfigConflict, status.HTTP_409_CONFLICT),
    (InvalidAutoEnrollmentConfig, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidSequence, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidBulkRequest, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidQuery, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidUpdate, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CollaboratorError, status.HTTP_502_BAD_GATEWAY),
    (EventQueueUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(error: EnrollmentError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def enrollment_error_handler(request: Request, exc: EnrollmentError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Enrollment request failed",
        path=request.url.path,
        status_code=status_code,
        code=exc.code,
        error=exc.message,
    )
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, DuplicateEnrollment) and exc.existing_id:
        body["existingEnrollmentId"] = exc.existing_id
    return JSONResponse(status_code=status_code, content=body)


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error(
        "Database error during request",
        path=request.url.path,
        operation=exc.operation,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable", "code": "database_error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EnrollmentError, enrollment_error_handler)
    app.add_exception_handler(DatabaseError, database_error_handler)
