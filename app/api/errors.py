from fastapi import status
from fastapi.responses import JSONResponse

from app.scheduling.exceptions import (
    BookingNotFoundError,
    BusinessNotFoundError,
    ConflictError,
    EventNotFoundError,
    SchedulerUnavailableError,
    SchedulerValidationError,
    SchedulingError,
)
from app.schemas.scheduling import ErrorResponse

_NOT_FOUND = (EventNotFoundError, BusinessNotFoundError, BookingNotFoundError)


def error_status(exc: SchedulingError) -> int:
    if isinstance(exc, _NOT_FOUND):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, SchedulerValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, SchedulerUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_code(exc: SchedulingError) -> str:
    if isinstance(exc, _NOT_FOUND):
        return "not_found"
    if isinstance(exc, SchedulerValidationError):
        return "validation"
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, SchedulerUnavailableError):
        # "unavailable" or "lock_timeout"
        return exc.reason
    return "internal_error"


def error_response(exc: SchedulingError) -> JSONResponse:
    """Render a scheduler error as the JSON error body of the API."""
    body = ErrorResponse(error=error_code(exc), reason=exc.reason, detail=exc.detail)
    headers = None
    if isinstance(exc, SchedulerUnavailableError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=error_status(exc),
        content=body.model_dump(),
        headers=headers,
    )
