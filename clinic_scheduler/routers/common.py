# clinic_scheduler/routers/common.py
from fastapi import HTTPException, status

from ..exceptions import (
    AuthorizationError, ConflictError, NotFoundError, SchedulingError,
    TransientStoreError, ValidationError,
)

STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(error: SchedulingError) -> HTTPException:
    status_code = next(
        (code for error_type, code in STATUS_BY_ERROR if isinstance(error, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    if isinstance(error, ConflictError):
        detail = {
            "message": error.message,
            "reason": error.reason,
            "conflicting_start": error.conflicting_start.strftime("%H:%M") if error.conflicting_start else None,
            "conflicting_end": error.conflicting_end.strftime("%H:%M") if error.conflicting_end else None,
        }
    else:
        detail = error.message
    headers = {"Retry-After": "1"} if isinstance(error, TransientStoreError) else None
    return HTTPException(status_code=status_code, detail=detail, headers=headers)
