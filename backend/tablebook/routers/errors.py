from fastapi import HTTPException, status

from ..domain.errors import ErrorKind, ReservationError

_STATUS_BY_KIND = {
    ErrorKind.MALFORMED_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INSUFFICIENT_ADVANCE_NOTICE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.DURATION_EXCEEDED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.DAILY_QUOTA_EXCEEDED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.CONSECUTIVE_BOOKING_TOO_CLOSE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.SLOT_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.RESOURCE_IN_USE: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http(exc: ReservationError) -> HTTPException:
    return HTTPException(status_code=_STATUS_BY_KIND[exc.kind], detail=exc.to_dict())


def audit_failure() -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to record audit log")
