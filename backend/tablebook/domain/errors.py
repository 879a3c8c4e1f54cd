from __future__ import annotations

from enum import StrEnum
from typing import Any, Mapping


class ErrorKind(StrEnum):
    MALFORMED_REQUEST = "MalformedRequest"
    INSUFFICIENT_ADVANCE_NOTICE = "InsufficientAdvanceNotice"
    DURATION_EXCEEDED = "DurationExceeded"
    DAILY_QUOTA_EXCEEDED = "DailyQuotaExceeded"
    SLOT_CONFLICT = "SlotConflict"
    CONSECUTIVE_BOOKING_TOO_CLOSE = "ConsecutiveBookingTooClose"
    NOT_FOUND = "NotFound"
    FORBIDDEN = "Forbidden"
    INVALID_STATE_TRANSITION = "InvalidStateTransition"
    RESOURCE_IN_USE = "ResourceInUse"
    UNAVAILABLE = "Unavailable"


class ReservationError(Exception):
    """Base for every error surfaced to callers of the scheduling core.

    ``detail`` carries the structured, user-facing context of the failure
    (limits, counts, conflicting ids) so the caller never has to parse the message.
    """

    kind: ErrorKind

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Mapping[str, Any] = detail

    def to_dict(self) -> dict[str, Any]:
        return {"kind": str(self.kind), "message": self.message, **self.detail}


class MalformedRequestError(ReservationError):
    kind = ErrorKind.MALFORMED_REQUEST


class InsufficientAdvanceNoticeError(ReservationError):
    kind = ErrorKind.INSUFFICIENT_ADVANCE_NOTICE

    def __init__(self, *, required_hours: int, actual_hours: float) -> None:
        super().__init__(
            f"reservations must be made at least {required_hours} hours in advance",
            required_hours=required_hours,
            actual_hours=actual_hours,
        )


class DurationExceededError(ReservationError):
    kind = ErrorKind.DURATION_EXCEEDED

    def __init__(self, *, max_hours: int, requested_hours: float) -> None:
        super().__init__(
            f"a reservation cannot last more than {max_hours} hours",
            max_hours=max_hours,
            requested_hours=requested_hours,
        )


class DailyQuotaExceededError(ReservationError):
    kind = ErrorKind.DAILY_QUOTA_EXCEEDED

    def __init__(self, *, limit: int, current_count: int) -> None:
        super().__init__(
            f"daily limit of {limit} reservations reached ({current_count} booked)",
            limit=limit,
            current_count=current_count,
        )


class SlotConflictError(ReservationError):
    kind = ErrorKind.SLOT_CONFLICT

    def __init__(self, *, conflicting_reservation_id: int) -> None:
        super().__init__(
            "the table is already reserved for that time",
            conflicting_reservation_id=conflicting_reservation_id,
        )


class ConsecutiveBookingTooCloseError(ReservationError):
    kind = ErrorKind.CONSECUTIVE_BOOKING_TOO_CLOSE

    def __init__(self, *, min_gap_minutes: int, actual_gap_minutes: int) -> None:
        super().__init__(
            f"there must be at least {min_gap_minutes} minutes between your reservations "
            f"of the same table (currently {actual_gap_minutes})",
            min_gap_minutes=min_gap_minutes,
            actual_gap_minutes=actual_gap_minutes,
        )


class NotFoundError(ReservationError):
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(ReservationError):
    kind = ErrorKind.FORBIDDEN


class InvalidStateTransitionError(ReservationError):
    kind = ErrorKind.INVALID_STATE_TRANSITION

    def __init__(self, *, from_status: str, to_status: str) -> None:
        super().__init__(
            f"cannot move reservation from {from_status} to {to_status}",
            from_status=str(from_status),
            to_status=str(to_status),
        )


class ResourceInUseError(ReservationError):
    kind = ErrorKind.RESOURCE_IN_USE


class UnavailableError(ReservationError):
    kind = ErrorKind.UNAVAILABLE


class TransientRepositoryError(Exception):
    """Raised by repositories when a write lost a race and may succeed if retried."""
