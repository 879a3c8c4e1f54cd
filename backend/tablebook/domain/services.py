from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol, Union

from ..models import BLOCKING_STATUSES, ReservationStatus
from .errors import (
    ConsecutiveBookingTooCloseError,
    DailyQuotaExceededError,
    DurationExceededError,
    InsufficientAdvanceNoticeError,
    InvalidStateTransitionError,
    MalformedRequestError,
    ReservationError,
    SlotConflictError,
)
from .policy import ReservationDraft, ReservationPolicy


class BookedReservation(Protocol):
    id: int
    table_id: int
    user_id: int
    start_time: datetime
    end_time: datetime
    status: ReservationStatus


@dataclass(frozen=True)
class Accepted:
    draft: ReservationDraft


@dataclass(frozen=True)
class Rejected:
    error: ReservationError

    @property
    def kind(self) -> str:
        return self.error.kind

    @property
    def detail(self) -> dict:
        return dict(self.error.detail)


ValidationResult = Union[Accepted, Rejected]


ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset(
        {ReservationStatus.ACTIVE, ReservationStatus.REJECTED, ReservationStatus.CANCELLED}
    ),
    # active -> pending happens when an edit turns the booking into an all-day one needing approval.
    ReservationStatus.ACTIVE: frozenset(
        {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED, ReservationStatus.PENDING}
    ),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.REJECTED: frozenset(),
}


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransitionError(from_status=current, to_status=target)


def expand_all_day(draft: ReservationDraft, policy: ReservationPolicy) -> ReservationDraft:
    """Span the draft over the policy's daily window on the date of its start time."""
    day = draft.start_time.date()
    return replace(
        draft,
        start_time=datetime.combine(day, policy.allowed_start_time),
        end_time=datetime.combine(day, policy.allowed_end_time),
    )


def normalize_draft(draft: ReservationDraft, policy: ReservationPolicy) -> ReservationDraft:
    if draft.all_day:
        return expand_all_day(draft, policy)
    if draft.reason is not None:
        return replace(draft, reason=None)
    return draft


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: touching endpoints do not overlap."""
    return start_a < end_b and start_b < end_a


def gap_between(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> Optional[timedelta]:
    """Time between two non-overlapping ranges, or None when they overlap."""
    if end_a <= start_b:
        return start_b - end_a
    if end_b <= start_a:
        return start_a - end_b
    return None


def _hours(delta: timedelta) -> float:
    return round(delta.total_seconds() / 3600, 2)


def validate_reservation(
    draft: ReservationDraft,
    policy: ReservationPolicy,
    existing: Iterable[BookedReservation],
    *,
    user_id: int,
    now: datetime,
    exclude_id: Optional[int] = None,
) -> ValidationResult:
    """
    Pure rule evaluation for a proposed reservation.

    Checks run in a fixed order and the first failure wins: well-formedness,
    advance notice, duration cap, daily quota, overlap, consecutive gap.
    All-day drafts are expanded to the policy window before the range checks.
    ``exclude_id`` removes the reservation being edited from every scan.
    On acceptance the returned draft is the normalized one that must be stored.
    """
    if draft.all_day and not (draft.reason or "").strip():
        return Rejected(MalformedRequestError("a reason is required for all-day reservations"))
    if draft.num_members < 1 or draft.num_guests < 0:
        return Rejected(MalformedRequestError("num_members must be >= 1 and num_guests >= 0"))

    draft = normalize_draft(draft, policy)
    if draft.end_time <= draft.start_time:
        return Rejected(MalformedRequestError("start_time must be earlier than end_time"))

    if policy.min_hours_in_advance > 0:
        lead = draft.start_time - now
        if lead < timedelta(hours=policy.min_hours_in_advance):
            return Rejected(
                InsufficientAdvanceNoticeError(
                    required_hours=policy.min_hours_in_advance,
                    actual_hours=_hours(lead),
                )
            )

    duration = draft.end_time - draft.start_time
    if not draft.all_day and duration > timedelta(hours=policy.max_hours_per_reservation):
        return Rejected(
            DurationExceededError(
                max_hours=policy.max_hours_per_reservation,
                requested_hours=_hours(duration),
            )
        )

    others = [r for r in existing if r.status in BLOCKING_STATUSES and r.id != exclude_id]

    if policy.max_reservations_per_user_per_day > 0:
        day = draft.start_time.date()
        count = sum(1 for r in others if r.user_id == user_id and r.start_time.date() == day)
        if count >= policy.max_reservations_per_user_per_day:
            return Rejected(
                DailyQuotaExceededError(limit=policy.max_reservations_per_user_per_day, current_count=count)
            )

    same_table = sorted((r for r in others if r.table_id == draft.table_id), key=lambda r: r.start_time)
    for other in same_table:
        if overlaps(draft.start_time, draft.end_time, other.start_time, other.end_time):
            return Rejected(SlotConflictError(conflicting_reservation_id=other.id))

    if not policy.allow_consecutive_reservations:
        min_gap = timedelta(minutes=policy.min_time_between_reservations)
        for other in same_table:
            if other.user_id != user_id:
                continue
            gap = gap_between(draft.start_time, draft.end_time, other.start_time, other.end_time)
            # Back-to-back bookings are refused even when the configured gap is 0.
            if gap is not None and (gap == timedelta(0) or gap < min_gap):
                return Rejected(
                    ConsecutiveBookingTooCloseError(
                        min_gap_minutes=policy.min_time_between_reservations,
                        actual_gap_minutes=int(gap.total_seconds() // 60),
                    )
                )

    return Accepted(draft)
