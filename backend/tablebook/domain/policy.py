from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime, time
from typing import Any, Mapping, Optional

from ..models import UserRole


@dataclass(frozen=True)
class ReservationPolicy:
    max_hours_per_reservation: int = 4
    max_reservations_per_user_per_day: int = 1
    min_hours_in_advance: int = 0
    allowed_start_time: time = time(8, 0)
    allowed_end_time: time = time(22, 0)
    requires_approval_for_all_day: bool = True
    allow_consecutive_reservations: bool = True
    min_time_between_reservations: int = 0

    def __post_init__(self) -> None:
        for name in (
            "max_hours_per_reservation",
            "max_reservations_per_user_per_day",
            "min_hours_in_advance",
            "min_time_between_reservations",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.allowed_start_time >= self.allowed_end_time:
            raise ValueError("allowed_start_time must be earlier than allowed_end_time")

    def patched(self, patch: Mapping[str, Any]) -> "ReservationPolicy":
        """Return a copy with ``patch`` applied; raises ValueError on unknown or invalid fields."""
        if not patch:
            raise ValueError("no fields to update")
        known = {f.name for f in fields(self)}
        unknown = set(patch) - known
        if unknown:
            raise ValueError(f"unknown policy fields: {', '.join(sorted(unknown))}")
        return replace(self, **patch)


@dataclass(frozen=True)
class ReservationDraft:
    """A proposed reservation as submitted by a client (create or update)."""

    table_id: int
    start_time: datetime
    end_time: datetime
    num_members: int = 1
    num_guests: int = 0
    all_day: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class Actor:
    id: int
    role: UserRole = UserRole.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def can_manage(self, owner_id: int) -> bool:
        return self.is_admin or self.id == owner_id
