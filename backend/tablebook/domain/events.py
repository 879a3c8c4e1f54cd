from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal, Mapping, Optional, Protocol

from ..models import ReservationStatus

Initiator = Literal["user", "admin", "system"]


@dataclass(frozen=True)
class StatusChanged:
    reservation_id: int
    from_status: Optional[ReservationStatus]
    to_status: ReservationStatus
    at: datetime
    table_id: Optional[int] = None
    user_id: Optional[int] = None
    initiator: Initiator = "user"


class NotificationKind(StrEnum):
    CREATED = "reservation_created"
    AWAITING_APPROVAL = "reservation_awaiting_approval"
    UPDATED = "reservation_updated"
    APPROVED = "reservation_approved"
    REJECTED = "reservation_rejected"
    CANCELLED = "reservation_cancelled"


class EventPublisher(Protocol):
    def publish(self, event: StatusChanged) -> None: ...


class Notifier(Protocol):
    def notify(self, user_id: int, kind: NotificationKind, payload: Mapping[str, Any]) -> None: ...
