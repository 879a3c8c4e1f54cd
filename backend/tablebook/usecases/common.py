from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from ..domain.errors import TransientRepositoryError, UnavailableError
from ..domain.events import EventPublisher, Initiator, NotificationKind, Notifier, StatusChanged
from ..domain.policy import Actor
from ..domain.repositories import ReservationRepository
from ..models import Reservation, ReservationStatus
from ..utils.time import local_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WRITE_ATTEMPTS = 3


class ReservationUseCase:
    """Shared plumbing for operations that mutate reservations: bounded write
    retries, lifecycle event emission and best-effort notifications."""

    def __init__(
        self,
        res_repo: ReservationRepository,
        *,
        publisher: EventPublisher,
        notifier: Notifier,
        max_write_attempts: int = DEFAULT_WRITE_ATTEMPTS,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.res_repo = res_repo
        self.publisher = publisher
        self.notifier = notifier
        self.max_write_attempts = max(1, max_write_attempts)
        self.clock = clock

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock()

    async def _retry(self, op: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run a repository call, retrying lock waits; each attempt runs in its own savepoint."""
        for attempt in range(1, self.max_write_attempts + 1):
            try:
                return await op(*args)
            except TransientRepositoryError as exc:
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    getattr(op, "__name__", "repository call"),
                    attempt,
                    self.max_write_attempts,
                    exc,
                )
        raise UnavailableError("the reservation store is busy, please retry")

    def _publish(
        self,
        reservation: Reservation,
        from_status: Optional[ReservationStatus],
        at: datetime,
        initiator: Initiator,
    ) -> None:
        self.publisher.publish(
            StatusChanged(
                reservation_id=reservation.id,
                from_status=from_status,
                to_status=reservation.status,
                at=at,
                table_id=reservation.table_id,
                user_id=reservation.user_id,
                initiator=initiator,
            )
        )

    def _notify(self, user_id: int, kind: NotificationKind, payload: Mapping[str, Any]) -> None:
        try:
            self.notifier.notify(user_id, kind, payload)
        except Exception:
            logger.warning("notification %s for user %s failed", kind, user_id, exc_info=True)


def initiator_for(actor: Actor, owner_id: int) -> Initiator:
    return "admin" if actor.is_admin and actor.id != owner_id else "user"


def reservation_payload(reservation: Reservation) -> dict[str, Any]:
    return {
        "reservation_id": reservation.id,
        "table_id": reservation.table_id,
        "start_time": reservation.start_time.isoformat(),
        "end_time": reservation.end_time.isoformat(),
        "status": str(reservation.status),
    }
