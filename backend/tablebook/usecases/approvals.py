from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ..domain.errors import ForbiddenError, InvalidStateTransitionError, MalformedRequestError, NotFoundError
from ..domain.events import NotificationKind
from ..domain.policy import Actor
from ..models import Reservation, ReservationStatus
from .common import ReservationUseCase, reservation_payload

logger = logging.getLogger(__name__)


class ApprovalGate(ReservationUseCase):
    """pending --approve--> active, pending --reject(reason)--> rejected. Administrators only."""

    async def approve(self, reservation_id: int, *, actor: Actor, now: Optional[datetime] = None) -> Reservation:
        now = self._now(now)
        reservation = await self._load_pending(reservation_id, actor=actor, target=ReservationStatus.ACTIVE)
        changes = {
            "status": ReservationStatus.ACTIVE,
            "approved": True,
            "rejection_reason": None,
            "version": reservation.version + 1,
            "updated_at": now,
        }
        reservation = await self._retry(self.res_repo.save, reservation, changes)

        logger.info("reservation %s approved by admin %s", reservation.id, actor.id)
        self._publish(reservation, ReservationStatus.PENDING, now, "admin")
        self._notify(reservation.user_id, NotificationKind.APPROVED, reservation_payload(reservation))
        return reservation

    async def reject(
        self,
        reservation_id: int,
        reason: str,
        *,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = self._now(now)
        reason = (reason or "").strip()
        if not reason:
            if not actor.is_admin:
                raise ForbiddenError("only administrators can reject reservations")
            raise MalformedRequestError("a rejection reason is required")
        reservation = await self._load_pending(reservation_id, actor=actor, target=ReservationStatus.REJECTED)
        changes = {
            "status": ReservationStatus.REJECTED,
            "approved": False,
            "rejection_reason": reason,
            "version": reservation.version + 1,
            "updated_at": now,
        }
        reservation = await self._retry(self.res_repo.save, reservation, changes)

        logger.info("reservation %s rejected by admin %s", reservation.id, actor.id)
        self._publish(reservation, ReservationStatus.PENDING, now, "admin")
        payload = reservation_payload(reservation) | {"rejection_reason": reason}
        self._notify(reservation.user_id, NotificationKind.REJECTED, payload)
        return reservation

    async def _load_pending(self, reservation_id: int, *, actor: Actor, target: ReservationStatus) -> Reservation:
        if not actor.is_admin:
            raise ForbiddenError(f"only administrators can move reservations to {target}")
        reservation = await self._retry(self.res_repo.get_for_update, reservation_id)
        if reservation is None:
            raise NotFoundError("reservation not found", reservation_id=reservation_id)
        if reservation.status != ReservationStatus.PENDING:
            raise InvalidStateTransitionError(from_status=reservation.status, to_status=target)
        return reservation
