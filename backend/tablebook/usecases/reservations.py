from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Optional

from ..domain.errors import ForbiddenError, InvalidStateTransitionError, NotFoundError
from ..domain.events import EventPublisher, NotificationKind, Notifier
from ..domain.policy import Actor, ReservationDraft, ReservationPolicy
from ..domain.repositories import PolicyStore, ReservationFilter, ReservationRepository, TableRepository
from ..domain.services import Rejected, ensure_transition, normalize_draft, validate_reservation
from ..infrastructure.locks import ResourceLocks
from ..models import BLOCKING_STATUSES, Reservation, ReservationStatus
from ..utils.time import day_bounds, local_now
from .common import DEFAULT_WRITE_ATTEMPTS, ReservationUseCase, initiator_for, reservation_payload

logger = logging.getLogger(__name__)

DELETABLE_STATUSES = frozenset({ReservationStatus.CANCELLED, ReservationStatus.REJECTED})

# Widens the scan so a neighbour touching the edge of the window is still seen.
_SCAN_MARGIN = timedelta(seconds=1)


class ReservationScheduler(ReservationUseCase):
    """Create, update, cancel and delete reservations.

    Every create/update runs validate-then-write while holding the lock of each
    table involved, so two requests for overlapping slots on one table cannot
    both pass the overlap check. The policy is read from the store on every call.
    """

    def __init__(
        self,
        res_repo: ReservationRepository,
        table_repo: TableRepository,
        policy_store: PolicyStore,
        *,
        locks: ResourceLocks,
        publisher: EventPublisher,
        notifier: Notifier,
        max_write_attempts: int = DEFAULT_WRITE_ATTEMPTS,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        super().__init__(
            res_repo,
            publisher=publisher,
            notifier=notifier,
            max_write_attempts=max_write_attempts,
            clock=clock,
        )
        self.table_repo = table_repo
        self.policy_store = policy_store
        self.locks = locks

    async def list_reservations(self, criteria: ReservationFilter, *, actor: Actor) -> list[Reservation]:
        if not actor.is_admin:
            criteria = replace(criteria, user_id=actor.id)
        return await self.res_repo.list(criteria)

    async def get_reservation(self, reservation_id: int, *, actor: Actor) -> Reservation:
        reservation = await self.res_repo.get(reservation_id)
        if reservation is None:
            raise NotFoundError("reservation not found", reservation_id=reservation_id)
        if not actor.can_manage(reservation.user_id):
            raise ForbiddenError("you are not allowed to view this reservation")
        return reservation

    async def create(self, draft: ReservationDraft, *, actor: Actor, now: Optional[datetime] = None) -> Reservation:
        now = self._now(now)
        async with self.locks.hold(draft.table_id):
            await self._require_table(draft.table_id)
            policy = await self.policy_store.get_policy()
            accepted = await self._validate(draft, policy, user_id=actor.id, now=now)
            status = (
                ReservationStatus.PENDING
                if accepted.all_day and policy.requires_approval_for_all_day
                else ReservationStatus.ACTIVE
            )
            reservation = Reservation(
                id=None,
                table_id=accepted.table_id,
                user_id=actor.id,
                start_time=accepted.start_time,
                end_time=accepted.end_time,
                num_members=accepted.num_members,
                num_guests=accepted.num_guests,
                all_day=accepted.all_day,
                reason=accepted.reason,
                status=status,
                approved=status == ReservationStatus.ACTIVE,
                rejection_reason=None,
                version=1,
                created_at=now,
                updated_at=now,
            )
            reservation = await self._retry(self.res_repo.add, reservation)

        logger.info(
            "reservation %s created by user %s on table %s (%s)",
            reservation.id,
            actor.id,
            reservation.table_id,
            reservation.status,
        )
        self._publish(reservation, None, now, initiator_for(actor, actor.id))
        kind = NotificationKind.AWAITING_APPROVAL if status == ReservationStatus.PENDING else NotificationKind.CREATED
        self._notify(actor.id, kind, reservation_payload(reservation))
        return reservation

    async def update(
        self,
        reservation_id: int,
        draft: ReservationDraft,
        *,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = self._now(now)
        while True:
            current = await self.res_repo.get(reservation_id)
            if current is None:
                raise NotFoundError("reservation not found", reservation_id=reservation_id)
            locked_tables = {current.table_id, draft.table_id}
            async with self.locks.hold(*locked_tables):
                reservation = await self._retry(self.res_repo.get_for_update, reservation_id)
                if reservation is None:
                    raise NotFoundError("reservation not found", reservation_id=reservation_id)
                if reservation.table_id not in locked_tables:
                    # Moved to another table between the two reads; lock again.
                    continue
                if not actor.can_manage(reservation.user_id):
                    raise ForbiddenError("you are not allowed to modify this reservation")
                if reservation.status not in BLOCKING_STATUSES:
                    raise InvalidStateTransitionError(from_status=reservation.status, to_status="updated")

                await self._require_table(draft.table_id)
                policy = await self.policy_store.get_policy()
                accepted = await self._validate(
                    draft,
                    policy,
                    user_id=reservation.user_id,
                    now=now,
                    exclude_id=reservation.id,
                )
                previous = reservation.status
                target = _status_after_update(reservation, accepted, policy)
                if target != previous:
                    ensure_transition(previous, target)

                changes = {
                    "table_id": accepted.table_id,
                    "start_time": accepted.start_time,
                    "end_time": accepted.end_time,
                    "num_members": accepted.num_members,
                    "num_guests": accepted.num_guests,
                    "all_day": accepted.all_day,
                    "reason": accepted.reason,
                    "status": target,
                    "approved": target == ReservationStatus.ACTIVE,
                    "version": reservation.version + 1,
                    "updated_at": now,
                }
                reservation = await self._retry(self.res_repo.save, reservation, changes)
            break

        logger.info("reservation %s updated by user %s", reservation.id, actor.id)
        if target != previous:
            self._publish(reservation, previous, now, initiator_for(actor, reservation.user_id))
        kind = NotificationKind.AWAITING_APPROVAL if target == ReservationStatus.PENDING else NotificationKind.UPDATED
        self._notify(reservation.user_id, kind, reservation_payload(reservation))
        return reservation

    async def cancel(self, reservation_id: int, *, actor: Actor, now: Optional[datetime] = None) -> Reservation:
        now = self._now(now)
        current = await self.res_repo.get(reservation_id)
        if current is None:
            raise NotFoundError("reservation not found", reservation_id=reservation_id)

        async with self.locks.hold(current.table_id):
            reservation = await self._retry(self.res_repo.get_for_update, reservation_id)
            if reservation is None:
                raise NotFoundError("reservation not found", reservation_id=reservation_id)
            if not actor.can_manage(reservation.user_id):
                raise ForbiddenError("you are not allowed to cancel this reservation")
            # Repeated cancels from client retries succeed without changes.
            if reservation.status == ReservationStatus.CANCELLED:
                return reservation

            previous = reservation.status
            ensure_transition(previous, ReservationStatus.CANCELLED)
            changes = {
                "status": ReservationStatus.CANCELLED,
                "version": reservation.version + 1,
                "updated_at": now,
            }
            reservation = await self._retry(self.res_repo.save, reservation, changes)

        logger.info("reservation %s cancelled by user %s", reservation.id, actor.id)
        self._publish(reservation, previous, now, initiator_for(actor, reservation.user_id))
        self._notify(reservation.user_id, NotificationKind.CANCELLED, reservation_payload(reservation))
        return reservation

    async def delete(self, reservation_id: int, *, actor: Actor) -> None:
        if not actor.is_admin:
            raise ForbiddenError("only administrators can delete reservations")
        reservation = await self._retry(self.res_repo.get_for_update, reservation_id)
        if reservation is None:
            raise NotFoundError("reservation not found", reservation_id=reservation_id)
        if reservation.status not in DELETABLE_STATUSES:
            raise InvalidStateTransitionError(from_status=reservation.status, to_status="deleted")
        await self._retry(self.res_repo.delete, reservation)
        logger.info("reservation %s (%s) deleted by admin %s", reservation_id, reservation.status, actor.id)

    async def _require_table(self, table_id: int) -> None:
        table = await self._retry(self.table_repo.get_for_update, table_id)
        if table is None:
            raise NotFoundError("table not found", table_id=table_id)

    async def _validate(
        self,
        draft: ReservationDraft,
        policy: ReservationPolicy,
        *,
        user_id: int,
        now: datetime,
        exclude_id: Optional[int] = None,
    ) -> ReservationDraft:
        window_start, window_end = _scan_window(normalize_draft(draft, policy), policy)
        existing = await self._retry(
            partial(
                self.res_repo.list_blocking,
                table_id=draft.table_id,
                user_id=user_id,
                window_start=window_start,
                window_end=window_end,
            )
        )
        result = validate_reservation(draft, policy, existing, user_id=user_id, now=now, exclude_id=exclude_id)
        if isinstance(result, Rejected):
            logger.info("reservation request by user %s rejected: %s %s", user_id, result.kind, result.detail)
            raise result.error
        return result.draft


def _scan_window(draft: ReservationDraft, policy: ReservationPolicy) -> tuple[datetime, datetime]:
    """Range that covers the whole calendar day plus the consecutive-gap neighbourhood."""
    gap = timedelta(minutes=policy.min_time_between_reservations) + _SCAN_MARGIN
    day_start, day_end = day_bounds(draft.start_time.date())
    return min(day_start, draft.start_time - gap), max(day_end, draft.end_time + gap)


def _status_after_update(
    reservation: Reservation,
    accepted: ReservationDraft,
    policy: ReservationPolicy,
) -> ReservationStatus:
    if not (accepted.all_day and policy.requires_approval_for_all_day):
        return ReservationStatus.ACTIVE
    keeps_approval = (
        reservation.status == ReservationStatus.ACTIVE
        and reservation.all_day
        and reservation.table_id == accepted.table_id
        and reservation.start_time.date() == accepted.start_time.date()
    )
    return ReservationStatus.ACTIVE if keeps_approval else ReservationStatus.PENDING
