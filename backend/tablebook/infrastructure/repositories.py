from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import Select, delete, inspect, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..domain.errors import TransientRepositoryError
from ..domain.policy import ReservationPolicy
from ..domain.repositories import PolicyStore, ReservationFilter, ReservationRepository, TableRepository
from ..models import BLOCKING_STATUSES, Reservation, ReservationConfig, ReservationStatus, Table
from ..utils.time import local_now

CONFIG_ROW_ID = 1

T = TypeVar("T")


async def _locking_read(session: AsyncSession, stmt: Select[tuple[T]]) -> Optional[T]:
    """Run a ``FOR UPDATE`` read in a savepoint; lock waits surface as transient errors."""
    try:
        async with session.begin_nested():
            return await session.scalar(stmt)
    except OperationalError as exc:
        raise TransientRepositoryError(str(exc)) from exc


class SqlAlchemyTableRepository(TableRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, table_id: int) -> Table | None:
        return await self.session.get(Table, table_id)

    async def get_for_update(self, table_id: int) -> Table | None:
        stmt = (
            select(Table)
            .where(Table.id == table_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await _locking_read(self.session, stmt)

    async def list_all(self) -> Sequence[Table]:
        rows = await self.session.scalars(select(Table).order_by(Table.id))
        return list(rows.all())

    async def create(self, *, name: str, description: str | None) -> Table:
        now = local_now()
        table = Table(name=name, description=description, created_at=now, updated_at=now)
        self.session.add(table)
        await self.session.flush()
        return table

    async def update(self, table: Table, *, name: str, description: str | None) -> Table:
        table.name = name
        table.description = description
        table.updated_at = local_now()
        await self.session.flush()
        return table

    async def delete(self, table: Table) -> None:
        # Bulk delete so the unloaded ``reservations`` collection is never lazy-loaded.
        await self.session.execute(delete(Table).where(Table.id == table.id))


class SqlAlchemyPolicyStore(PolicyStore):
    """Reads the policy row on every call; nothing is cached between requests."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _load_row(self) -> ReservationConfig:
        row = await self.session.get(ReservationConfig, CONFIG_ROW_ID, populate_existing=True)
        if row is not None:
            return row
        defaults = ReservationConfig(
            id=CONFIG_ROW_ID,
            updated_at=local_now(),
            **_policy_columns(ReservationPolicy()),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(defaults)
                await self.session.flush()
        except IntegrityError:
            # Another request created the row first; use theirs.
            row = await self.session.get(ReservationConfig, CONFIG_ROW_ID, populate_existing=True)
            if row is None:
                raise
            return row
        return defaults

    async def get_policy(self) -> ReservationPolicy:
        return _row_to_policy(await self._load_row())

    async def update_policy(self, patch: Mapping[str, Any]) -> ReservationPolicy:
        row = await self._load_row()
        policy = _row_to_policy(row).patched(patch)
        for key, value in _policy_columns(policy).items():
            setattr(row, key, value)
        row.updated_at = local_now()
        await self.session.flush()
        return policy


def _policy_columns(policy: ReservationPolicy) -> dict[str, Any]:
    return {
        "max_hours_per_reservation": policy.max_hours_per_reservation,
        "max_reservations_per_user_per_day": policy.max_reservations_per_user_per_day,
        "min_hours_in_advance": policy.min_hours_in_advance,
        "allowed_start_time": policy.allowed_start_time,
        "allowed_end_time": policy.allowed_end_time,
        "requires_approval_for_all_day": policy.requires_approval_for_all_day,
        "allow_consecutive_reservations": policy.allow_consecutive_reservations,
        "min_time_between_reservations": policy.min_time_between_reservations,
    }


def _row_to_policy(row: ReservationConfig) -> ReservationPolicy:
    return ReservationPolicy(
        max_hours_per_reservation=row.max_hours_per_reservation,
        max_reservations_per_user_per_day=row.max_reservations_per_user_per_day,
        min_hours_in_advance=row.min_hours_in_advance,
        allowed_start_time=row.allowed_start_time,
        allowed_end_time=row.allowed_end_time,
        requires_approval_for_all_day=bool(row.requires_approval_for_all_day),
        allow_consecutive_reservations=bool(row.allow_consecutive_reservations),
        min_time_between_reservations=row.min_time_between_reservations,
    )


def blocking_query(
    *,
    table_id: int,
    user_id: int,
    window_start: datetime,
    window_end: datetime,
) -> Select[tuple[Reservation]]:
    """Active/pending rows of the table or the user touching the window.

    This is a locking read: under REPEATABLE READ a plain SELECT would reuse
    the snapshot taken by an earlier read in the transaction and could miss a
    row committed by a concurrent request before the table lock was granted.
    """
    return (
        select(Reservation)
        .where(
            Reservation.status.in_(BLOCKING_STATUSES),
            or_(Reservation.table_id == table_id, Reservation.user_id == user_id),
            Reservation.start_time < window_end,
            Reservation.end_time > window_start,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, reservation_id: int) -> Optional[Reservation]:
        return await self.session.get(Reservation, reservation_id)

    async def get_for_update(self, reservation_id: int) -> Optional[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await _locking_read(self.session, stmt)

    async def list(self, criteria: ReservationFilter) -> List[Reservation]:
        stmt: Select[tuple[Reservation]] = select(Reservation)
        if criteria.table_id is not None:
            stmt = stmt.where(Reservation.table_id == criteria.table_id)
        if criteria.user_id is not None:
            stmt = stmt.where(Reservation.user_id == criteria.user_id)
        if criteria.date_from is not None:
            stmt = stmt.where(Reservation.start_time >= criteria.date_from)
        if criteria.date_to is not None:
            stmt = stmt.where(Reservation.start_time < criteria.date_to)
        if criteria.status is not None:
            stmt = stmt.where(Reservation.status == criteria.status)
        rows = await self.session.scalars(stmt.order_by(Reservation.start_time.desc(), Reservation.id.desc()))
        return list(rows.all())

    async def list_blocking(
        self,
        *,
        table_id: int,
        user_id: int,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Reservation]:
        stmt = blocking_query(
            table_id=table_id,
            user_id=user_id,
            window_start=window_start,
            window_end=window_end,
        )
        try:
            async with self.session.begin_nested():
                rows = await self.session.scalars(stmt)
                return list(rows.all())
        except OperationalError as exc:
            raise TransientRepositoryError(str(exc)) from exc

    async def add(self, reservation: Reservation) -> Reservation:
        try:
            async with self.session.begin_nested():
                self.session.add(reservation)
                await self.session.flush()
        except (OperationalError, StaleDataError) as exc:
            raise TransientRepositoryError(str(exc)) from exc
        return reservation

    async def save(self, reservation: Reservation, changes: Mapping[str, Any]) -> Reservation:
        # A rolled back savepoint expires what it touched; reload before reapplying.
        if inspect(reservation).expired_attributes:
            await self.session.refresh(reservation)
        try:
            async with self.session.begin_nested():
                for key, value in changes.items():
                    setattr(reservation, key, value)
                await self.session.flush()
        except (OperationalError, StaleDataError) as exc:
            raise TransientRepositoryError(str(exc)) from exc
        return reservation

    async def delete(self, reservation: Reservation) -> None:
        try:
            async with self.session.begin_nested():
                await self.session.delete(reservation)
                await self.session.flush()
        except (OperationalError, StaleDataError) as exc:
            raise TransientRepositoryError(str(exc)) from exc

    async def has_blocking(self, table_id: int) -> bool:
        stmt = (
            select(Reservation.id)
            .where(Reservation.table_id == table_id, Reservation.status.in_(BLOCKING_STATUSES))
            .limit(1)
            .with_for_update()
        )
        return await _locking_read(self.session, stmt) is not None

    async def delete_for_table(self, table_id: int) -> None:
        await self.session.execute(delete(Reservation).where(Reservation.table_id == table_id))

    async def list_expired_active(self, now: datetime) -> List[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.status == ReservationStatus.ACTIVE, Reservation.end_time < now)
            .order_by(Reservation.end_time)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def complete_if_active(self, reservation_id: int, now: datetime) -> bool:
        stmt = (
            update(Reservation)
            .where(
                Reservation.id == reservation_id,
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.end_time < now,
            )
            .values(
                status=ReservationStatus.COMPLETED,
                version=Reservation.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except OperationalError as exc:
            raise TransientRepositoryError(str(exc)) from exc
        return bool(result.rowcount)
