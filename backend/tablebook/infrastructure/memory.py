"""In-process reference implementations of the repository protocols.

They keep ORM instances in plain dicts and yield to the event loop on every
call, so interleavings between concurrent requests behave like real I/O.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from ..domain.policy import ReservationPolicy
from ..domain.repositories import PolicyStore, ReservationFilter, ReservationRepository, TableRepository
from ..models import BLOCKING_STATUSES, Reservation, ReservationStatus, Table
from ..utils.time import local_now


class InMemoryTableRepository(TableRepository):
    def __init__(self, tables: Sequence[Table] = ()) -> None:
        self._tables: dict[int, Table] = {t.id: t for t in tables}
        self._ids = itertools.count(max(self._tables, default=0) + 1)

    async def get(self, table_id: int) -> Table | None:
        await asyncio.sleep(0)
        return self._tables.get(table_id)

    async def get_for_update(self, table_id: int) -> Table | None:
        return await self.get(table_id)

    async def list_all(self) -> Sequence[Table]:
        await asyncio.sleep(0)
        return [self._tables[k] for k in sorted(self._tables)]

    async def create(self, *, name: str, description: str | None) -> Table:
        now = local_now()
        table = Table(id=next(self._ids), name=name, description=description, created_at=now, updated_at=now)
        self._tables[table.id] = table
        return table

    async def update(self, table: Table, *, name: str, description: str | None) -> Table:
        await asyncio.sleep(0)
        table.name = name
        table.description = description
        table.updated_at = local_now()
        return table

    async def delete(self, table: Table) -> None:
        await asyncio.sleep(0)
        self._tables.pop(table.id, None)


class InMemoryPolicyStore(PolicyStore):
    def __init__(self, policy: Optional[ReservationPolicy] = None) -> None:
        self._policy = policy or ReservationPolicy()

    async def get_policy(self) -> ReservationPolicy:
        await asyncio.sleep(0)
        return self._policy

    async def update_policy(self, patch: Mapping[str, Any]) -> ReservationPolicy:
        self._policy = self._policy.patched(patch)
        return self._policy

    def set_policy(self, policy: ReservationPolicy) -> None:
        self._policy = policy


class InMemoryReservationRepository(ReservationRepository):
    def __init__(self) -> None:
        self._rows: dict[int, Reservation] = {}
        self._ids = itertools.count(1)

    async def get(self, reservation_id: int) -> Optional[Reservation]:
        await asyncio.sleep(0)
        return self._rows.get(reservation_id)

    async def get_for_update(self, reservation_id: int) -> Optional[Reservation]:
        return await self.get(reservation_id)

    async def list(self, criteria: ReservationFilter) -> list[Reservation]:
        await asyncio.sleep(0)
        rows = [r for r in self._rows.values() if _matches(r, criteria)]
        return sorted(rows, key=lambda r: (r.start_time, r.id), reverse=True)

    async def list_blocking(
        self,
        *,
        table_id: int,
        user_id: int,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Reservation]:
        await asyncio.sleep(0)
        return [
            r
            for r in self._rows.values()
            if r.status in BLOCKING_STATUSES
            and (r.table_id == table_id or r.user_id == user_id)
            and r.start_time < window_end
            and r.end_time > window_start
        ]

    async def add(self, reservation: Reservation) -> Reservation:
        await asyncio.sleep(0)
        if reservation.id is None:
            reservation.id = next(self._ids)
        self._rows[reservation.id] = reservation
        return reservation

    async def save(self, reservation: Reservation, changes: Mapping[str, Any]) -> Reservation:
        await asyncio.sleep(0)
        for key, value in changes.items():
            setattr(reservation, key, value)
        self._rows[reservation.id] = reservation
        return reservation

    async def delete(self, reservation: Reservation) -> None:
        await asyncio.sleep(0)
        self._rows.pop(reservation.id, None)

    async def has_blocking(self, table_id: int) -> bool:
        await asyncio.sleep(0)
        return any(r.table_id == table_id and r.status in BLOCKING_STATUSES for r in self._rows.values())

    async def delete_for_table(self, table_id: int) -> None:
        await asyncio.sleep(0)
        for reservation_id in [k for k, r in self._rows.items() if r.table_id == table_id]:
            del self._rows[reservation_id]

    async def list_expired_active(self, now: datetime) -> list[Reservation]:
        await asyncio.sleep(0)
        rows = [r for r in self._rows.values() if r.status == ReservationStatus.ACTIVE and r.end_time < now]
        return sorted(rows, key=lambda r: r.end_time)

    async def complete_if_active(self, reservation_id: int, now: datetime) -> bool:
        await asyncio.sleep(0)
        row = self._rows.get(reservation_id)
        if row is None or row.status != ReservationStatus.ACTIVE or not row.end_time < now:
            return False
        row.status = ReservationStatus.COMPLETED
        row.version += 1
        row.updated_at = now
        return True


def _matches(row: Reservation, criteria: ReservationFilter) -> bool:
    if criteria.table_id is not None and row.table_id != criteria.table_id:
        return False
    if criteria.user_id is not None and row.user_id != criteria.user_id:
        return False
    if criteria.date_from is not None and row.start_time < criteria.date_from:
        return False
    if criteria.date_to is not None and row.start_time >= criteria.date_to:
        return False
    if criteria.status is not None and row.status != criteria.status:
        return False
    return True
