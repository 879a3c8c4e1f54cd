from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from ..models import Reservation, ReservationStatus, Table
from .policy import ReservationPolicy


@dataclass(frozen=True)
class ReservationFilter:
    table_id: Optional[int] = None
    user_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    status: Optional[ReservationStatus] = None


class TableRepository(Protocol):
    async def get(self, table_id: int) -> Table | None: ...

    async def get_for_update(self, table_id: int) -> Table | None: ...

    async def list_all(self) -> Sequence[Table]: ...

    async def create(self, *, name: str, description: str | None) -> Table: ...

    async def update(self, table: Table, *, name: str, description: str | None) -> Table: ...

    async def delete(self, table: Table) -> None: ...


class PolicyStore(Protocol):
    async def get_policy(self) -> ReservationPolicy: ...

    async def update_policy(self, patch: Mapping[str, Any]) -> ReservationPolicy: ...


class ReservationRepository(Protocol):
    async def get(self, reservation_id: int) -> Reservation | None: ...

    async def get_for_update(self, reservation_id: int) -> Reservation | None: ...

    async def list(self, criteria: ReservationFilter) -> list[Reservation]: ...

    async def list_blocking(
        self,
        *,
        table_id: int,
        user_id: int,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Reservation]: ...

    async def add(self, reservation: Reservation) -> Reservation: ...

    async def save(self, reservation: Reservation, changes: Mapping[str, Any]) -> Reservation:
        """Apply ``changes`` to ``reservation`` and persist them as one retryable write."""
        ...

    async def delete(self, reservation: Reservation) -> None: ...

    async def has_blocking(self, table_id: int) -> bool: ...

    async def delete_for_table(self, table_id: int) -> None: ...

    async def list_expired_active(self, now: datetime) -> list[Reservation]: ...

    async def complete_if_active(self, reservation_id: int, now: datetime) -> bool: ...
