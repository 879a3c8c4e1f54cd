import logging
from datetime import date

from ..domain.errors import MalformedRequestError, NotFoundError, ResourceInUseError
from ..domain.repositories import ReservationFilter, ReservationRepository, TableRepository
from ..infrastructure.locks import ResourceLocks
from ..models import BLOCKING_STATUSES, Reservation, Table
from ..utils.time import day_bounds

logger = logging.getLogger(__name__)


async def list_tables(table_repo: TableRepository):
    return await table_repo.list_all()


async def get_table(table_repo: TableRepository, *, table_id: int) -> Table:
    table = await table_repo.get(table_id)
    if table is None:
        raise NotFoundError("table not found", table_id=table_id)
    return table


async def create_table(table_repo: TableRepository, *, name: str, description: str | None) -> Table:
    name = name.strip()
    if not name:
        raise MalformedRequestError("table name is required")
    return await table_repo.create(name=name, description=description or None)


async def table_schedule(
    table_repo: TableRepository,
    res_repo: ReservationRepository,
    *,
    table_id: int,
    day: date,
) -> list[Reservation]:
    """Active and pending reservations of one table starting on ``day``, earliest first."""
    await get_table(table_repo, table_id=table_id)
    start, end = day_bounds(day)
    rows = await res_repo.list(ReservationFilter(table_id=table_id, date_from=start, date_to=end))
    return sorted((r for r in rows if r.status in BLOCKING_STATUSES), key=lambda r: r.start_time)


async def update_table(
    table_repo: TableRepository,
    *,
    table_id: int,
    name: str,
    description: str | None,
) -> Table:
    name = name.strip()
    if not name:
        raise MalformedRequestError("table name is required")
    table = await get_table(table_repo, table_id=table_id)
    return await table_repo.update(table, name=name, description=description or None)


async def delete_table(
    table_repo: TableRepository,
    res_repo: ReservationRepository,
    *,
    table_id: int,
    locks: ResourceLocks,
) -> None:
    """Remove a table and its reservation history.

    Refused while the table still has active or pending reservations. The
    table lock is held so no booking can slip in between the check and the delete.
    """
    async with locks.hold(table_id):
        table = await table_repo.get_for_update(table_id)
        if table is None:
            raise NotFoundError("table not found", table_id=table_id)
        if await res_repo.has_blocking(table_id):
            raise ResourceInUseError("table has active or pending reservations", table_id=table_id)
        await res_repo.delete_for_table(table_id)
        await table_repo.delete(table)
    logger.info("table %s deleted", table_id)
