from datetime import date
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_actor, get_session, resource_locks
from ..domain.errors import ReservationError
from ..domain.policy import Actor
from ..infrastructure.repositories import SqlAlchemyReservationRepository, SqlAlchemyTableRepository
from ..schemas import BusySlot, TableWrite, TableRead
from ..usecases import tables as table_usecase
from .errors import to_http

router = APIRouter(prefix="/tables", tags=["tables"], dependencies=[Depends(get_current_actor)])


@router.get("", response_model=List[TableRead])
async def list_tables(session: AsyncSession = Depends(get_session)) -> list[TableRead]:
    tables = await table_usecase.list_tables(SqlAlchemyTableRepository(session))
    return [TableRead.from_db(table=t) for t in tables]


@router.get("/{table_id}", response_model=TableRead)
async def get_table(
    table_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> TableRead:
    try:
        table = await table_usecase.get_table(SqlAlchemyTableRepository(session), table_id=table_id)
    except ReservationError as exc:
        raise to_http(exc) from exc
    return TableRead.from_db(table=table)


@router.post("", response_model=TableRead, status_code=status.HTTP_201_CREATED)
async def create_table(
    payload: TableWrite,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> TableRead:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="administrators only")
    table_repo = SqlAlchemyTableRepository(session)
    try:
        async with session.begin():
            table = await table_usecase.create_table(
                table_repo,
                name=payload.name,
                description=payload.description,
            )
    except ReservationError as exc:
        raise to_http(exc) from exc
    return TableRead.from_db(table=table)


@router.put("/{table_id}", response_model=TableRead)
async def update_table(
    payload: TableWrite,
    table_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> TableRead:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="administrators only")
    try:
        async with session.begin():
            table = await table_usecase.update_table(
                SqlAlchemyTableRepository(session),
                table_id=table_id,
                name=payload.name,
                description=payload.description,
            )
    except ReservationError as exc:
        raise to_http(exc) from exc
    return TableRead.from_db(table=table)


@router.delete("/{table_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_table(
    table_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> Response:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="administrators only")
    try:
        async with session.begin():
            await table_usecase.delete_table(
                SqlAlchemyTableRepository(session),
                SqlAlchemyReservationRepository(session),
                table_id=table_id,
                locks=resource_locks,
            )
    except ReservationError as exc:
        raise to_http(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{table_id}/schedule", response_model=List[BusySlot])
async def table_schedule(
    table_id: int = Path(..., ge=1),
    day: date = Query(..., description="calendar day (YYYY-MM-DD)"),
    session: AsyncSession = Depends(get_session),
) -> list[BusySlot]:
    try:
        rows = await table_usecase.table_schedule(
            SqlAlchemyTableRepository(session),
            SqlAlchemyReservationRepository(session),
            table_id=table_id,
            day=day,
        )
    except ReservationError as exc:
        raise to_http(exc) from exc
    return [BusySlot(start_time=r.start_time, end_time=r.end_time, status=r.status, all_day=r.all_day) for r in rows]
