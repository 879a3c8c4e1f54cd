from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import build_approval_gate, build_scheduler, get_current_actor, get_session
from ..domain.errors import ReservationError
from ..domain.policy import Actor
from ..domain.repositories import ReservationFilter
from ..infrastructure.repositories import SqlAlchemyTableRepository
from ..models import Reservation, ReservationStatus
from ..schemas import ReservationRead, ReservationReject, ReservationWrite
from ..utils.time import day_bounds
from .errors import audit_failure, to_http

router = APIRouter(prefix="/reservations", tags=["reservations"], dependencies=[Depends(get_current_actor)])


async def _read(session: AsyncSession, reservation: Reservation) -> ReservationRead:
    table = await SqlAlchemyTableRepository(session).get(reservation.table_id)
    return ReservationRead.from_db(reservation=reservation, table_name=table.name if table else None)


@router.get("", response_model=List[ReservationRead])
async def list_reservations(
    table_id: Optional[int] = Query(default=None, ge=1),
    user_id: Optional[int] = Query(default=None, ge=1),
    date_from: Optional[date] = Query(default=None, description="first day (inclusive)"),
    date_to: Optional[date] = Query(default=None, description="last day (inclusive)"),
    status_filter: Optional[ReservationStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> list[ReservationRead]:
    criteria = ReservationFilter(
        table_id=table_id,
        user_id=user_id,
        date_from=day_bounds(date_from)[0] if date_from else None,
        date_to=day_bounds(date_to)[1] if date_to else None,
        status=status_filter,
    )
    rows = await build_scheduler(session).list_reservations(criteria, actor=actor)
    names = {t.id: t.name for t in await SqlAlchemyTableRepository(session).list_all()}
    return [ReservationRead.from_db(reservation=r, table_name=names.get(r.table_id)) for r in rows]


@router.get("/{reservation_id}", response_model=ReservationRead)
async def get_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> ReservationRead:
    try:
        reservation = await build_scheduler(session).get_reservation(reservation_id, actor=actor)
    except ReservationError as exc:
        raise to_http(exc) from exc
    return await _read(session, reservation)


@router.post("", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationWrite,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> ReservationRead:
    try:
        async with session.begin():
            reservation = await build_scheduler(session).create(payload.to_draft(), actor=actor)
    except ReservationError as exc:
        raise to_http(exc) from exc
    except RuntimeError as exc:
        raise audit_failure() from exc
    return await _read(session, reservation)


@router.put("/{reservation_id}", response_model=ReservationRead)
async def update_reservation(
    payload: ReservationWrite,
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> ReservationRead:
    try:
        async with session.begin():
            reservation = await build_scheduler(session).update(reservation_id, payload.to_draft(), actor=actor)
    except ReservationError as exc:
        raise to_http(exc) from exc
    except RuntimeError as exc:
        raise audit_failure() from exc
    return await _read(session, reservation)


@router.post("/{reservation_id}/cancel", response_model=ReservationRead)
async def cancel_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> ReservationRead:
    try:
        async with session.begin():
            reservation = await build_scheduler(session).cancel(reservation_id, actor=actor)
    except ReservationError as exc:
        raise to_http(exc) from exc
    except RuntimeError as exc:
        raise audit_failure() from exc
    return await _read(session, reservation)


@router.delete("/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> Response:
    try:
        async with session.begin():
            await build_scheduler(session).delete(reservation_id, actor=actor)
    except ReservationError as exc:
        raise to_http(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{reservation_id}/approve", response_model=ReservationRead)
async def approve_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> ReservationRead:
    try:
        async with session.begin():
            reservation = await build_approval_gate(session).approve(reservation_id, actor=actor)
    except ReservationError as exc:
        raise to_http(exc) from exc
    except RuntimeError as exc:
        raise audit_failure() from exc
    return await _read(session, reservation)


@router.post("/{reservation_id}/reject", response_model=ReservationRead)
async def reject_reservation(
    payload: ReservationReject,
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> ReservationRead:
    try:
        async with session.begin():
            reservation = await build_approval_gate(session).reject(reservation_id, payload.reason, actor=actor)
    except ReservationError as exc:
        raise to_http(exc) from exc
    except RuntimeError as exc:
        raise audit_failure() from exc
    return await _read(session, reservation)
