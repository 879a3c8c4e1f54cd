from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_actor, get_session
from ..domain.errors import ReservationError
from ..domain.policy import Actor
from ..infrastructure.repositories import SqlAlchemyPolicyStore
from ..schemas import PolicyRead, PolicyUpdate
from ..usecases import config as config_usecase
from .errors import to_http

router = APIRouter(prefix="/config", tags=["config"], dependencies=[Depends(get_current_actor)])


@router.get("/reservation", response_model=PolicyRead)
async def get_reservation_config(session: AsyncSession = Depends(get_session)) -> PolicyRead:
    async with session.begin():
        policy = await config_usecase.get_policy(SqlAlchemyPolicyStore(session))
    return PolicyRead.from_policy(policy)


@router.patch("/reservation", response_model=PolicyRead)
async def update_reservation_config(
    payload: PolicyUpdate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
) -> PolicyRead:
    try:
        async with session.begin():
            policy = await config_usecase.update_policy(
                SqlAlchemyPolicyStore(session),
                patch=payload.to_patch(),
                actor=actor,
            )
    except ReservationError as exc:
        raise to_http(exc) from exc
    return PolicyRead.from_policy(policy)
