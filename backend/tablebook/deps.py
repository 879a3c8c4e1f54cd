import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session, transaction
from .domain.policy import Actor
from .infrastructure.locks import ResourceLocks
from .infrastructure.repositories import (
    SqlAlchemyPolicyStore,
    SqlAlchemyReservationRepository,
    SqlAlchemyTableRepository,
)
from .models import User
from .usecases.approvals import ApprovalGate
from .usecases.reservations import ReservationScheduler
from .utils.audit_log import AuditLogPublisher
from .utils.auth import decode_access_token
from .utils.notifications import LoggingNotifier

logger = logging.getLogger(__name__)

# Process-wide collaborators shared by every request.
resource_locks = ResourceLocks()
event_publisher = AuditLogPublisher()
notifier = LoggingNotifier()

_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


@asynccontextmanager
async def reservation_repo_scope() -> AsyncIterator[SqlAlchemyReservationRepository]:
    async with transaction() as session:
        yield SqlAlchemyReservationRepository(session)


async def get_current_actor(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> Actor:
    if authorization is None or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
            headers=_BEARER_CHALLENGE,
        )
    token = authorization.split(" ", 1)[1].strip()
    settings = get_settings()
    try:
        actor = decode_access_token(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid or expired token",
            headers=_BEARER_CHALLENGE,
        ) from exc

    try:
        user_id = await session.scalar(select(User.id).where(User.id == actor.id))
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("user lookup failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="user lookup failed") from exc
    # End the implicit read transaction so routes can open their own.
    await session.rollback()
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unknown user",
            headers=_BEARER_CHALLENGE,
        )
    return actor


def build_scheduler(session: AsyncSession) -> ReservationScheduler:
    return ReservationScheduler(
        SqlAlchemyReservationRepository(session),
        SqlAlchemyTableRepository(session),
        SqlAlchemyPolicyStore(session),
        locks=resource_locks,
        publisher=event_publisher,
        notifier=notifier,
        max_write_attempts=get_settings().write_retry_attempts,
    )


def build_approval_gate(session: AsyncSession) -> ApprovalGate:
    return ApprovalGate(
        SqlAlchemyReservationRepository(session),
        publisher=event_publisher,
        notifier=notifier,
        max_write_attempts=get_settings().write_retry_attempts,
    )
