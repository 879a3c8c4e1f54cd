from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncContextManager, Callable, Optional

from ..domain.events import EventPublisher, StatusChanged
from ..domain.repositories import ReservationRepository
from ..models import ReservationStatus
from ..utils.request_id import bound_request_id, generate_request_id
from ..utils.time import local_now

logger = logging.getLogger(__name__)

RepositoryScope = Callable[[], AsyncContextManager[ReservationRepository]]


@dataclass
class SweepSummary:
    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class LifecycleSweeper:
    """Moves active reservations whose end time has passed to ``completed``.

    ``repo_scope`` opens a unit of work; each record is completed in its own
    scope so one failing row does not undo or stop the rest of the batch.
    Failed rows stay active and are picked up again on the next run.
    """

    def __init__(
        self,
        repo_scope: RepositoryScope,
        publisher: EventPublisher,
        *,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.repo_scope = repo_scope
        self.publisher = publisher
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: Optional[asyncio.Task[None]] = None

    async def run_once(self, now: Optional[datetime] = None) -> SweepSummary:
        now = now if now is not None else self.clock()
        summary = SweepSummary()
        with bound_request_id(generate_request_id("sweep-")):
            async with self.repo_scope() as repo:
                expired = [(r.id, r.table_id, r.user_id) for r in await repo.list_expired_active(now)]

            for reservation_id, table_id, user_id in expired:
                try:
                    async with self.repo_scope() as repo:
                        changed = await repo.complete_if_active(reservation_id, now)
                except Exception:
                    summary.failed.append(reservation_id)
                    logger.exception("failed to complete reservation %s; will retry next sweep", reservation_id)
                    continue
                if not changed:
                    continue

                # The completion is committed even if the audit record below fails.
                summary.completed.append(reservation_id)
                try:
                    self.publisher.publish(
                        StatusChanged(
                            reservation_id=reservation_id,
                            from_status=ReservationStatus.ACTIVE,
                            to_status=ReservationStatus.COMPLETED,
                            at=now,
                            table_id=table_id,
                            user_id=user_id,
                            initiator="system",
                        )
                    )
                except Exception:
                    logger.exception("failed to record audit log for completed reservation %s", reservation_id)

        if summary.completed or summary.failed:
            logger.info("sweep finished: %d completed, %d failed", len(summary.completed), len(summary.failed))
        return summary

    async def run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("lifecycle sweep failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="lifecycle-sweeper")
            logger.info("lifecycle sweeper started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("lifecycle sweeper stopped")
