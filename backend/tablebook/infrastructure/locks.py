from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ResourceLocks:
    """Per-table asyncio locks serializing the validate-then-write path.

    Locks for different tables are independent. When several tables are held at
    once they are acquired in ascending id order so two callers cannot deadlock.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, table_id: int) -> asyncio.Lock:
        return self._locks.setdefault(table_id, asyncio.Lock())

    @asynccontextmanager
    async def hold(self, *table_ids: int) -> AsyncIterator[None]:
        acquired: list[asyncio.Lock] = []
        try:
            for table_id in sorted(set(table_ids)):
                lock = self._lock_for(table_id)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
