"""In-process run lock."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

from .base import RunLock


class InMemoryRunLock(RunLock):
    """One ``asyncio.Lock`` per run id, dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        # run_id -> [lock, holders + waiters]
        self._locks: Dict[str, List] = {}

    @asynccontextmanager
    async def acquire(self, run_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(run_id)
        if entry is None:
            entry = self._locks[run_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(run_id, None)

    def is_locked(self, run_id: str) -> bool:
        entry = self._locks.get(run_id)
        return bool(entry and entry[0].locked())
