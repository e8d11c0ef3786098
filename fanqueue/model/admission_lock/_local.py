from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class AdmissionLocks:
    """One asyncio.Lock per match. Only valid for a single worker process."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, match_id: str) -> asyncio.Lock:
        lock = self._locks.get(match_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[match_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, match_id: str):
        async with self._lock_for(match_id):
            yield
