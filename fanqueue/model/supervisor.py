# model/supervisor.py
"""
Booking window supervisor.

One countdown per promoted entry. When it fires, the entry is expired only
if it is still 'processing' and past its persisted `expires_at`, so a timer
that loses the race against a booking or an admin expiry is a no-op. The
window is wall-clock time from promotion and is not renewed by activity.

The periodic sweep covers entries promoted by other workers or before a
restart; reads of an overdue entry also expire it lazily (see admission).
"""

from __future__ import annotations
import asyncio
import os
import time
from typing import Callable, Dict, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..errors import StorageError
from ..infra.sql import Gated, gated_session
from . import admission

SUPERVISOR_SWEEP_SECONDS = float(os.getenv("SUPERVISOR_SWEEP_SECONDS", "30"))


class BookingWindowSupervisor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gated: Gated,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = SUPERVISOR_SWEEP_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated
        self.clock = clock
        self.sweep_interval = sweep_interval
        self._timers: Dict[int, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def _db(self):
        return gated_session(self.session_factory, self.gated)

    # -------------------- per-entry countdowns --------------------

    @property
    def armed(self) -> int:
        return len(self._timers)

    def is_armed(self, entry_id: int) -> bool:
        return entry_id in self._timers

    def arm(self, entry_id: int, expires_at: float) -> None:
        """Start (or restart) the countdown for a promoted entry."""
        self.disarm(entry_id)
        self._timers[entry_id] = asyncio.create_task(
            self._countdown(entry_id, expires_at),
            name=f"booking-window-{entry_id}",
        )

    def disarm(self, entry_id: int) -> bool:
        task = self._timers.pop(entry_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    async def _countdown(self, entry_id: int, expires_at: float) -> None:
        try:
            delay = expires_at - self.clock()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.fire(entry_id)
        finally:
            if self._timers.get(entry_id) is asyncio.current_task():
                del self._timers[entry_id]

    async def fire(self, entry_id: int) -> bool:
        """Expire the entry if its window has elapsed. Never raises."""
        try:
            async with self._db() as db:
                return await admission.expire_if_overdue(
                    db, entry_id, now_ts=self.clock()
                )
        except StorageError:
            # already logged; the sweep retries
            return False
        except Exception:
            logger.exception(
                f"booking window timer for entry {entry_id} failed"
            )
            return False

    # -------------------- sweep --------------------

    async def sweep(self, now_ts: Optional[float] = None) -> list[int]:
        now = self.clock() if now_ts is None else now_ts
        async with self._db() as db:
            expired = await admission.expire_overdue(db, now_ts=now)
        for entry_id in expired:
            self.disarm(entry_id)
        return expired

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except StorageError:
                continue
            except Exception:
                logger.exception("booking window sweep failed")

    # -------------------- lifecycle --------------------

    async def start(self) -> None:
        """Expire what is already overdue, re-arm the rest, start sweeping."""
        await self.sweep()
        async with self._db() as db:
            pending = await admission.list_processing(db)
        for entry in pending:
            if entry.expires_at is not None:
                self.arm(entry.id, entry.expires_at)
        if self.sweep_interval > 0:
            self._sweeper = asyncio.create_task(
                self._sweep_loop(), name="booking-window-sweeper"
            )
        logger.info(
            f"booking window supervisor started; {len(pending)} timers "
            f"re-armed"
        )

    async def stop(self) -> None:
        tasks = list(self._timers.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
