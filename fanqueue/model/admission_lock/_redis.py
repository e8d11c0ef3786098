from __future__ import annotations
from contextlib import asynccontextmanager

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import LockError, RedisError

from ...errors import StorageError


# ---- keys
def k_admit(match_id: str) -> str: return f"admit:{match_id}"


class AdmissionLocks:
    """
    Per-match lock shared by all workers. `timeout_seconds` bounds how long a
    crashed holder can block admission for its match.
    """

    def __init__(self, r: redis.Redis, timeout_seconds: float = 5.0,
                 blocking_timeout: float = 10.0) -> None:
        self.r = r
        self.timeout = timeout_seconds
        self.blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, match_id: str):
        lock = self.r.lock(
            k_admit(match_id),
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            logger.opt(exception=exc).error(
                f"admission lock for match {match_id} unavailable"
            )
            raise StorageError(f"admission lock: {exc}") from exc
        if not acquired:
            raise StorageError(f"admission lock busy for match {match_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # expired while held; the next holder already owns it
                logger.warning(
                    f"admission lock for match {match_id} expired before "
                    f"release"
                )
            except RedisError as exc:
                # the lock times out on its own; the promotion is committed
                logger.opt(exception=exc).error(
                    f"admission lock for match {match_id} not released"
                )
