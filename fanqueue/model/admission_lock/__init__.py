# model/admission_lock/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

BACKEND = os.getenv("LOCK_BACKEND", "local").lower()  # 'local' | 'redis'

if BACKEND == "redis":
    from ._redis import AdmissionLocks as _AdmissionLocks
else:
    from ._local import AdmissionLocks as _AdmissionLocks


# Factory keeps server.py simple and constructor-agnostic:
def new_locks(*, r: Optional[redis.Redis] = None,
              timeout_seconds: float = 5.0):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("AdmissionLocks(redis) requires r=redis.Redis")
        return _AdmissionLocks(r=r, timeout_seconds=timeout_seconds)
    return _AdmissionLocks()


AdmissionLocks = _AdmissionLocks
__all__ = ["AdmissionLocks", "new_locks", "BACKEND"]
