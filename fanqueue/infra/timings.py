# fanqueue/infra/timings.py
"""
In-process latency samples per operation kind, read by /api/admin/timings.

Recording is an append to a bounded deque (the server runs for days; only
the most recent TIMINGS_WINDOW samples per kind are kept). Stats are
computed on read.
"""
from __future__ import annotations
import os
import statistics
import time
from collections import deque
from typing import Deque, Dict

TIMINGS_WINDOW = int(os.getenv("TIMINGS_WINDOW", "10000"))

# single-threaded event loop: no locks
_SAMPLES: Dict[str, Deque[float]] = {}


def record_timing(kind: str, seconds: float) -> None:
    samples = _SAMPLES.get(kind)
    if samples is None:
        samples = _SAMPLES[kind] = deque(maxlen=TIMINGS_WINDOW)
    samples.append(float(seconds))


class timeit:
    """async usage:
        async with timeit("admission.promote"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # failed calls are recorded too
        record_timing(self._kind, time.perf_counter() - self._t0)


def _summary(values: list[float]) -> Dict[str, float]:
    if not values:
        return {"n": 0, "mean": 0.0, "std": 0.0, "p95": 0.0, "max": 0.0}
    ordered = sorted(values)
    return {
        "n": len(values),
        "mean": statistics.mean(values),
        "std": statistics.stdev(values) if len(values) > 1 else 0.0,
        "p95": ordered[min(len(ordered) - 1, int(0.95 * len(ordered)))],
        "max": ordered[-1],
    }


def snapshot() -> Dict[str, Dict[str, float]]:
    """
    {"admission.join": {"n": 12, "mean": 0.0031, "std": 0.0004,
                        "p95": 0.0042, "max": 0.0051}, ...}
    Durations are in seconds.
    """
    return {kind: _summary(list(vals)) for kind, vals in _SAMPLES.items()}


def reset() -> None:
    _SAMPLES.clear()
