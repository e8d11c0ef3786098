import os
import asyncio
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    # heroku-style
    ("postgres://", "postgresql+asyncpg://"),
)


@dataclass
class GatedAsyncSession:
    """A session plus the gate every round trip on it must pass."""
    session: AsyncSession
    gated: Gated


def normalize_async_url(url: str) -> str:
    for prefix, driver in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@asynccontextmanager
async def gated_session(
    session_factory: async_sessionmaker, gated: Gated
) -> AsyncIterator[GatedAsyncSession]:
    async with session_factory() as session:
        yield GatedAsyncSession(session=session, gated=gated)


def _gate_limit(pool_size: Optional[int]) -> int:
    # SQLite has a single writer; Postgres gets one slot per pooled conn
    default = "1" if pool_size is None else str(pool_size)
    return max(1, int(os.getenv("DB_GATE_LIMIT", default)))


def _install_sqlite_pragmas(engine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()


def make_async_engine(database_url: str):
    """
    Returns (engine, SessionAsync, gate, gated).

    Every DB round trip in the engines runs inside `async with gated():` so
    the number of in-flight transactions never exceeds what the database can
    take. DB_GATE_LIMIT overrides the default.
    """
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    db_gate = asyncio.Semaphore(_gate_limit(pool_size))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated
