"""
Test configuration and fixtures.

Environment setup happens before any fanqueue import: several modules read
their settings at import time (server, admission, admission_lock).

- `engine_parts`: a fresh SQLite file per test, schema created
- `db` / `open_db`: GatedAsyncSession handles on that database
- `match`: one open match with a roomy stand and a one-ticket stand
"""

import os
import tempfile
import uuid

_API_DB_DIR = tempfile.mkdtemp(prefix="fanqueue-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_API_DB_DIR}/api.db"
os.environ["LOCK_BACKEND"] = "local"
os.environ["SUPERVISOR_SWEEP_SECONDS"] = "0"
os.environ["BOOKING_WINDOW_SECONDS"] = "600"
os.environ["DB_GATE_LIMIT"] = "1"
os.environ["SESSION_SECRET"] = "test-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "test-password"
os.environ.pop("LOG_FILE", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from fanqueue.identity import SessionContext  # noqa: E402
from fanqueue.infra.sql import GatedAsyncSession, make_async_engine  # noqa: E402
from fanqueue.model import catalog  # noqa: E402
from fanqueue.model.admission_lock._local import AdmissionLocks  # noqa: E402

# fixed clock for deterministic engine calls
T0 = 1_900_000_000.0
WINDOW = 600


@pytest_asyncio.fixture
async def engine_parts(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/fanqueue.db"
    )
    async with engine.begin() as conn:
        await catalog.create_schema(conn)
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest_asyncio.fixture
async def open_db(engine_parts):
    """Factory for independent sessions, for concurrent callers."""
    _, SessionAsync, gated = engine_parts
    sessions = []

    def _open() -> GatedAsyncSession:
        session = SessionAsync()
        sessions.append(session)
        return GatedAsyncSession(session=session, gated=gated)

    yield _open
    for session in sessions:
        await session.close()


@pytest_asyncio.fixture
async def db(open_db):
    return open_db()


@pytest_asyncio.fixture
async def match(db):
    m = await catalog.create_match(
        db,
        match_name="Mumbai Indians vs Chennai Super Kings",
        venue="Wankhede Stadium",
        match_datetime=T0 + 7 * 24 * 3600,
        booking_opens_at=T0 - 3600,
        match_id="match-1",
    )
    north = await catalog.create_stand(
        db, match_id=m["id"], stand_name="North Stand", total_tickets=10,
        stand_id="stand-north",
    )
    last = await catalog.create_stand(
        db, match_id=m["id"], stand_name="Pavilion", total_tickets=5,
        available_tickets=1, stand_id="stand-last",
    )
    return {"match": m, "north": north, "last": last, "id": m["id"]}


@pytest.fixture
def locks():
    return AdmissionLocks()


@pytest.fixture
def new_fan():
    def _new() -> SessionContext:
        return SessionContext(str(uuid.uuid4()))
    return _new
