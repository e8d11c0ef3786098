from __future__ import annotations
import argparse
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from starlette.middleware.sessions import SessionMiddleware

import redis.asyncio as redis
import uvicorn

from .errors import BookingError, GENERIC_FAILURE
from .helpers import ct_equal, now_ts, to_iso
from .identity import SessionContext
from .infra.logging import setup_logging
from .infra.sql import GatedAsyncSession, gated_session, make_async_engine
from .infra.timings import snapshot
from .model import admission, catalog, reservation
from .model.admission_lock import BACKEND as LOCK_BACKEND, new_locks
from .model.pages import PAGES, guard_page, page_url
from .model.supervisor import BookingWindowSupervisor

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./fanqueue.db")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

setup_logging()

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> GatedAsyncSession:
    async with gated_session(SessionAsync, gated) as db:
        yield db


def session_context(request: Request) -> SessionContext:
    # the signed session cookie is the fan's client-local storage
    return SessionContext.from_storage(request.scope.get("session"))


app = FastAPI(
    title="FanQueue",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(BookingError)
async def _booking_error(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path}: {exc.kind}: {exc.detail}")
    else:
        logger.info(f"{request.url.path}: {exc.kind}: {exc.detail}")
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_body())


def get_supervisor() -> BookingWindowSupervisor:
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is None:
        raise RuntimeError("Booking window supervisor not initialized")
    return supervisor


def get_locks():
    locks = getattr(app.state, "locks", None)
    if locks is None:
        raise RuntimeError("Admission locks not initialized")
    return locks


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    L = 'Redis' if LOCK_BACKEND == 'redis' else 'in-process'
    logger.info(
        f"FanQueue is starting up: database {engine.dialect.name}, "
        f"admission locks {L}, booking window "
        f"{admission.BOOKING_WINDOW_SECONDS}s"
    )


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await catalog.create_schema(conn)


@app.on_event("startup")
async def _locks_start():
    r = None
    if LOCK_BACKEND == 'redis':
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        r = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.redis = r
    app.state.locks = new_locks(r=r)


@app.on_event("startup")
async def _supervisor_start():
    supervisor = BookingWindowSupervisor(SessionAsync, gated)
    await supervisor.start()
    app.state.supervisor = supervisor


@app.on_event("shutdown")
async def _supervisor_stop():
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is not None:
        await supervisor.stop()
        app.state.supervisor = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def _match_out(match: Dict[str, Any], now: float) -> Dict[str, Any]:
    return {
        "id": match["id"],
        "match_name": match["match_name"],
        "venue": match["venue"],
        "match_datetime": to_iso(match["match_datetime"]),
        "booking_opens_at": to_iso(match["booking_opens_at"]),
        "booking_open": catalog.booking_open(match, now),
        "opens_in_s": max(0, int(match["booking_opens_at"] - now)),
    }


async def _require_match(
    db: GatedAsyncSession, match_id: str
) -> Dict[str, Any]:
    match = await catalog.get_match(db, match_id)
    if match is None:
        raise HTTPException(404, detail="match not found")
    return match


def _entry_out(
    entry: Optional[admission.QueueEntry], now: float
) -> Optional[Dict[str, Any]]:
    if entry is None:
        return None
    out = entry.to_dict()
    out["seconds_left"] = entry.seconds_left(now)
    return out


# ----------------------------
# Identity
# ----------------------------
@app.get("/api/health")
async def health():
    return {"ok": True}


@app.get("/api/identity")
async def identity(ctx: SessionContext = Depends(session_context)):
    return {"user_id": ctx.require()}


# ----------------------------
# Matches
# ----------------------------
@app.get("/api/matches")
async def get_matches(db: GatedAsyncSession = Depends(get_db)):
    now = now_ts()
    return {"items": [_match_out(m, now)
                      for m in await catalog.list_matches(db)]}


@app.get("/api/matches/{match_id}")
async def get_match(match_id: str, db: GatedAsyncSession = Depends(get_db)):
    match = await _require_match(db, match_id)
    stands = await catalog.list_stands(db, match_id)
    out = _match_out(match, now_ts())
    out["stands"] = stands
    return out


# ----------------------------
# Queue
# ----------------------------
@app.post("/api/matches/{match_id}/queue")
async def join_queue(
    match_id: str,
    db: GatedAsyncSession = Depends(get_db),
    ctx: SessionContext = Depends(session_context),
):
    ctx.require()
    match = await _require_match(db, match_id)
    now = now_ts()
    if not catalog.booking_open(match, now):
        raise HTTPException(409, detail="booking is not open yet")

    entry = await admission.join_queue(db, ctx, match_id, now_ts=now)
    return {
        "entry": _entry_out(entry, now),
        "redirect": page_url("waiting", match_id),
    }


@app.get("/api/matches/{match_id}/queue")
async def queue_status(
    match_id: str,
    db: GatedAsyncSession = Depends(get_db),
    ctx: SessionContext = Depends(session_context),
):
    now = now_ts()
    entry, position = await admission.get_queue_status(
        db, ctx, match_id, now_ts=now
    )
    return {
        "status": entry.status if entry else None,
        "position": position,
        "entry": _entry_out(entry, now),
    }


@app.post("/api/matches/{match_id}/queue/turn")
async def check_turn(
    match_id: str,
    db: GatedAsyncSession = Depends(get_db),
    ctx: SessionContext = Depends(session_context),
):
    now = now_ts()
    promoted = await admission.check_and_promote_if_turn(
        db, ctx, match_id, get_locks(), now_ts=now
    )
    entry = await admission.get_entry(db, ctx, match_id, now_ts=now)
    if promoted and entry is not None and entry.expires_at is not None:
        get_supervisor().arm(entry.id, entry.expires_at)
    redirect = None
    if entry is not None and entry.status == "processing":
        redirect = page_url("booking", match_id)
    return {
        "promoted": promoted,
        "status": entry.status if entry else None,
        "entry": _entry_out(entry, now),
        "redirect": redirect,
    }


@app.get("/api/matches/{match_id}/queue/guard")
async def page_guard(
    match_id: str,
    page: str,
    db: GatedAsyncSession = Depends(get_db),
    ctx: SessionContext = Depends(session_context),
):
    if page not in PAGES:
        raise HTTPException(400, detail=f"page must be one of {PAGES}")
    now = now_ts()
    entry = await admission.get_entry(db, ctx, match_id, now_ts=now)
    decision = guard_page(entry, page, match_id)
    return {
        "allowed": decision.allowed,
        "status": decision.status,
        "redirect": decision.redirect,
        "entry": _entry_out(entry, now),
    }


# ----------------------------
# Bookings
# ----------------------------
@app.post("/api/matches/{match_id}/bookings")
async def confirm_booking(
    match_id: str,
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    ctx: SessionContext = Depends(session_context),
):
    stand_id = payload.get("stand_id")
    if not isinstance(stand_id, str) or not stand_id:
        raise HTTPException(400, detail="stand_id is required")

    result = await reservation.confirm_booking(
        db, ctx, match_id, stand_id, payload.get("quantity")
    )
    if result.success:
        get_supervisor().disarm(result.entry_id)
        return {
            "success": True,
            "message": result.message,
            "available_tickets": result.available_tickets,
            "redirect": page_url("confirmation", match_id),
        }

    err = result.error
    return ORJSONResponse(
        status_code=err.status_code if err is not None else 400,
        content={
            "success": False,
            "message": GENERIC_FAILURE,
            "redirect": err.redirect if err is not None else None,
        },
    )


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/login")
async def admin_login(request: Request, payload: dict):
    username = str(payload.get("username") or "")
    password = str(payload.get("password") or "")
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if not (ok_user and ok_pass):
        raise HTTPException(401, detail="invalid credentials")
    request.session["admin_user"] = username.strip()
    return {"ok": True}


@app.post("/api/admin/logout")
async def admin_logout(request: Request):
    request.session.pop("admin_user", None)
    return {"ok": True}


@app.get("/api/admin/matches/{match_id}/queue")
async def admin_queue(
    match_id: str,
    request: Request,
    limit: int = 200,
    db: GatedAsyncSession = Depends(get_db),
):
    require_admin(request)
    now = now_ts()
    limit = max(1, min(limit, 1000))
    entries = await admission.list_entries(db, match_id, limit=limit)
    items = []
    for e in entries:
        item = _entry_out(e, now)
        item["user_id"] = e.user_id
        items.append(item)
    return {"items": items, "limit": limit}


@app.post("/api/admin/queue/{entry_id}/expire")
async def admin_expire(
    entry_id: int,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    require_admin(request)
    entry = await admission.expire_entry(db, entry_id)
    if entry is None:
        raise HTTPException(404, detail="no active queue entry with that id")
    get_supervisor().disarm(entry_id)
    return {"entry": _entry_out(entry, now_ts())}


@app.get("/api/admin/timings")
async def admin_timings(request: Request):
    require_admin(request)
    return {"timings": snapshot()}


def main() -> None:
    parser = argparse.ArgumentParser(description="FanQueue API server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--workers", type=int, default=1)
    args = parser.parse_args()
    uvicorn.run(
        "fanqueue.server:app",
        host=args.host,
        port=args.port,
        workers=args.workers,
    )


if __name__ == "__main__":
    main()
