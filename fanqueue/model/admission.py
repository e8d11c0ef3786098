# model/admission.py
"""
Queue admission engine.

Lifecycle of a queue entry:
- waiting -> processing        (promotion, head of line only)
- processing -> completed      (reservation engine)
- waiting|processing -> expired  (booking window elapsed / admin action)

Queue order is (joined_at ASC, id ASC). `id` is the autoincrement insertion
key, so entries with identical timestamps are ordered by insertion. Position
and promotion both use this order, so position 0 is always the head of line.
"""

from __future__ import annotations
import os
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import to_iso
from ..identity import SessionContext
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ._storage import storage_boundary
from .orm import (
    ACTIVE_STATUSES, ST_EXPIRED, ST_PROCESSING,
)

BOOKING_WINDOW_SECONDS = int(os.getenv("BOOKING_WINDOW_SECONDS", "600"))

_ENTRY_COLUMNS = (
    "id, user_id, match_id, joined_at, status, promoted_at, expires_at"
)


@dataclass(frozen=True)
class QueueEntry:
    id: int
    user_id: str
    match_id: str
    joined_at: float
    status: str
    promoted_at: Optional[float] = None
    expires_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueueEntry":
        return cls(
            id=int(row["id"]),
            user_id=row["user_id"],
            match_id=row["match_id"],
            joined_at=float(row["joined_at"]),
            status=row["status"],
            promoted_at=row["promoted_at"],
            expires_at=row["expires_at"],
        )

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def overdue(self, now_ts: float) -> bool:
        return (
            self.status == ST_PROCESSING
            and self.expires_at is not None
            and self.expires_at <= now_ts
        )

    def seconds_left(self, now_ts: float) -> Optional[int]:
        if self.status != ST_PROCESSING or self.expires_at is None:
            return None
        return max(0, int(self.expires_at - now_ts))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "match_id": self.match_id,
            "status": self.status,
            "joined_at": to_iso(self.joined_at),
            "promoted_at": to_iso(self.promoted_at),
            "expires_at": to_iso(self.expires_at),
        }


def _now(now_ts: Optional[float]) -> float:
    return time.time() if now_ts is None else now_ts


# ------------------------------------------------------------------------------
# UN-GATED helpers: caller owns the transaction
# ------------------------------------------------------------------------------

async def load_current_entry(
    session: AsyncSession, user_id: str, match_id: str
) -> Optional[QueueEntry]:
    """The active entry if there is one, otherwise the most recent."""
    row = (await session.execute(text(f"""
        SELECT {_ENTRY_COLUMNS} FROM queue
        WHERE user_id=:u AND match_id=:m
        ORDER BY CASE WHEN status IN ('waiting', 'processing')
                      THEN 0 ELSE 1 END,
                 id DESC
        LIMIT 1
    """), {"u": user_id, "m": match_id})).mappings().first()
    return QueueEntry.from_row(row) if row else None


async def expire_if_overdue_in(
    session: AsyncSession, entry_id: int, now_ts: float
) -> bool:
    row = (await session.execute(text("""
        UPDATE queue SET status='expired'
        WHERE id=:id
          AND status='processing'
          AND expires_at IS NOT NULL
          AND expires_at <= :now
        RETURNING id
    """), {"id": entry_id, "now": now_ts})).first()
    return row is not None


async def settle_overdue(
    session: AsyncSession, entry: Optional[QueueEntry], now_ts: float
) -> Optional[QueueEntry]:
    """Lazily expire a processing entry whose booking window has elapsed."""
    if entry is None or not entry.overdue(now_ts):
        return entry
    if await expire_if_overdue_in(session, entry.id, now_ts):
        logger.info(
            f"queue entry {entry.id} (match {entry.match_id}) expired: "
            f"booking window elapsed"
        )
    return replace(entry, status=ST_EXPIRED)


async def _count_ahead(session: AsyncSession, entry: QueueEntry) -> int:
    return int((await session.execute(text("""
        SELECT COUNT(*) FROM queue
        WHERE match_id=:m
          AND status='waiting'
          AND (joined_at < :j OR (joined_at = :j AND id < :id))
    """), {
        "m": entry.match_id, "j": entry.joined_at, "id": entry.id,
    })).scalar_one())


async def _advisory_lock(session: AsyncSession, match_id: str) -> None:
    # cross-process serialization on Postgres; released at commit
    if session.bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:k))"),
        {"k": f"admit:{match_id}"},
    )


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def _join_once(
    db: GatedAsyncSession, user_id: str, match_id: str, now_ts: float
) -> Tuple[QueueEntry, bool]:
    async with db.gated():
        async with db.session.begin():
            entry = await load_current_entry(db.session, user_id, match_id)
            entry = await settle_overdue(db.session, entry, now_ts)
            if entry is not None and entry.active:
                return entry, False

            row = (await db.session.execute(text(f"""
                INSERT INTO queue(user_id, match_id, joined_at, status)
                VALUES(:u, :m, :j, 'waiting')
                RETURNING {_ENTRY_COLUMNS}
            """), {"u": user_id, "m": match_id, "j": now_ts})).mappings().one()
            return QueueEntry.from_row(row), True


async def join_queue(
    db: GatedAsyncSession,
    ctx: SessionContext,
    match_id: str,
    now_ts: Optional[float] = None,
) -> QueueEntry:
    """
    Idempotent: an existing waiting/processing entry is returned unchanged.
    Raises IdentityUnavailable, StorageError.
    """
    user_id = ctx.require()
    now = _now(now_ts)
    async with timeit("admission.join"):
        async with storage_boundary("admission.join"):
            try:
                entry, created = await _join_once(db, user_id, match_id, now)
            except IntegrityError:
                # same fan joined from another tab in between; the unique
                # index kept one entry, read it back
                entry, created = await _join_once(db, user_id, match_id, now)
    if created:
        logger.info(
            f"queue entry {entry.id} joined match {match_id} "
            f"(user {user_id})"
        )
    return entry


async def get_entry(
    db: GatedAsyncSession,
    ctx: SessionContext,
    match_id: str,
    now_ts: Optional[float] = None,
) -> Optional[QueueEntry]:
    user_id = ctx.require()
    now = _now(now_ts)
    async with storage_boundary("admission.get_entry"):
        async with db.gated():
            async with db.session.begin():
                entry = await load_current_entry(
                    db.session, user_id, match_id
                )
                return await settle_overdue(db.session, entry, now)


async def get_queue_status(
    db: GatedAsyncSession,
    ctx: SessionContext,
    match_id: str,
    now_ts: Optional[float] = None,
) -> Tuple[Optional[QueueEntry], Optional[int]]:
    """(entry, position) read in one transaction."""
    user_id = ctx.require()
    now = _now(now_ts)
    async with timeit("admission.position"):
        async with storage_boundary("admission.position"):
            async with db.gated():
                async with db.session.begin():
                    entry = await load_current_entry(
                        db.session, user_id, match_id
                    )
                    entry = await settle_overdue(db.session, entry, now)
                    if entry is None:
                        return None, None
                    return entry, await _count_ahead(db.session, entry)


async def get_position(
    db: GatedAsyncSession,
    ctx: SessionContext,
    match_id: str,
    now_ts: Optional[float] = None,
) -> Optional[int]:
    """
    Number of waiting entries ahead of the caller, None without an entry.
    Point-in-time and advisory only.
    """
    _, position = await get_queue_status(db, ctx, match_id, now_ts)
    return position


async def check_and_promote_if_turn(
    db: GatedAsyncSession,
    ctx: SessionContext,
    match_id: str,
    locks,
    now_ts: Optional[float] = None,
    window_seconds: int = BOOKING_WINDOW_SECONDS,
) -> bool:
    """
    Promote the caller to 'processing' iff their entry is the head of the
    waiting line. At most one entry is promoted per call; calls for the same
    match are mutually exclusive (locks + Postgres advisory lock).
    """
    user_id = ctx.require()
    now = _now(now_ts)
    promoted_id = None
    async with timeit("admission.promote"):
        async with locks.hold(match_id):
            async with storage_boundary("admission.promote"):
                async with db.gated():
                    async with db.session.begin():
                        await _advisory_lock(db.session, match_id)
                        head = (await db.session.execute(text("""
                            SELECT id, user_id FROM queue
                            WHERE match_id=:m AND status='waiting'
                            ORDER BY joined_at ASC, id ASC
                            LIMIT 1
                        """), {"m": match_id})).mappings().first()

                        if head is not None and head["user_id"] == user_id:
                            row = (await db.session.execute(text("""
                                UPDATE queue
                                SET status='processing',
                                    promoted_at=:now,
                                    expires_at=:exp
                                WHERE id=:id AND status='waiting'
                                RETURNING id
                            """), {
                                "id": head["id"],
                                "now": now,
                                "exp": now + window_seconds,
                            })).first()
                            if row is not None:
                                promoted_id = int(row[0])

    if promoted_id is None:
        return False
    logger.info(
        f"queue entry {promoted_id} promoted to processing for match "
        f"{match_id}; window {window_seconds}s"
    )
    return True


async def expire_if_overdue(
    db: GatedAsyncSession, entry_id: int, now_ts: Optional[float] = None
) -> bool:
    now = _now(now_ts)
    async with storage_boundary("admission.expire_if_overdue"):
        async with db.gated():
            async with db.session.begin():
                expired = await expire_if_overdue_in(db.session, entry_id, now)
    if expired:
        logger.info(f"queue entry {entry_id} expired: booking window elapsed")
    return expired


async def expire_overdue(
    db: GatedAsyncSession, now_ts: Optional[float] = None
) -> List[int]:
    now = _now(now_ts)
    async with storage_boundary("admission.expire_overdue"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    UPDATE queue SET status='expired'
                    WHERE status='processing'
                      AND expires_at IS NOT NULL
                      AND expires_at <= :now
                    RETURNING id
                """), {"now": now})).all()
    ids = sorted(int(r[0]) for r in rows)
    if ids:
        logger.info(f"expired {len(ids)} overdue queue entries: {ids}")
    return ids


async def expire_entry(
    db: GatedAsyncSession, entry_id: int
) -> Optional[QueueEntry]:
    """Administrative expiry. None if the entry is missing or terminal."""
    async with storage_boundary("admission.expire_entry"):
        async with db.gated():
            async with db.session.begin():
                row = (await db.session.execute(text(f"""
                    UPDATE queue SET status='expired'
                    WHERE id=:id AND status IN ('waiting', 'processing')
                    RETURNING {_ENTRY_COLUMNS}
                """), {"id": entry_id})).mappings().first()
    if row is None:
        return None
    logger.info(f"queue entry {entry_id} expired by administrator")
    return QueueEntry.from_row(row)


async def list_processing(db: GatedAsyncSession) -> List[QueueEntry]:
    async with storage_boundary("admission.list_processing"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text(f"""
                    SELECT {_ENTRY_COLUMNS} FROM queue
                    WHERE status='processing'
                """))).mappings().all()
    return [QueueEntry.from_row(r) for r in rows]


async def list_entries(
    db: GatedAsyncSession, match_id: str, limit: int = 200
) -> List[QueueEntry]:
    async with storage_boundary("admission.list_entries"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text(f"""
                    SELECT {_ENTRY_COLUMNS} FROM queue
                    WHERE match_id=:m
                    ORDER BY joined_at ASC, id ASC
                    LIMIT :lim
                """), {"m": match_id, "lim": int(limit)})).mappings().all()
    return [QueueEntry.from_row(r) for r in rows]


__all__ = [
    "BOOKING_WINDOW_SECONDS", "QueueEntry",
    "join_queue", "get_entry", "get_queue_status", "get_position",
    "check_and_promote_if_turn", "expire_if_overdue", "expire_overdue",
    "expire_entry", "list_processing", "list_entries",
]
