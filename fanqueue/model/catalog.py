# model/catalog.py
"""
Matches and stands.

Both are created by an external admin process; the create functions exist
for the seed CLI and tests. Only the reservation engine ever changes
`stands.available_tickets`.
"""

from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ..infra.sql import GatedAsyncSession
from ._storage import storage_boundary
from .orm import Base

_MATCH_COLUMNS = "id, match_name, venue, match_datetime, booking_opens_at"
_STAND_COLUMNS = (
    "id, match_id, stand_name, total_tickets, available_tickets"
)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


def booking_open(match: Dict[str, Any], now_ts: float) -> bool:
    return now_ts >= float(match["booking_opens_at"])


async def create_match(
    db: GatedAsyncSession,
    *,
    match_name: str,
    venue: str,
    match_datetime: float,
    booking_opens_at: float,
    match_id: Optional[str] = None,
) -> Dict[str, Any]:
    params = {
        "id": match_id or str(uuid.uuid4()),
        "match_name": match_name,
        "venue": venue,
        "match_datetime": float(match_datetime),
        "booking_opens_at": float(booking_opens_at),
    }
    async with storage_boundary("catalog.create_match"):
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    INSERT INTO matches(id, match_name, venue,
                                        match_datetime, booking_opens_at)
                    VALUES(:id, :match_name, :venue, :match_datetime,
                           :booking_opens_at)
                """), params)
    return params


async def create_stand(
    db: GatedAsyncSession,
    *,
    match_id: str,
    stand_name: str,
    total_tickets: int,
    available_tickets: Optional[int] = None,
    stand_id: Optional[str] = None,
) -> Dict[str, Any]:
    if total_tickets < 0:
        raise ValueError("total_tickets must be >= 0")
    available = total_tickets if available_tickets is None \
        else available_tickets
    if not 0 <= available <= total_tickets:
        raise ValueError("available_tickets must be in [0, total_tickets]")

    params = {
        "id": stand_id or str(uuid.uuid4()),
        "match_id": match_id,
        "stand_name": stand_name,
        "total_tickets": int(total_tickets),
        "available_tickets": int(available),
    }
    async with storage_boundary("catalog.create_stand"):
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    INSERT INTO stands(id, match_id, stand_name,
                                       total_tickets, available_tickets)
                    VALUES(:id, :match_id, :stand_name, :total_tickets,
                           :available_tickets)
                """), params)
    return params


async def list_matches(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with storage_boundary("catalog.list_matches"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text(f"""
                    SELECT {_MATCH_COLUMNS} FROM matches
                    ORDER BY match_datetime ASC
                """))).mappings().all()
    return [dict(r) for r in rows]


async def get_match(
    db: GatedAsyncSession, match_id: str
) -> Optional[Dict[str, Any]]:
    async with storage_boundary("catalog.get_match"):
        async with db.gated():
            async with db.session.begin():
                row = (await db.session.execute(
                    text(f"SELECT {_MATCH_COLUMNS} FROM matches WHERE id=:id"),
                    {"id": match_id},
                )).mappings().first()
    return dict(row) if row else None


async def list_stands(
    db: GatedAsyncSession, match_id: str
) -> List[Dict[str, Any]]:
    async with storage_boundary("catalog.list_stands"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text(f"""
                    SELECT {_STAND_COLUMNS} FROM stands
                    WHERE match_id=:m
                    ORDER BY stand_name ASC
                """), {"m": match_id})).mappings().all()
    return [dict(r) for r in rows]


async def get_stand(
    session: AsyncSession, stand_id: str
) -> Optional[Dict[str, Any]]:
    # UN-GATED: caller owns the transaction
    row = (await session.execute(
        text(f"SELECT {_STAND_COLUMNS} FROM stands WHERE id=:id"),
        {"id": stand_id},
    )).mappings().first()
    return dict(row) if row else None
