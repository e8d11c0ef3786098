import os
import asyncio
import argparse
import json
import time

from loguru import logger

from fanqueue.helpers import from_iso
from fanqueue.infra.logging import setup_logging
from fanqueue.infra.sql import gated_session, make_async_engine
from fanqueue.model import catalog

# Demo fixtures: opens_in / starts_in are seconds from now
DEMO_MATCHES = [
    {
        "match_name": "Mumbai Indians vs Chennai Super Kings",
        "venue": "Wankhede Stadium, Mumbai",
        "starts_in": 7 * 24 * 3600,
        "opens_in": 0,
        "stands": [
            {"stand_name": "North Stand", "total_tickets": 500},
            {"stand_name": "Sachin Tendulkar Stand", "total_tickets": 300},
            {"stand_name": "Garware Pavilion", "total_tickets": 50},
        ],
    },
    {
        "match_name": "Royal Challengers Bengaluru vs Kolkata Knight Riders",
        "venue": "M. Chinnaswamy Stadium, Bengaluru",
        "starts_in": 10 * 24 * 3600,
        "opens_in": 2 * 24 * 3600,
        "stands": [
            {"stand_name": "P1 Annexe", "total_tickets": 400},
            {"stand_name": "Sun Pavilion", "total_tickets": 120},
        ],
    },
]


def _ts(fixture: dict, key_iso: str, key_rel: str, now: float) -> float:
    # fixture files may give ISO datetimes or offsets from now
    if key_iso in fixture:
        return from_iso(fixture[key_iso])
    return now + float(fixture.get(key_rel, 0))


async def seed(database_url: str, fixtures: list) -> None:
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await catalog.create_schema(conn)
        logger.info('✅ schema ready')

        now = time.time()
        async with gated_session(SessionAsync, gated) as db:
            for fixture in fixtures:
                match = await catalog.create_match(
                    db,
                    match_name=fixture["match_name"],
                    venue=fixture["venue"],
                    match_datetime=_ts(
                        fixture, "match_datetime", "starts_in", now),
                    booking_opens_at=_ts(
                        fixture, "booking_opens_at", "opens_in", now),
                    match_id=fixture.get("id"),
                )
                for stand in fixture.get("stands", []):
                    await catalog.create_stand(
                        db,
                        match_id=match["id"],
                        stand_name=stand["stand_name"],
                        total_tickets=stand["total_tickets"],
                        available_tickets=stand.get("available_tickets"),
                        stand_id=stand.get("id"),
                    )
                logger.info(
                    f'✅ match {match["id"]} created: {match["match_name"]} '
                    f'({len(fixture.get("stands", []))} stands)'
                )
    finally:
        await engine.dispose()


if __name__ == '__main__':
    ap = argparse.ArgumentParser(description="Seed matches and stands")
    ap.add_argument("--database-url",
                    default=os.getenv("DATABASE_URL", "sqlite:///./fanqueue.db"))
    ap.add_argument("--fixtures", default=None,
                    help="JSON file with a list of matches (default: demo)")
    args = ap.parse_args()

    setup_logging()
    fixtures = DEMO_MATCHES
    if args.fixtures:
        with open(args.fixtures) as f:
            fixtures = json.load(f)

    asyncio.run(seed(args.database_url, fixtures))
