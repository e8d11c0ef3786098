# model/reservation.py
"""
Reservation engine: turn a 'processing' queue entry into a booking.

The decrement and the entry completion run in one transaction:

    UPDATE stands SET available_tickets = available_tickets - :q
    WHERE id = :stand AND match_id = :match AND available_tickets >= :q

is a conditional decrement, so two bookings racing for the last tickets of a
stand can never both succeed. If the entry can no longer be completed (the
window closed between the checks and the update) the transaction is rolled
back, which undoes the decrement.
"""

from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy import text

from ..errors import (
    GENERIC_FAILURE, BookingError, InsufficientInventory, InvalidQuantity,
    InvalidState, NotAuthorized, SessionExpired,
)
from ..identity import SessionContext
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ._storage import storage_boundary
from .admission import load_current_entry, settle_overdue
from .catalog import get_stand
from .orm import ST_EXPIRED, ST_PROCESSING

MAX_TICKETS_PER_BOOKING = 2


@dataclass(frozen=True)
class BookingResult:
    success: bool
    message: str
    # cause of a failure, for logs and callers; never shown to the fan
    error: Optional[BookingError] = None
    entry_id: Optional[int] = None
    available_tickets: Optional[int] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None


class _EntryNotCompletable(Exception):
    """Raised inside the transaction to force a rollback."""


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantity(f"quantity must be an integer, got {quantity!r}")
    if not 1 <= quantity <= MAX_TICKETS_PER_BOOKING:
        raise InvalidQuantity(
            f"quantity must be in [1, {MAX_TICKETS_PER_BOOKING}], "
            f"got {quantity}"
        )
    return quantity


async def _book(
    db: GatedAsyncSession,
    user_id: str,
    match_id: str,
    stand_id: str,
    quantity: int,
    now_ts: float,
) -> BookingResult:
    expired_entry_id = None
    async with db.gated():
        async with db.session.begin():
            entry = await load_current_entry(db.session, user_id, match_id)
            if entry is None:
                raise NotAuthorized(
                    f"user {user_id} has no queue entry for match {match_id}"
                )
            settled = await settle_overdue(db.session, entry, now_ts)
            if settled.status == ST_EXPIRED:
                # commit the lazy expiry, then report
                expired_entry_id = settled.id
            elif settled.status != ST_PROCESSING:
                raise InvalidState(
                    f"queue entry {entry.id} is {settled.status}",
                    status=settled.status,
                )
            else:
                row = (await db.session.execute(text("""
                    UPDATE stands
                    SET available_tickets = available_tickets - :q
                    WHERE id=:sid
                      AND match_id=:mid
                      AND available_tickets >= :q
                    RETURNING available_tickets
                """), {
                    "q": quantity, "sid": stand_id, "mid": match_id,
                })).first()
                if row is None:
                    stand = await get_stand(db.session, stand_id)
                    if stand is None or stand["match_id"] != match_id:
                        raise InvalidState(
                            f"stand {stand_id} does not belong to match "
                            f"{match_id}",
                            status=settled.status,
                        )
                    raise InsufficientInventory(
                        f"stand {stand_id} has {stand['available_tickets']} "
                        f"tickets, {quantity} requested"
                    )
                available = int(row[0])

                done = (await db.session.execute(text("""
                    UPDATE queue SET status='completed'
                    WHERE id=:id
                      AND status='processing'
                      AND (expires_at IS NULL OR expires_at > :now)
                    RETURNING id
                """), {"id": entry.id, "now": now_ts})).first()
                if done is None:
                    raise _EntryNotCompletable(entry.id)

    if expired_entry_id is not None:
        raise SessionExpired(
            f"queue entry {expired_entry_id} booking window elapsed"
        )
    return BookingResult(
        success=True,
        message=f"Successfully booked {quantity} ticket(s)!",
        entry_id=entry.id,
        available_tickets=available,
    )


async def confirm_booking(
    db: GatedAsyncSession,
    ctx: SessionContext,
    match_id: str,
    stand_id: str,
    quantity: int,
    now_ts: Optional[float] = None,
) -> BookingResult:
    """
    Book `quantity` (1-2) tickets of `stand_id` for the caller's processing
    entry. Never raises for business or storage failures: the result carries
    a generic message plus the typed cause in `error`.
    """
    now = time.time() if now_ts is None else now_ts
    try:
        user_id = ctx.require()
        quantity = _validate_quantity(quantity)
        async with timeit("reservation.confirm"):
            async with storage_boundary("reservation.confirm"):
                try:
                    result = await _book(
                        db, user_id, match_id, stand_id, quantity, now
                    )
                except _EntryNotCompletable as exc:
                    # rolled back: the decrement never became visible
                    raise SessionExpired(
                        f"queue entry {exc.args[0]} left processing during "
                        f"booking"
                    ) from None
    except BookingError as exc:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            f"booking failed for match {match_id} stand {stand_id} "
            f"qty {quantity!r}: {exc.kind}: {exc.detail}"
        )
        return BookingResult(success=False, message=GENERIC_FAILURE, error=exc)

    logger.info(
        f"queue entry {result.entry_id} completed: {quantity} ticket(s) of "
        f"stand {stand_id}, {result.available_tickets} left"
    )
    return result
