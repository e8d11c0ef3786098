"""Which page a fan may view for their queue entry's status."""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from ..errors import NotAuthorized, SessionExpired
from .admission import QueueEntry
from .orm import ST_COMPLETED, ST_EXPIRED, ST_PROCESSING, ST_WAITING

PAGE_WAITING = "waiting"
PAGE_BOOKING = "booking"
PAGE_CONFIRMATION = "confirmation"

_PAGE_FOR_STATUS = {
    ST_WAITING: PAGE_WAITING,
    ST_PROCESSING: PAGE_BOOKING,
    ST_COMPLETED: PAGE_CONFIRMATION,
}
PAGES = tuple(_PAGE_FOR_STATUS.values())


@dataclass(frozen=True)
class PageDecision:
    allowed: bool
    status: str
    redirect: Optional[str] = None


def page_url(page: str, match_id: str) -> str:
    return f"/{page}/{match_id}"


def guard_page(
    entry: Optional[QueueEntry], page: str, match_id: str
) -> PageDecision:
    if page not in PAGES:
        raise ValueError(f"unknown page {page!r}")
    if entry is None:
        raise NotAuthorized(f"no queue entry for match {match_id}")
    if entry.status == ST_EXPIRED:
        raise SessionExpired(f"queue entry {entry.id} is expired")

    expected = _PAGE_FOR_STATUS[entry.status]
    if expected == page:
        return PageDecision(allowed=True, status=entry.status)
    return PageDecision(
        allowed=False,
        status=entry.status,
        redirect=page_url(expected, match_id),
    )
