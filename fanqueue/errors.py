"""Booking error taxonomy.

Engines raise (or return, for ConfirmBooking) these instead of raw storage
errors. `user_message` is what a fan sees; `str(exc)` keeps the detail for
logs and tests.
"""

from __future__ import annotations
from typing import Optional

GENERIC_FAILURE = (
    "We could not complete your booking. Please try again."
)


class BookingError(Exception):
    kind = "booking_error"
    status_code = 400
    user_message = GENERIC_FAILURE

    def __init__(self, detail: str = "", *,
                 redirect: Optional[str] = None) -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind
        self.redirect = redirect

    def to_body(self) -> dict:
        body = {"error": self.kind, "message": self.user_message}
        if self.redirect:
            body["redirect"] = self.redirect
        return body


class IdentityUnavailable(BookingError):
    kind = "identity_unavailable"
    status_code = 400
    user_message = "User session not found. Please try again."


class NotAuthorized(BookingError):
    kind = "not_authorized"
    status_code = 403
    user_message = "You are not in the queue for this match."

    def __init__(self, detail: str = "", *, redirect: Optional[str] = "/"):
        super().__init__(detail, redirect=redirect)


class InvalidState(BookingError):
    kind = "invalid_state"
    status_code = 409
    user_message = "Your queue status does not allow this action."

    def __init__(self, detail: str = "", *, status: Optional[str] = None,
                 redirect: Optional[str] = None) -> None:
        super().__init__(detail, redirect=redirect)
        self.status = status


class InsufficientInventory(BookingError):
    kind = "insufficient_inventory"
    status_code = 409


class InvalidQuantity(BookingError):
    kind = "invalid_quantity"
    status_code = 400
    user_message = "Please select between 1 and 2 tickets."


class StorageError(BookingError):
    kind = "storage_error"
    status_code = 503


class SessionExpired(BookingError):
    kind = "session_expired"
    status_code = 410
    user_message = (
        "Your booking session has expired. Please join the queue again."
    )

    def __init__(self, detail: str = "", *, redirect: Optional[str] = "/"):
        super().__init__(detail, redirect=redirect)
