"""Per-browser identity.

The identifier lives in client-local durable storage. For browsers that is
the signed session cookie (Starlette `SessionMiddleware`), so issuing it
never needs a database round trip.
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import MutableMapping, Optional

from .errors import IdentityUnavailable

STORAGE_KEY = "ipl_booking_user_id"
NO_IDENTITY = "server-side"


def get_identifier(storage: Optional[MutableMapping[str, str]]) -> str:
    if storage is None:
        return NO_IDENTITY
    user_id = storage.get(STORAGE_KEY)
    if not user_id:
        user_id = str(uuid.uuid4())
        storage[STORAGE_KEY] = user_id
    return user_id


@dataclass(frozen=True)
class SessionContext:
    identifier: str

    @classmethod
    def from_storage(
        cls, storage: Optional[MutableMapping[str, str]]
    ) -> "SessionContext":
        return cls(get_identifier(storage))

    def require(self) -> str:
        if not self.identifier or self.identifier == NO_IDENTITY:
            raise IdentityUnavailable("no client identity available")
        return self.identifier
