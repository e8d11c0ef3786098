"""
Async client for the FanQueue API.

`QueueWatcher` replaces per-page polling timers with one poll loop per
(client, match): every tick it reads the queue status and, while the fan is
still waiting, asks for promotion. Subscribers get a `QueueSnapshot` after
each tick. The loop ends once the entry leaves 'waiting' (or disappears).

The httpx client's cookie jar holds the session cookie, so one QueueClient
is one fan.
"""

from __future__ import annotations
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

DEFAULT_POLL_INTERVAL_S = 5.0


@dataclass(frozen=True)
class QueueSnapshot:
    match_id: str
    status: Optional[str]
    position: Optional[int]
    promoted: bool = False
    seconds_left: Optional[int] = None
    redirect: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.status != "waiting"


Callback = Callable[[QueueSnapshot], Union[None, Awaitable[None]]]


class QueueClient:
    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ) -> None:
        self._owns_client = client is None
        self.http = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout
        )

    async def __aenter__(self) -> "QueueClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def _json(self, method: str, url: str, **kw) -> Dict[str, Any]:
        r = await self.http.request(method, url, **kw)
        r.raise_for_status()
        return r.json()

    async def identity(self) -> str:
        return (await self._json("GET", "/api/identity"))["user_id"]

    async def matches(self) -> List[Dict[str, Any]]:
        return (await self._json("GET", "/api/matches"))["items"]

    async def match(self, match_id: str) -> Dict[str, Any]:
        return await self._json("GET", f"/api/matches/{match_id}")

    async def join(self, match_id: str) -> Dict[str, Any]:
        return await self._json("POST", f"/api/matches/{match_id}/queue")

    async def status(self, match_id: str) -> Dict[str, Any]:
        return await self._json("GET", f"/api/matches/{match_id}/queue")

    async def check_turn(self, match_id: str) -> Dict[str, Any]:
        return await self._json(
            "POST", f"/api/matches/{match_id}/queue/turn"
        )

    async def confirm(
        self, match_id: str, stand_id: str, quantity: int
    ) -> Dict[str, Any]:
        # failures come back as 4xx/5xx with the same body shape
        r = await self.http.post(
            f"/api/matches/{match_id}/bookings",
            json={"stand_id": stand_id, "quantity": quantity},
        )
        body = r.json()
        body.setdefault("success", r.is_success)
        return body


class QueueWatcher:
    def __init__(
        self,
        client: QueueClient,
        match_id: str,
        *,
        interval: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self.client = client
        self.match_id = match_id
        self.interval = interval
        self._subscribers: List[Callback] = []
        self._stopped = asyncio.Event()
        self.last: Optional[QueueSnapshot] = None

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return _unsubscribe

    def stop(self) -> None:
        self._stopped.set()

    async def _notify(self, snap: QueueSnapshot) -> None:
        for cb in list(self._subscribers):
            res = cb(snap)
            if inspect.isawaitable(res):
                await res

    async def poll_once(self) -> QueueSnapshot:
        st = await self.client.status(self.match_id)
        status = st.get("status")
        promoted = False
        entry = st.get("entry") or {}
        redirect = None
        if status == "waiting":
            turn = await self.client.check_turn(self.match_id)
            promoted = bool(turn.get("promoted"))
            status = turn.get("status") or status
            entry = turn.get("entry") or entry
            redirect = turn.get("redirect")
        snap = QueueSnapshot(
            match_id=self.match_id,
            status=status,
            position=st.get("position"),
            promoted=promoted,
            seconds_left=entry.get("seconds_left"),
            redirect=redirect,
        )
        self.last = snap
        await self._notify(snap)
        return snap

    async def run(self) -> Optional[QueueSnapshot]:
        """Poll until the entry leaves 'waiting' or stop() is called."""
        while not self._stopped.is_set():
            snap = await self.poll_once()
            if snap.done:
                return snap
            try:
                await asyncio.wait_for(
                    self._stopped.wait(), timeout=self.interval
                )
            except asyncio.TimeoutError:
                pass
        return self.last
