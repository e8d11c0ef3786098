#!/usr/bin/env python3
"""
FanQueue load client (async)

Simulates the browser flow of many fans against the server:
  1) POST /api/matches/{m}/queue            -> waiting entry
  2) poll GET  /api/matches/{m}/queue       (position)
     and  POST /api/matches/{m}/queue/turn  until promoted
  3) GET  /api/matches/{m}                  -> pick the fullest stand
  4) POST /api/matches/{m}/bookings         (stand_id, quantity)

Each fan gets its own httpx client, so its own session cookie / identity.
It records timings per fan and prints an aggregate report.

Usage:
  python -m fanqueue.load_client --base http://localhost:8000 \
                                 --match <match-id> --fans 200 \
                                 --concurrency 50

Notes:
- `--abandon-rate` fans never confirm; their entries stay 'processing' until
  the booking window expires them.
"""

import asyncio
import random
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

from .queue_client import QueueClient, QueueWatcher


@dataclass
class Result:
    ok: bool
    outcome: str  # BOOKED/SOLD_OUT/EXPIRED/ABANDONED/TIMEOUT/ERROR
    quantity: int = 0
    t_join: float = 0.0
    t_queue: float = 0.0  # time from join until promoted
    t_confirm: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        waits = [r.t_queue for r in self.results if r.t_queue > 0]

        def pct(p):
            if not waits:
                return 0.0
            x = sorted(waits)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "booked": self.count("BOOKED"),
            "tickets": sum(
                r.quantity for r in self.results if r.outcome == "BOOKED"
            ),
            "sold_out": self.count("SOLD_OUT"),
            "expired": self.count("EXPIRED"),
            "abandoned": self.count("ABANDONED"),
            "timeout": self.count("TIMEOUT"),
            "error": self.count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(waits)/len(waits)) if waits else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Fans: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"BOOKED: {int(s['booked'])} ({int(s['tickets'])} tickets)   "
            f"SOLD_OUT: {int(s['sold_out'])}   EXPIRED: {int(s['expired'])}"
            f"   ABANDONED: {int(s['abandoned'])}   "
            f"TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Queue wait (join -> promoted): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} fans/s"
        )


def pick_stand(stands: List[dict], quantity: int) -> Optional[dict]:
    candidates = [s for s in stands if s["available_tickets"] >= quantity]
    if not candidates:
        return None
    return max(candidates, key=lambda s: s["available_tickets"])


async def one_fan(
    client: QueueClient,
    match_id: str,
    quantity: int,
    abandon: bool,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR", quantity=quantity)

    # 1) join
    t0 = time.perf_counter()
    try:
        await client.join(match_id)
    except httpx.HTTPError as e:
        r.err = f"join: {e}"
        return r
    r.t_join = time.perf_counter() - t0

    # 2) wait for our turn
    t1 = time.perf_counter()
    watcher = QueueWatcher(client, match_id, interval=poll_interval_s)
    try:
        snap = await asyncio.wait_for(watcher.run(), timeout=poll_timeout_s)
    except asyncio.TimeoutError:
        r.ok = True
        r.outcome = "TIMEOUT"
        return r
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r
    r.t_queue = time.perf_counter() - t1

    if snap is None or snap.status != "processing":
        r.ok = True
        r.outcome = "EXPIRED" if snap and snap.status == "expired" \
            else "ERROR"
        return r
    if abandon:
        r.ok = True
        r.outcome = "ABANDONED"
        return r

    # 3) choose stand, 4) confirm
    t2 = time.perf_counter()
    try:
        match = await client.match(match_id)
        stand = pick_stand(match.get("stands", []), quantity)
        if stand is None:
            r.ok = True
            r.outcome = "SOLD_OUT"
            return r
        body = await client.confirm(match_id, stand["id"], quantity)
    except httpx.HTTPError as e:
        r.err = f"confirm: {e}"
        return r
    r.t_confirm = time.perf_counter() - t2

    r.ok = True
    if body.get("success"):
        r.outcome = "BOOKED"
    elif body.get("redirect") == "/":
        r.outcome = "EXPIRED"
    else:
        # lost the last tickets to a concurrent booking
        r.outcome = "SOLD_OUT"
    return r


async def run_load(
    base: str,
    match_id: str,
    fans: int,
    concurrency: int,
    two_ticket_ratio: float,
    abandon_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    async def worker(n: int):
        async with sem:
            quantity = 2 if random.random() < two_ticket_ratio else 1
            abandon = random.random() < abandon_rate
            http = httpx.AsyncClient(
                base_url=base.rstrip("/"),
                timeout=10.0,
                headers={"User-Agent": "FanQueueLoad/1.0"},
            )
            async with QueueClient(base, client=http) as client:
                try:
                    res = await one_fan(
                        client, match_id, quantity, abandon,
                        poll_interval_s, poll_timeout_s,
                    )
                finally:
                    await http.aclose()
            stats.add(res)

    tasks = [asyncio.create_task(worker(i)) for i in range(fans)]
    await asyncio.gather(*tasks)
    return stats


def main():
    ap = argparse.ArgumentParser(description="FanQueue load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--match", required=True, help="Match id to book")
    ap.add_argument("--fans", type=int, default=100,
                    help="Total fans to simulate")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent fans")
    ap.add_argument("--two-ticket-ratio", type=float, default=0.5,
                    help="Probability a fan books 2 tickets (0..1)")
    ap.add_argument("--abandon-rate", type=float, default=0.0,
                    help="Fraction of fans that never confirm")
    ap.add_argument("--poll-interval", type=float, default=0.2,
                    help="Seconds between queue polls")
    ap.add_argument("--poll-timeout", type=float, default=120.0,
                    help="Max seconds a fan waits in the queue")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        match_id=args.match,
        fans=args.fans,
        concurrency=args.concurrency,
        two_ticket_ratio=args.two_ticket_ratio,
        abandon_rate=args.abandon_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
