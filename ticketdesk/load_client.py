#!/usr/bin/env python3
"""
ticketdesk load client (async)

Fires concurrent registrations for one ticket, each as a different user:
  1) POST /api/registrations  {eventId, ticketId, invitationCode?, formData}
     - 409 TRANSACTION_CONFLICT is retried (with jittered backoff), every
       other outcome is final
  2) optionally PUT /api/registrations/{id}/cancel for a fraction of the
     successful ones
  3) GET /api/tickets/{ticketId}/availability at the end

Users are simulated by signing the session cookie the auth service would
set, so SESSION_SECRET must match the server's.

Usage:
  python -m ticketdesk.load_client --event EVT --ticket TCK \
      --total 500 --concurrency 50

Expect exactly min(total, capacity) CONFIRMED (minus cancellations put back)
and sold == confirmed - cancelled in the final availability line.
"""

import argparse
import asyncio
import base64
import json
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
from itsdangerous import TimestampSigner

from . import config


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


def session_cookie(secret: str, user: Dict) -> str:
    """Same format Starlette's SessionMiddleware reads."""
    data = base64.b64encode(json.dumps({"user": user}).encode("utf-8"))
    return TimestampSigner(str(secret)).sign(data).decode("utf-8")


@dataclass
class Result:
    ok: bool
    outcome: str  # CONFIRMED / <error code> / ERROR
    attempts: int = 0
    cancelled: bool = False
    t_total: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_total for r in self.results if r.ok]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]

        outcomes: Dict[str, int] = {}
        for r in self.results:
            outcomes[r.outcome] = outcomes.get(r.outcome, 0) + 1
        return {
            "total": len(self.results),
            "outcomes": outcomes,
            "cancelled": sum(1 for r in self.results if r.cancelled),
            "conflict_retries": sum(
                max(0, r.attempts - 1) for r in self.results
            ),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float, availability: Optional[Dict]):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(f"Total: {s['total']}   cancelled: {s['cancelled']}   "
              f"conflict retries: {s['conflict_retries']}")
        for outcome, n in sorted(s["outcomes"].items()):
            print(f"   {outcome:<28} {n}")
        print(
            f"Latency: avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )
        if availability is not None:
            print(f"Availability: {availability}")


async def one_registration(
    client: httpx.AsyncClient,
    base: str,
    secret: str,
    event_id: str,
    ticket_id: str,
    invitation_code: Optional[str],
    cancel: bool,
    max_attempts: int,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    user = {"id": f"load-{random.getrandbits(64):x}",
            "email": _rand_email(), "phoneVerified": True}
    cookies = {"session": session_cookie(secret, user)}
    body = {"eventId": event_id, "ticketId": ticket_id,
            "formData": {"name": user["id"]}}
    if invitation_code:
        body["invitationCode"] = invitation_code

    t0 = time.perf_counter()
    while r.attempts < max_attempts:
        r.attempts += 1
        try:
            resp = await client.post(f"{base}/api/registrations", json=body,
                                     cookies=cookies, timeout=30.0)
        except httpx.HTTPError as e:
            r.err = f"register: {e}"
            return r
        if resp.status_code == 201:
            r.ok = True
            r.outcome = "CONFIRMED"
            reg_id = resp.json()["data"]["id"]
            break
        try:
            code = resp.json()["error"]["code"]
        except (ValueError, KeyError, TypeError):
            r.err = f"register HTTP {resp.status_code}"
            return r
        if code != "TRANSACTION_CONFLICT":
            r.ok = True
            r.outcome = code
            r.t_total = time.perf_counter() - t0
            return r
        await asyncio.sleep(random.uniform(0.01, 0.05) * r.attempts)
    else:
        r.outcome = "TRANSACTION_CONFLICT"
        r.t_total = time.perf_counter() - t0
        return r

    if cancel:
        try:
            resp = await client.put(
                f"{base}/api/registrations/{reg_id}/cancel",
                cookies=cookies, timeout=30.0,
            )
            r.cancelled = resp.status_code == 200
        except httpx.HTTPError as e:
            r.err = f"cancel: {e}"
    r.t_total = time.perf_counter() - t0
    return r


async def run_load(
    base: str,
    secret: str,
    event_id: str,
    ticket_id: str,
    invitation_code: Optional[str],
    total: int,
    concurrency: int,
    cancel_rate: float,
    max_attempts: int,
):
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "ticketdesk-load/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                res = await one_registration(
                    client, base, secret, event_id, ticket_id,
                    invitation_code, random.random() < cancel_rate,
                    max_attempts,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        availability = None
        resp = await client.get(
            f"{base}/api/tickets/{ticket_id}/availability", timeout=10.0
        )
        if resp.status_code == 200:
            availability = resp.json()["data"]

    return stats, availability


def main():
    ap = argparse.ArgumentParser(description="ticketdesk load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--secret", default=config.SESSION_SECRET,
                    help="Session secret of the server")
    ap.add_argument("--event", required=True, help="Event id")
    ap.add_argument("--ticket", required=True, help="Ticket id")
    ap.add_argument("--invitation-code", default=None,
                    help="Invitation code to present")
    ap.add_argument("--total", type=int, default=100,
                    help="Total registrations to attempt")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of confirmed registrations to cancel")
    ap.add_argument("--max-attempts", type=int, default=5,
                    help="Attempts per registration on TRANSACTION_CONFLICT")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, availability = asyncio.run(run_load(
        base=args.base,
        secret=args.secret,
        event_id=args.event,
        ticket_id=args.ticket,
        invitation_code=args.invitation_code,
        total=args.total,
        concurrency=args.concurrency,
        cancel_rate=args.cancel_rate,
        max_attempts=args.max_attempts,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed, availability)


if __name__ == "__main__":
    main()
