# ticketdesk/infra/timings.py
from __future__ import annotations
import gzip
import json
import logging
import os
import socket
import time
from collections import deque
from typing import Deque, Dict, Optional, List
import statistics
from fastapi import FastAPI

import httpx

logger = logging.getLogger(__name__)

# ------------ hot path: append only ------------
# one bounded window per kind; no locks, single-threaded event loop
MAX_SAMPLES = 10_000
_TIMINGS: Dict[str, Deque[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = deque(maxlen=MAX_SAMPLES)
        _TIMINGS[kind] = lst
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("registration.tx"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only on read / flush ------------

def _mean_std(values: Deque[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> List[Dict[str, float]]:
    """One aggregate per kind: {"kind","n","mean","std","max"}."""
    out = []
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean": mean,
            "std": std,
            "max": max(vals) if vals else 0.0,
        })
    return out


def reset() -> None:
    _TIMINGS.clear()


def _to_ndjson_aggregates() -> bytes:
    lines = [
        json.dumps(rec, separators=(",", ":")) + "\n" for rec in snapshot()
    ]
    return ("".join(lines)).encode("utf-8")


async def flush_to_collector(
    metrics_url: str,
    run_id: str,
    worker_id: Optional[str] = None,
    compress: bool = False,
    timeout: float = 10.0,
) -> Dict[str, int]:
    """
    POST the aggregates to a metrics collector.
    Body: NDJSON (gzipped if compress=True)
    Headers: x-run-id, x-worker-id
    Response expected: {"accepted": <int>}
    """
    if not _TIMINGS:
        return {"accepted": 0}

    raw = _to_ndjson_aggregates()

    worker_id = worker_id or f"{os.getpid()}@{socket.gethostname()}"
    headers = {
        "content-type": "application/x-ndjson",
        "x-run-id": run_id,
        "x-worker-id": worker_id,
    }

    body = gzip.compress(raw) if compress else raw
    if compress:
        headers["content-encoding"] = "gzip"

    async with httpx.AsyncClient(timeout=timeout) as client:
        r = await client.post(
            f"{metrics_url.rstrip('/')}/v1/metric/flush",
            content=body,
            headers=headers,
        )
        r.raise_for_status()
        ack = r.json()

    # clear after successful send
    _TIMINGS.clear()
    return {"accepted": int(ack.get("accepted", 0))}


def install_shutdown_flush(app: FastAPI, metrics_url: str, run_id: str):
    """Flush the aggregates on shutdown when METRICS_URL and METRICS_RUN_ID
    are both set."""

    @app.on_event("shutdown")
    async def _flush_on_shutdown():
        if not metrics_url or not run_id:
            return
        try:
            res = await flush_to_collector(metrics_url=metrics_url,
                                           run_id=run_id)
            logger.info("timings flushed: %s", res)
        except httpx.HTTPError:
            logger.warning("timings flush to %s failed", metrics_url,
                           exc_info=True)
