# notify/webhooks.py
"""
Webhook delivery subsystem.

One WebhookDelivery row per (notification, endpoint). States:

    pending  --2xx-->  delivered
    pending  --fail--> retrying --fail--> ... --> failed (terminal)
    retrying --2xx-->  delivered

A failed attempt with retry_count < max_retries bumps retry_count and
schedules the next attempt with exponential backoff; otherwise the delivery
is terminal and counts against the endpoint's circuit breaker. Enough
consecutive terminal failures switch the endpoint off until an operator
re-enables it.

Delivery is at-least-once. Attempts claim a row by pushing next_retry_at
into the future with a conditional UPDATE (a lease), so two workers don't
normally send the same delivery at the same time.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

import httpx
import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from ..helpers import new_id, now_ts, to_iso
from ..infra.timings import timeit
from ..model.db import (
    DLV_DELIVERED, DLV_FAILED, DLV_PENDING, DLV_RETRYING, WebhookDelivery,
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

USER_AGENT = "ticketdesk-webhook/1.0"
MAX_RESPONSE_BODY_LENGTH = 1000
# how long a claimed delivery stays invisible to other workers
LEASE_GRACE_SECONDS = 30.0


@dataclass
class AttemptResult:
    ok: bool
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None


class RetryOutcome(Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    INELIGIBLE = "ineligible"
    ENDPOINT_DISABLED = "endpoint_disabled"


def backoff_seconds(retry_count: int,
                    base: float = config.WEBHOOK_RETRY_BASE_SECONDS,
                    cap: float = config.WEBHOOK_RETRY_MAX_SECONDS) -> float:
    """Delay after the retry_count-th failure (1-based)."""
    return min(base * (2 ** max(0, retry_count - 1)), cap)


def encode_payload(notification: Dict[str, Any]) -> str:
    return orjson.dumps({"notifications": [notification]}).decode()


async def send_webhook_request(
    http: httpx.AsyncClient,
    url: str,
    body: bytes,
    auth_header_name: Optional[str] = None,
    auth_header_value: Optional[str] = None,
    timeout: float = config.WEBHOOK_TIMEOUT_SECONDS,
) -> AttemptResult:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    if auth_header_name and auth_header_value:
        headers[auth_header_name] = auth_header_value

    try:
        r = await http.post(url, content=body, headers=headers,
                            timeout=timeout)
    except httpx.TimeoutException:
        return AttemptResult(ok=False, error_message="Request timeout")
    except httpx.HTTPError as e:
        return AttemptResult(ok=False,
                             error_message=f"{type(e).__name__}: {e}")

    ok = 200 <= r.status_code < 300
    return AttemptResult(
        ok=ok,
        status_code=r.status_code,
        response_body=r.text[:MAX_RESPONSE_BODY_LENGTH],
        error_message=None if ok else
        f"HTTP {r.status_code}: {r.reason_phrase}",
    )


def delivery_view(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "webhookId": row["webhook_id"],
        "eventType": row["event_type"],
        "status": row["status"],
        "statusCode": row["status_code"],
        "responseBody": row["response_body"],
        "errorMessage": row["error_message"],
        "retryCount": row["retry_count"],
        "nextRetryAt": to_iso(row["next_retry_at"]),
        "deliveredAt": to_iso(row["delivered_at"]),
        "createdAt": to_iso(row["created_at"]),
        "updatedAt": to_iso(row["updated_at"]),
    }


_DELIVERY_COLS = """
    d.id, d.webhook_id, d.event_type, d.payload, d.status, d.status_code,
    d.response_body, d.error_message, d.retry_count, d.next_retry_at,
    d.delivered_at, d.created_at, d.updated_at
"""


class WebhookDeliveryService:
    def __init__(
        self,
        sessions: async_sessionmaker,
        gated: Gated,
        http: Optional[httpx.AsyncClient] = None,
        *,
        max_retries: int = config.WEBHOOK_MAX_RETRIES,
        base_delay: float = config.WEBHOOK_RETRY_BASE_SECONDS,
        max_delay: float = config.WEBHOOK_RETRY_MAX_SECONDS,
        timeout: float = config.WEBHOOK_TIMEOUT_SECONDS,
        failure_threshold: int = config.WEBHOOK_FAILURE_THRESHOLD,
        clock: Callable[[], float] = now_ts,
    ):
        self._sessions = sessions
        self._gated = gated
        # set at startup when not passed in
        self.http = http
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self._clock = clock

    def backoff(self, retry_count: int) -> float:
        return backoff_seconds(retry_count, self.base_delay, self.max_delay)

    def _client(self) -> httpx.AsyncClient:
        if self.http is None:
            raise RuntimeError("webhook http client not initialized")
        return self.http

    # ------------------------------------------------------------------
    # creation (inside the caller's transaction)
    # ------------------------------------------------------------------
    async def enqueue_for_event(
        self, db: AsyncSession, event_id: str, event_type: str,
        notification: Dict[str, Any], now: float,
    ) -> List[str]:
        """
        One pending delivery per active endpoint of the event that subscribes
        to event_type. Returns the new delivery ids.
        """
        rows = (await db.execute(text("""
            SELECT id, event_types FROM webhook_endpoints
            WHERE event_id=:eid AND is_active
            ORDER BY created_at
        """), {"eid": event_id})).all()

        payload = encode_payload(notification)
        ids: List[str] = []
        for endpoint_id, event_types in rows:
            if isinstance(event_types, str):
                event_types = orjson.loads(event_types)
            if event_type not in (event_types or []):
                continue
            d = WebhookDelivery(
                id=new_id(),
                webhook_id=endpoint_id,
                event_type=event_type,
                payload=payload,
                status=DLV_PENDING,
                retry_count=0,
                # due right away; the worker picks it up if the immediate
                # attempt never happens
                next_retry_at=now,
                created_at=now,
                updated_at=now,
            )
            db.add(d)
            ids.append(d.id)
        return ids

    # ------------------------------------------------------------------
    # automatic attempts
    # ------------------------------------------------------------------
    async def attempt(self, delivery_id: str) -> Optional[str]:
        """
        One attempt of a pending/retrying delivery that is due. Returns the
        resulting status, or None when the delivery wasn't claimable (not
        due, already claimed, settled, or endpoint disabled) or was settled
        by a manual retry while the request was in flight.
        """
        now = self._clock()
        async with self._sessions() as db:
            claim = await self._claim(db, delivery_id, now)
            if claim is None:
                return None

            async with timeit("webhook.attempt"):
                result = await send_webhook_request(
                    self._client(), claim["url"], claim["payload"].encode(),
                    claim["auth_header_name"], claim["auth_header_value"],
                    self.timeout,
                )
            return await self._record(db, claim, result, self._clock())

    async def _claim(self, db: AsyncSession, delivery_id: str, now: float):
        lease_until = now + self.timeout + LEASE_GRACE_SECONDS
        async with self._gated():
            async with db.begin():
                won = (await db.execute(text("""
                    UPDATE webhook_deliveries
                    SET next_retry_at=:lease
                    WHERE id=:id
                      AND status IN (:pending, :retrying)
                      AND next_retry_at <= :now
                      AND webhook_id IN (
                          SELECT id FROM webhook_endpoints WHERE is_active
                      )
                    RETURNING id
                """), {
                    "id": delivery_id, "lease": lease_until, "now": now,
                    "pending": DLV_PENDING, "retrying": DLV_RETRYING,
                })).first()
                if won is None:
                    return None
                return (await db.execute(text(f"""
                    SELECT {_DELIVERY_COLS}, e.url, e.auth_header_name,
                           e.auth_header_value
                    FROM webhook_deliveries d
                    JOIN webhook_endpoints e ON e.id = d.webhook_id
                    WHERE d.id=:id
                """), {"id": delivery_id})).mappings().first()

    async def _record(self, db: AsyncSession, claim, result: AttemptResult,
                      now: float) -> Optional[str]:
        delivery_id = claim["id"]
        endpoint_id = claim["webhook_id"]
        async with self._gated():
            async with db.begin():
                if result.ok:
                    await self._mark_delivered(db, delivery_id, endpoint_id,
                                               result, now)
                    status = DLV_DELIVERED
                elif claim["retry_count"] >= self.max_retries:
                    res = await db.execute(text("""
                        UPDATE webhook_deliveries
                        SET status=:failed, status_code=:code,
                            response_body=:body, error_message=:err,
                            next_retry_at=NULL, updated_at=:now
                        WHERE id=:id AND status IN (:pending, :retrying)
                    """), {
                        "id": delivery_id, "now": now, "failed": DLV_FAILED,
                        "code": result.status_code,
                        "body": result.response_body,
                        "err": result.error_message,
                        "pending": DLV_PENDING, "retrying": DLV_RETRYING,
                    })
                    # settled meanwhile (manual retry); not a failure period
                    if res.rowcount:
                        await self._trip_breaker(db, endpoint_id, now)
                        status = DLV_FAILED
                    else:
                        status = None
                else:
                    retry_count = claim["retry_count"] + 1
                    res = await db.execute(text("""
                        UPDATE webhook_deliveries
                        SET status=:retrying, status_code=:code,
                            response_body=:body, error_message=:err,
                            retry_count=:rc, next_retry_at=:next,
                            updated_at=:now
                        WHERE id=:id AND status IN (:pending, :retrying)
                    """), {
                        "id": delivery_id, "now": now, "rc": retry_count,
                        "next": now + self.backoff(retry_count),
                        "code": result.status_code,
                        "body": result.response_body,
                        "err": result.error_message,
                        "pending": DLV_PENDING, "retrying": DLV_RETRYING,
                    })
                    status = DLV_RETRYING if res.rowcount else None

        if status is None:
            logger.info("webhook delivery %s was settled during the attempt",
                        delivery_id)
        elif status == DLV_DELIVERED:
            logger.info("webhook delivery %s delivered (HTTP %s)",
                        delivery_id, result.status_code)
        else:
            logger.warning("webhook delivery %s to endpoint %s -> %s: %s",
                           delivery_id, endpoint_id, status,
                           result.error_message)
        return status

    async def _mark_delivered(self, db: AsyncSession, delivery_id: str,
                              endpoint_id: str, result: AttemptResult,
                              now: float) -> None:
        await db.execute(text("""
            UPDATE webhook_deliveries
            SET status=:delivered, status_code=:code, response_body=:body,
                error_message=NULL, next_retry_at=NULL, delivered_at=:now,
                updated_at=:now
            WHERE id=:id
        """), {
            "id": delivery_id, "now": now, "delivered": DLV_DELIVERED,
            "code": result.status_code, "body": result.response_body,
        })
        await db.execute(text("""
            UPDATE webhook_endpoints
            SET consecutive_failure_periods=0, last_failure_at=NULL,
                updated_at=:now
            WHERE id=:id
        """), {"id": endpoint_id, "now": now})

    async def _trip_breaker(self, db: AsyncSession, endpoint_id: str,
                            now: float) -> None:
        row = (await db.execute(text("""
            UPDATE webhook_endpoints
            SET consecutive_failure_periods = consecutive_failure_periods + 1,
                last_failure_at = :now,
                is_active = CASE
                    WHEN consecutive_failure_periods + 1 >= :threshold
                    THEN :off ELSE is_active END,
                updated_at = :now
            WHERE id=:id
            RETURNING is_active, consecutive_failure_periods
        """), {
            "id": endpoint_id, "now": now, "off": False,
            "threshold": self.failure_threshold,
        })).first()
        if row is not None and not row[0]:
            logger.warning("webhook endpoint %s disabled after %d "
                           "consecutive failed deliveries", endpoint_id,
                           row[1])

    async def due_ids(self, now: float, limit: int = 100) -> List[str]:
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    return list((await db.execute(text("""
                        SELECT d.id
                        FROM webhook_deliveries d
                        JOIN webhook_endpoints e ON e.id = d.webhook_id
                        WHERE d.status IN (:pending, :retrying)
                          AND d.next_retry_at <= :now
                          AND e.is_active
                        ORDER BY d.next_retry_at
                        LIMIT :limit
                    """), {
                        "now": now, "limit": limit,
                        "pending": DLV_PENDING, "retrying": DLV_RETRYING,
                    })).scalars().all())

    async def process_due(self, limit: int = 100) -> int:
        """Attempt every due delivery once. Returns the number attempted."""
        ids = await self.due_ids(self._clock(), limit)
        if not ids:
            return 0
        results = await asyncio.gather(*(self.attempt(i) for i in ids))
        return sum(1 for r in results if r is not None)

    async def run(self, stop: asyncio.Event,
                  poll_seconds: float = config.WORKER_POLL_SECONDS) -> None:
        logger.info("webhook worker started (poll=%ss)", poll_seconds)
        while not stop.is_set():
            try:
                await self.process_due()
            except Exception:
                # keep the worker alive; the rows stay due
                logger.exception("webhook worker pass failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("webhook worker stopped")

    # ------------------------------------------------------------------
    # admin
    # ------------------------------------------------------------------
    async def retry_delivery(self, delivery_id: str):
        """
        Operator-forced attempt of a retrying or failed delivery.
        Returns (RetryOutcome, delivery view or None).
        """
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    row = (await db.execute(text(f"""
                        SELECT {_DELIVERY_COLS}, e.url, e.auth_header_name,
                               e.auth_header_value, e.is_active
                        FROM webhook_deliveries d
                        JOIN webhook_endpoints e ON e.id = d.webhook_id
                        WHERE d.id=:id
                    """), {"id": delivery_id})).mappings().first()
            if row is None:
                return RetryOutcome.NOT_FOUND, None
            if row["status"] not in (DLV_RETRYING, DLV_FAILED):
                return RetryOutcome.INELIGIBLE, delivery_view(row)
            if not row["is_active"]:
                return RetryOutcome.ENDPOINT_DISABLED, delivery_view(row)

            async with timeit("webhook.manual_retry"):
                result = await send_webhook_request(
                    self._client(), row["url"], row["payload"].encode(),
                    row["auth_header_name"], row["auth_header_value"],
                    self.timeout,
                )

            now = self._clock()
            async with self._gated():
                async with db.begin():
                    if result.ok:
                        await self._mark_delivered(db, delivery_id,
                                                   row["webhook_id"], result,
                                                   now)
                    else:
                        # last status/error only: no breaker change, no new
                        # retry schedule
                        await db.execute(text("""
                            UPDATE webhook_deliveries
                            SET status_code=:code, response_body=:body,
                                error_message=:err, updated_at=:now
                            WHERE id=:id
                        """), {
                            "id": delivery_id, "now": now,
                            "code": result.status_code,
                            "body": result.response_body,
                            "err": result.error_message,
                        })
                    fresh = (await db.execute(text(f"""
                        SELECT {_DELIVERY_COLS}
                        FROM webhook_deliveries d WHERE d.id=:id
                    """), {"id": delivery_id})).mappings().first()

        logger.info("manual retry of webhook delivery %s: %s", delivery_id,
                    "delivered" if result.ok else result.error_message)
        outcome = RetryOutcome.DELIVERED if result.ok else RetryOutcome.FAILED
        return outcome, delivery_view(fresh)

    async def list_failed_deliveries(
        self, event_id: str, page: int = 1, limit: int = 20
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    total = (await db.execute(text("""
                        SELECT COUNT(*)
                        FROM webhook_deliveries d
                        JOIN webhook_endpoints e ON e.id = d.webhook_id
                        WHERE e.event_id=:eid AND d.status=:failed
                    """), {"eid": event_id, "failed": DLV_FAILED})).scalar_one()
                    rows = (await db.execute(text(f"""
                        SELECT {_DELIVERY_COLS}
                        FROM webhook_deliveries d
                        JOIN webhook_endpoints e ON e.id = d.webhook_id
                        WHERE e.event_id=:eid AND d.status=:failed
                        ORDER BY d.created_at DESC, d.id
                        LIMIT :limit OFFSET :offset
                    """), {
                        "eid": event_id, "failed": DLV_FAILED,
                        "limit": limit, "offset": (page - 1) * limit,
                    })).mappings().all()
        return {
            "deliveries": [delivery_view(r) for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": int(total),
                "totalPages": (int(total) + limit - 1) // limit,
            },
        }

    async def reenable_endpoint(self, endpoint_id: str) -> bool:
        now = self._clock()
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    row = (await db.execute(text("""
                        UPDATE webhook_endpoints
                        SET is_active=:on, consecutive_failure_periods=0,
                            last_failure_at=NULL, updated_at=:now
                        WHERE id=:id
                        RETURNING id
                    """), {"id": endpoint_id, "now": now, "on": True})).first()
        if row is not None:
            logger.info("webhook endpoint %s re-enabled", endpoint_id)
        return row is not None
