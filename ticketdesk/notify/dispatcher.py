# notify/dispatcher.py
"""
Outbox consumer.

The coordinator only writes outbox rows and calls kick(). The dispatcher
claims rows and
- email:   renders the template and sends it once; failure is logged and the
           row is marked failed (no email retries)
- webhook: creates the WebhookDelivery rows and settles the outbox row in one
           transaction, then starts one attempt per delivery in the
           background; later attempts belong to the webhook worker. If the
           fan-out itself fails the row keeps its claim and is picked up
           again once the claim goes stale, up to outbox.MAX_ATTEMPTS claims
"""

from __future__ import annotations
import asyncio
import logging
from typing import AsyncContextManager, Callable, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from .. import config
from ..helpers import now_ts
from ..infra.timings import timeit
from ..model import outbox
from ..model.db import EVT_CANCELLED, NotificationOutbox, OBX_EMAIL, OBX_WEBHOOK
from .mailer import Mailer, render_template
from .webhooks import WebhookDeliveryService

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]


def email_subject(event_type: str, event_name: str) -> str:
    if event_type == EVT_CANCELLED:
        return f"[{event_name}] Registration cancelled"
    return f"[{event_name}] Registration confirmation"


class NotificationDispatcher:
    def __init__(
        self,
        sessions: async_sessionmaker,
        gated: Gated,
        mailer: Optional[Mailer],
        webhooks: WebhookDeliveryService,
        clock: Callable[[], float] = now_ts,
        batch_size: int = 50,
    ):
        self._sessions = sessions
        self._gated = gated
        # set at startup when not passed in
        self.mailer = mailer
        self._webhooks = webhooks
        self._clock = clock
        self._batch_size = batch_size
        self._wake = asyncio.Event()
        # first webhook attempts still in flight
        self._attempts: Set[asyncio.Task] = set()

    def kick(self) -> None:
        """Called after a commit; never blocks."""
        self._wake.set()

    async def drain(self) -> int:
        """Process claimable rows until none are left. Returns the count."""
        total = 0
        while True:
            rows = await self._claim()
            if not rows:
                return total
            for row in rows:
                await self._process(row)
            total += len(rows)

    async def _claim(self) -> List[NotificationOutbox]:
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    return await outbox.claim_pending(db, self._clock(),
                                                      self._batch_size)

    async def _process(self, row: NotificationOutbox) -> None:
        if row.kind == OBX_EMAIL:
            await self._send_email(row)
        elif row.kind == OBX_WEBHOOK:
            await self._fan_out_webhook(row)
        else:
            await self._settle(row.id, f"unknown outbox kind {row.kind!r}")

    async def _send_email(self, row: NotificationOutbox) -> None:
        p = row.payload
        error = None
        try:
            if self.mailer is None:
                raise RuntimeError("mailer not initialized")
            html = render_template(p["template"], p["context"])
            subject = email_subject(row.event_type,
                                    p["context"].get("event_name", ""))
            async with timeit("notify.email"):
                await self.mailer.send(p["to"], subject, html)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error("email for registration %s (event %s, outbox %s) "
                         "failed: %s", row.registration_id, row.event_id,
                         row.id, error)
        await self._settle(row.id, error)

    async def _fan_out_webhook(self, row: NotificationOutbox) -> None:
        now = self._clock()
        try:
            async with self._sessions() as db:
                async with self._gated():
                    async with db.begin():
                        ids = await self._webhooks.enqueue_for_event(
                            db, row.event_id, row.event_type, row.payload,
                            now,
                        )
                        await outbox.mark_done(db, row.id, now)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception("webhook fan-out for registration %s "
                             "(outbox %s, claim %d) failed",
                             row.registration_id, row.id, row.attempts)
            if row.attempts >= outbox.MAX_ATTEMPTS:
                await self._settle(row.id, error)
            else:
                async with self._sessions() as db:
                    async with self._gated():
                        async with db.begin():
                            await outbox.defer(db, row.id, error)
            return

        for delivery_id in ids:
            task = asyncio.ensure_future(
                self._first_attempt(delivery_id, row.registration_id))
            self._attempts.add(task)
            task.add_done_callback(self._attempts.discard)

    async def _first_attempt(self, delivery_id: str,
                             registration_id: str) -> None:
        try:
            await self._webhooks.attempt(delivery_id)
        except Exception:
            # the delivery row is due; the webhook worker picks it up
            logger.exception("first attempt of webhook delivery %s "
                             "(registration %s) failed", delivery_id,
                             registration_id)

    async def wait_attempts(self) -> None:
        """Wait for the first webhook attempts started by drain()."""
        while self._attempts:
            await asyncio.gather(*list(self._attempts))

    async def _settle(self, outbox_id: str, error: Optional[str]) -> None:
        now = self._clock()
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    if error is None:
                        await outbox.mark_done(db, outbox_id, now)
                    else:
                        await outbox.mark_failed(db, outbox_id, now, error)

    async def run(self, stop: asyncio.Event,
                  poll_seconds: float = config.WORKER_POLL_SECONDS) -> None:
        logger.info("notification dispatcher started (poll=%ss)",
                    poll_seconds)
        while not stop.is_set():
            self._wake.clear()
            try:
                await self.drain()
            except Exception:
                logger.exception("notification dispatcher pass failed")
            waiter = asyncio.ensure_future(self._wake.wait())
            stopper = asyncio.ensure_future(stop.wait())
            await asyncio.wait({waiter, stopper}, timeout=poll_seconds,
                               return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
            stopper.cancel()
        await self.wait_attempts()
        logger.info("notification dispatcher stopped")
