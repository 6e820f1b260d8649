"""Standalone notification worker.

    python -m ticketdesk.worker

Runs the outbox dispatcher and the webhook retry loop outside the web
process (start the web process with RUN_WORKERS=0).
"""

import asyncio
import logging
import signal

import httpx

from . import config
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .model.db import create_schema
from .notify.dispatcher import NotificationDispatcher
from .notify.mailer import new_mailer
from .notify.webhooks import WebhookDeliveryService

logger = logging.getLogger(__name__)


async def main() -> None:
    setup_logging(config.LOG_LEVEL)
    engine, SessionAsync, _, gated = make_async_engine(config.DATABASE_URL)
    async with engine.begin() as conn:
        await create_schema(conn)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    mailer = new_mailer()
    await mailer.start()
    async with httpx.AsyncClient(
        timeout=config.WEBHOOK_TIMEOUT_SECONDS
    ) as http:
        webhooks = WebhookDeliveryService(SessionAsync, gated, http)
        dispatcher = NotificationDispatcher(SessionAsync, gated, mailer,
                                            webhooks)
        logger.info("worker up: db=%s mail=%s",
                    engine.url.get_backend_name(), config.MAIL_BACKEND)
        try:
            await asyncio.gather(dispatcher.run(stop), webhooks.run(stop))
        finally:
            await mailer.aclose()
            await engine.dispose()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
