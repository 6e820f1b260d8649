# notify/campaigns.py
"""
Batch email campaigns.

Recipients are sent in fixed-size batches, concurrently within a batch, with
a pause between batches to stay under the mail provider's rate limit. A
failing recipient is counted and logged; it never aborts its batch.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional,
    Tuple,
)

from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from ..helpers import new_id, now_ts, to_iso
from ..infra.timings import timeit
from ..model.db import (
    REG_CONFIRMED, EmailCampaign, Event, Registration, Ticket,
)
from .mailer import Mailer

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

CAMPAIGN_DRAFT = "draft"
CAMPAIGN_SENDING = "sending"
CAMPAIGN_SENT = "sent"
CAMPAIGN_FAILED = "failed"

_sandbox = SandboxedEnvironment(autoescape=True)


@dataclass
class Recipient:
    registration_id: str
    email: str
    name: str = ""
    event_name: str = ""
    ticket_name: str = ""


@dataclass
class CampaignResult:
    sent_count: int = 0
    failed_count: int = 0
    total_recipients: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)


def _ts(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


async def calculate_recipients(
    db: AsyncSession, filters: Optional[Dict[str, Any]] = None
) -> List[Recipient]:
    """
    filters (all optional):
      eventIds, ticketIds, registrationStatuses (default: confirmed),
      emailDomains, registeredAfter, registeredBefore (ISO-8601)
    One recipient per email address, first registration wins.
    """
    filters = filters or {}
    q = (
        select(Registration, Event.name, Ticket.name)
        .join(Event, Event.id == Registration.event_id)
        .join(Ticket, Ticket.id == Registration.ticket_id)
        .order_by(Registration.created_at, Registration.id)
    )
    if filters.get("eventIds"):
        q = q.where(Registration.event_id.in_(filters["eventIds"]))
    if filters.get("ticketIds"):
        q = q.where(Registration.ticket_id.in_(filters["ticketIds"]))
    statuses = filters.get("registrationStatuses") or [REG_CONFIRMED]
    q = q.where(Registration.status.in_(statuses))
    after = _ts(filters.get("registeredAfter"))
    if after is not None:
        q = q.where(Registration.created_at >= after)
    before = _ts(filters.get("registeredBefore"))
    if before is not None:
        q = q.where(Registration.created_at <= before)

    domains = {d.lower() for d in filters.get("emailDomains") or []}
    seen = set()
    out: List[Recipient] = []
    for reg, event_name, ticket_name in (await db.execute(q)).all():
        email = reg.email
        if domains and email.rpartition("@")[2].lower() not in domains:
            continue
        if email in seen:
            continue
        seen.add(email)
        name = (reg.form_data or {}).get("name") or ""
        out.append(Recipient(
            registration_id=reg.id,
            email=email,
            name=name if isinstance(name, str) else "",
            event_name=event_name or "",
            ticket_name=ticket_name or "",
        ))
    return out


def render_campaign(content: str, r: Recipient) -> str:
    return _sandbox.from_string(content).render(
        email=r.email,
        name=r.name,
        eventName=r.event_name,
        ticketName=r.ticket_name,
        registrationId=r.registration_id,
    )


async def send_campaign(
    mailer: Mailer,
    subject: str,
    content: str,
    recipients: List[Recipient],
    batch_size: int = config.CAMPAIGN_BATCH_SIZE,
    pause_seconds: float = config.CAMPAIGN_BATCH_PAUSE_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> CampaignResult:
    result = CampaignResult(total_recipients=len(recipients))

    async def _one(r: Recipient) -> None:
        try:
            html = render_campaign(content, r)
            await mailer.send(r.email, subject, html)
        except Exception as e:
            result.failed_count += 1
            result.failures.append((r.email, f"{type(e).__name__}: {e}"))
            logger.error("campaign mail to %s (registration %s) failed: %s",
                         r.email, r.registration_id, e)
        else:
            result.sent_count += 1

    for start in range(0, len(recipients), batch_size):
        batch = recipients[start:start + batch_size]
        await asyncio.gather(*(_one(r) for r in batch))
        if start + batch_size < len(recipients):
            await sleep(pause_seconds)
    return result


def campaign_view(c: EmailCampaign) -> Dict[str, Any]:
    return {
        "id": c.id,
        "subject": c.subject,
        "status": c.status,
        "targetAudience": c.target_audience,
        "recipientCount": c.recipient_count,
        "sentCount": c.sent_count,
        "failedCount": c.failed_count,
        "createdAt": to_iso(c.created_at),
        "sentAt": to_iso(c.sent_at),
    }


class CampaignService:
    """Stores campaigns and runs the send; mailer is set at startup."""

    def __init__(self, sessions: async_sessionmaker, gated: Gated,
                 mailer: Optional[Mailer] = None,
                 clock: Callable[[], float] = now_ts,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self._sessions = sessions
        self._gated = gated
        self.mailer = mailer
        self._clock = clock
        self._sleep = sleep

    async def create(self, subject: str, content: str,
                     target_audience: Optional[Dict[str, Any]]
                     ) -> Dict[str, Any]:
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    c = EmailCampaign(
                        id=new_id(), subject=subject, content=content,
                        target_audience=target_audience,
                        status=CAMPAIGN_DRAFT, recipient_count=0,
                        sent_count=0, failed_count=0,
                        created_at=self._clock(), sent_at=None,
                    )
                    db.add(c)
        return campaign_view(c)

    async def get(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    c = await db.get(EmailCampaign, campaign_id)
        return None if c is None else campaign_view(c)

    async def send(self, campaign_id: str) -> Optional[CampaignResult]:
        if self.mailer is None:
            raise RuntimeError("mailer not initialized")
        async with self._sessions() as db:
            async with self._gated():
                async with db.begin():
                    c = await db.get(EmailCampaign, campaign_id)
                    if c is None or c.status != CAMPAIGN_DRAFT:
                        return None
                    recipients = await calculate_recipients(
                        db, c.target_audience
                    )
                    c.status = CAMPAIGN_SENDING
                    c.recipient_count = len(recipients)
            subject, content = c.subject, c.content

            logger.info("campaign %s: sending to %d recipients",
                        campaign_id, len(recipients))
            try:
                async with timeit("campaign.send"):
                    result = await send_campaign(
                        self.mailer, subject, content, recipients,
                        sleep=self._sleep,
                    )
            except Exception:
                logger.exception("campaign %s aborted", campaign_id)
                async with self._gated():
                    async with db.begin():
                        c = await db.get(EmailCampaign, campaign_id)
                        c.status = CAMPAIGN_FAILED
                raise

            async with self._gated():
                async with db.begin():
                    c = await db.get(EmailCampaign, campaign_id)
                    c.status = CAMPAIGN_SENT
                    c.sent_count = result.sent_count
                    c.failed_count = result.failed_count
                    c.sent_at = self._clock()
        logger.info("campaign %s: %d sent, %d failed", campaign_id,
                    result.sent_count, result.failed_count)
        return result
