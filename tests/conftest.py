"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under tmp_path, opened through the same
engine factory the app uses (BEGIN IMMEDIATE, WAL, busy timeout).
"""
import base64
import json
from types import SimpleNamespace
from typing import Optional

import pytest
import pytest_asyncio
from itsdangerous import TimestampSigner
from sqlalchemy import text

from ticketdesk import config
from ticketdesk.coordinator import (
    RegistrationCoordinator, RegistrationRequest, Requester,
)
from ticketdesk.helpers import new_id
from ticketdesk.infra.sql import make_async_engine
from ticketdesk.model.db import (
    Event, EventFormField, InvitationCode, Ticket, WebhookEndpoint,
    create_schema, EVT_CANCELLED, EVT_CONFIRMED,
)

NOW = 1_800_000_000.0
DAY = 86400.0


class Clock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, t: float = NOW):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest_asyncio.fixture
async def env(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'ticketdesk-test.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield SimpleNamespace(engine=engine, sessions=SessionAsync, gated=gated)
    await engine.dispose()


@pytest.fixture
def coordinator(env, clock):
    return RegistrationCoordinator(env.sessions, env.gated, clock=clock)


# ----------------------------
# seeding
# ----------------------------
async def add_rows(env, *rows):
    """Insert rows in order, one flush each so FKs are always satisfied."""
    async with env.sessions() as db:
        async with db.begin():
            for row in rows:
                db.add(row)
                await db.flush()
    return rows


def make_event(**kw) -> Event:
    d = dict(id=new_id(), name="PyCon Test", slug=f"ev-{new_id()[:8]}",
             location="Hall A", is_active=True, start_date=NOW + 7 * DAY,
             end_date=NOW + 8 * DAY, created_at=NOW - DAY)
    d.update(kw)
    return Event(**d)


def make_ticket(event_id: str, **kw) -> Ticket:
    d = dict(id=new_id(), event_id=event_id, name="General", price=1500,
             quantity=10, sold_count=0, sale_start=None, sale_end=None,
             is_active=True, hidden=False, require_invite_code=False,
             require_sms_verification=False, created_at=NOW - DAY)
    d.update(kw)
    return Ticket(**d)


def make_code(ticket_id: str, code: str = "INVITE1", **kw) -> InvitationCode:
    d = dict(id=new_id(), ticket_id=ticket_id, code=code, usage_limit=None,
             used_count=0, valid_from=None, valid_until=None, is_active=True,
             created_at=NOW - DAY)
    d.update(kw)
    return InvitationCode(**d)


def make_field(event_id: str, field_id: str, **kw) -> EventFormField:
    d = dict(id=field_id, event_id=event_id, type="text",
             description=field_id, required=False, order=0)
    d.update(kw)
    return EventFormField(**d)


def make_endpoint(event_id: str, url: str = "https://hooks.example.com/in",
                  **kw) -> WebhookEndpoint:
    d = dict(id=new_id(), event_id=event_id, url=url,
             event_types=[EVT_CONFIRMED, EVT_CANCELLED], is_active=True,
             consecutive_failure_periods=0, created_at=NOW - DAY,
             updated_at=NOW - DAY)
    d.update(kw)
    return WebhookEndpoint(**d)


@pytest_asyncio.fixture
async def event_ticket(env):
    """One open event with one ticket of capacity 10."""
    event = make_event()
    ticket = make_ticket(event.id)
    await add_rows(env, event, ticket)
    return SimpleNamespace(event=event, ticket=ticket)


async def fetch_one(env, sql: str, **params):
    async with env.sessions() as db:
        async with db.begin():
            return (await db.execute(text(sql), params)).mappings().first()


async def fetch_all(env, sql: str, **params):
    async with env.sessions() as db:
        async with db.begin():
            return (await db.execute(text(sql), params)).mappings().all()


async def sold_count(env, ticket_id: str) -> int:
    row = await fetch_one(env, "SELECT sold_count FROM tickets WHERE id=:id",
                          id=ticket_id)
    return int(row["sold_count"])


def requester(n: int = 1, phone_verified: bool = False) -> Requester:
    return Requester(id=f"user-{n}", email=f"user{n}@example.com",
                     phone_verified=phone_verified)


def request_for(ev, form_data: Optional[dict] = None, **kw):
    return RegistrationRequest(event_id=ev.event.id, ticket_id=ev.ticket.id,
                               form_data=form_data or {}, **kw)


def signed_session(data: dict, secret: str = config.SESSION_SECRET) -> str:
    """A cookie value Starlette's SessionMiddleware accepts."""
    raw = base64.b64encode(json.dumps(data).encode("utf-8"))
    return TimestampSigner(str(secret)).sign(raw).decode("utf-8")
