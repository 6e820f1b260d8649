"""Create the schema and seed a demo event.

    DATABASE_URL=sqlite:///./ticketdesk.db python init_db.py

Prints the ids to feed into the load client.
"""

import asyncio
import os

from ticketdesk import config
from ticketdesk.helpers import new_id, now_ts
from ticketdesk.infra.sql import make_async_engine
from ticketdesk.model.db import (
    Event, EventFormField, InvitationCode, Ticket, create_schema,
)

DEMO_CAPACITY = int(os.getenv("DEMO_CAPACITY", "100"))
DEMO_CODE_LIMIT = int(os.getenv("DEMO_CODE_LIMIT", "10"))


async def seed(database_url: str) -> dict:
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    async with engine.begin() as conn:
        await create_schema(conn)

    now = now_ts()
    event_id, open_id, invite_id = new_id(), new_id(), new_id()
    async with SessionAsync() as db:
        async with db.begin():
            db.add(Event(
                id=event_id, name="ticketdesk demo conf",
                slug=f"demo-{event_id[:6]}", location="Online",
                is_active=True, start_date=now + 30 * 86400,
                end_date=now + 31 * 86400, created_at=now,
            ))
            await db.flush()
            db.add_all([
                Ticket(id=open_id, event_id=event_id, name="General",
                       price=0, quantity=DEMO_CAPACITY, sold_count=0,
                       created_at=now),
                Ticket(id=invite_id, event_id=event_id, name="Speaker",
                       price=0, quantity=DEMO_CAPACITY, sold_count=0,
                       require_invite_code=True, created_at=now),
            ])
            await db.flush()
            db.add_all([
                InvitationCode(id=new_id(), ticket_id=invite_id,
                               code="SPEAKER", usage_limit=DEMO_CODE_LIMIT,
                               used_count=0, created_at=now),
                EventFormField(id=new_id(), event_id=event_id, type="text",
                               description="Company", required=False,
                               order=0),
            ])
    await engine.dispose()
    return {"event": event_id, "ticket": open_id, "invite_ticket": invite_id,
            "invitation_code": "SPEAKER"}


if __name__ == '__main__':
    ids = asyncio.run(seed(config.DATABASE_URL))
    for k, v in ids.items():
        print(f"{k:<16} {v}")
    print('✅ demo event created')
