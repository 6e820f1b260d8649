# model/outbox.py
"""
Transactional outbox for post-commit side effects.

Rows are added inside the registration/cancellation transaction, so a
notification exists iff the state change committed. The dispatcher claims
rows with a conditional update and settles them as done or failed.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id
from .db import (
    NotificationOutbox, OBX_DONE, OBX_FAILED, OBX_PENDING, OBX_PROCESSING,
)

# a 'processing' claim older than this is considered abandoned
CLAIM_TIMEOUT_SECONDS = 300.0
# claims of one row before it is given up as failed
MAX_ATTEMPTS = 5


def enqueue(
    db: AsyncSession,
    *,
    kind: str,
    event_type: str,
    event_id: str,
    registration_id: str,
    payload: Dict[str, Any],
    now: float,
) -> NotificationOutbox:
    row = NotificationOutbox(
        id=new_id(),
        kind=kind,
        event_type=event_type,
        event_id=event_id,
        registration_id=registration_id,
        payload=payload,
        status=OBX_PENDING,
        attempts=0,
        created_at=now,
    )
    db.add(row)
    return row


async def claim_pending(
    db: AsyncSession, now: float, limit: int = 50,
    claim_timeout: float = CLAIM_TIMEOUT_SECONDS,
) -> List[NotificationOutbox]:
    """
    Claim up to `limit` rows, oldest first. A row is claimed only if the
    conditional UPDATE still sees it unclaimed (or its claim expired), so two
    dispatchers never both win the same row.
    """
    stale_before = now - claim_timeout
    ids = (await db.execute(text("""
        SELECT id FROM notification_outbox
        WHERE status=:pending
           OR (status=:processing AND claimed_at < :stale)
        ORDER BY created_at
        LIMIT :limit
    """), {
        "pending": OBX_PENDING, "processing": OBX_PROCESSING,
        "stale": stale_before, "limit": limit,
    })).scalars().all()

    claimed: List[NotificationOutbox] = []
    for oid in ids:
        won = (await db.execute(text("""
            UPDATE notification_outbox
            SET status=:processing, claimed_at=:now, attempts=attempts+1
            WHERE id=:id
              AND (status=:pending
                   OR (status=:processing AND claimed_at < :stale))
            RETURNING id
        """), {
            "id": oid, "now": now, "stale": stale_before,
            "pending": OBX_PENDING, "processing": OBX_PROCESSING,
        })).first()
        if won is not None:
            claimed.append(await db.get(NotificationOutbox, oid,
                                        populate_existing=True))
    return claimed


async def mark_done(db: AsyncSession, outbox_id: str, now: float) -> None:
    await db.execute(text("""
        UPDATE notification_outbox
        SET status=:done, processed_at=:now, last_error=NULL
        WHERE id=:id
    """), {"id": outbox_id, "now": now, "done": OBX_DONE})


async def mark_failed(
    db: AsyncSession, outbox_id: str, now: float, error: Optional[str]
) -> None:
    await db.execute(text("""
        UPDATE notification_outbox
        SET status=:failed, processed_at=:now, last_error=:err
        WHERE id=:id
    """), {"id": outbox_id, "now": now, "failed": OBX_FAILED,
           "err": (error or "")[:1000]})


async def defer(
    db: AsyncSession, outbox_id: str, error: Optional[str]
) -> None:
    """Keep the claim; the row is reclaimed once the claim goes stale."""
    await db.execute(text("""
        UPDATE notification_outbox
        SET last_error=:err
        WHERE id=:id AND status=:processing
    """), {"id": outbox_id, "processing": OBX_PROCESSING,
           "err": (error or "")[:1000]})


async def pending_count(db: AsyncSession) -> int:
    return int((await db.execute(text("""
        SELECT COUNT(*) FROM notification_outbox
        WHERE status IN (:pending, :processing)
    """), {"pending": OBX_PENDING, "processing": OBX_PROCESSING})).scalar_one())
