# model/inventory.py
"""
Inventory ledger: a ticket's sold-vs-capacity counters.

- advisory capacity read for the preflight (may be stale)
- conditional reserve inside the registration transaction
- release on a confirmed -> cancelled transition
- availability snapshot for the public route

Invariant 0 <= sold_count <= quantity is kept by the WHERE clauses below and
backed by a CHECK constraint on the tickets table.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


class Reserve(Enum):
    OK = "ok"
    SOLD_OUT = "sold_out"


# UN-GATED: callers hold the gate and the transaction
async def has_capacity(db: AsyncSession, ticket_id: str) -> bool:
    """
    Advisory pre-check (sold_count < quantity) outside the registration
    transaction. Only good for failing fast; try_reserve decides.
    """
    row = (await db.execute(text("""
        SELECT quantity, sold_count FROM tickets WHERE id=:id
    """), {"id": ticket_id})).first()
    if row is None:
        return False
    return int(row[1]) < int(row[0])


async def try_reserve(db: AsyncSession, ticket_id: str) -> Reserve:
    """
    Re-check capacity against the latest committed state and take one unit,
    in one statement. Must run inside the coordinator's transaction.
    """
    row = (await db.execute(text("""
        UPDATE tickets
        SET sold_count = sold_count + 1
        WHERE id=:id AND sold_count < quantity
        RETURNING sold_count
    """), {"id": ticket_id})).first()
    return Reserve.SOLD_OUT if row is None else Reserve.OK


async def release(db: AsyncSession, ticket_id: str) -> Optional[int]:
    """
    Give back exactly one unit. The caller flips the registration
    confirmed -> cancelled first (conditionally), so this runs at most once
    per registration. Returns the new sold_count, or None if it was already 0.
    """
    row = (await db.execute(text("""
        UPDATE tickets
        SET sold_count = sold_count - 1
        WHERE id=:id AND sold_count > 0
        RETURNING sold_count
    """), {"id": ticket_id})).first()
    return None if row is None else int(row[0])


async def inventory(db: AsyncSession, ticket_id: str) -> Optional[Dict[str, Any]]:
    """
    Returns:
      {"capacity": ..., "sold": ..., "available": ..., "sold_out": ...}
    or None for an unknown ticket.
    """
    row = (await db.execute(text("""
        SELECT quantity, sold_count FROM tickets WHERE id=:id
    """), {"id": ticket_id})).first()
    if row is None:
        return None
    capacity, sold = int(row[0]), int(row[1])
    return {
        "capacity": capacity,
        "sold": sold,
        "available": capacity - sold,
        "sold_out": sold >= capacity,
    }
