# model/invitations.py
"""
Invitation code gate.

validate() walks the code's state in a fixed order and reports the first
reason it can't be used. consume() is the transactional second check: it
re-validates active/usage-limit against committed state and bumps used_count
in one statement, inside the registration transaction.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


class CodeState(Enum):
    VALID = "valid"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    WRONG_TICKET = "wrong_ticket"
    USAGE_EXHAUSTED = "usage_exhausted"


@dataclass(frozen=True)
class CodeCheck:
    state: CodeState
    code_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is CodeState.VALID


def evaluate(row, ticket_id: str, now: float) -> CodeState:
    """First match wins; `row` is an invitation_codes mapping or None."""
    if row is None:
        return CodeState.NOT_FOUND
    if not row["is_active"]:
        return CodeState.INACTIVE
    if row["valid_from"] is not None and now < row["valid_from"]:
        return CodeState.NOT_YET_VALID
    if row["valid_until"] is not None and now > row["valid_until"]:
        return CodeState.EXPIRED
    if row["ticket_id"] != ticket_id:
        return CodeState.WRONG_TICKET
    limit = row["usage_limit"]
    if limit is not None and row["used_count"] >= limit:
        return CodeState.USAGE_EXHAUSTED
    return CodeState.VALID


async def validate(
    db: AsyncSession, code: str, ticket_id: str, now: float
) -> CodeCheck:
    # the same code string may be issued for several tickets; prefer the one
    # bound to this ticket so WRONG_TICKET only shows when there is none
    row = (await db.execute(text("""
        SELECT id, ticket_id, usage_limit, used_count, valid_from,
               valid_until, is_active
        FROM invitation_codes
        WHERE code=:code
        ORDER BY CASE WHEN ticket_id=:tid THEN 0 ELSE 1 END, created_at
        LIMIT 1
    """), {"code": code, "tid": ticket_id})).mappings().first()
    state = evaluate(row, ticket_id, now)
    return CodeCheck(state=state, code_id=row["id"] if row else None)


async def consume(db: AsyncSession, code_id: str) -> CodeState:
    """
    Take one use of the code. Returns VALID when used_count was incremented,
    otherwise INACTIVE / USAGE_EXHAUSTED / NOT_FOUND as seen inside the
    transaction; nothing is written in that case.
    """
    row = (await db.execute(text("""
        UPDATE invitation_codes
        SET used_count = used_count + 1
        WHERE id=:id
          AND is_active
          AND (usage_limit IS NULL OR used_count < usage_limit)
        RETURNING used_count
    """), {"id": code_id})).first()
    if row is not None:
        return CodeState.VALID

    cur = (await db.execute(text("""
        SELECT is_active, usage_limit, used_count
        FROM invitation_codes WHERE id=:id
    """), {"id": code_id})).mappings().first()
    if cur is None:
        return CodeState.NOT_FOUND
    if not cur["is_active"]:
        return CodeState.INACTIVE
    return CodeState.USAGE_EXHAUSTED
