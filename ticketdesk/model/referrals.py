# model/referrals.py
"""
Referral attribution recorder.

A referral is the shareable code of one confirmed registration. attribute()
writes one ReferralUsage row for a new registration inside the coordinator's
transaction; nothing in storage stops a second row for the same registration,
so the coordinator calls it exactly once.
"""

from __future__ import annotations
import logging
import random
import string
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import mask_email, new_id, to_iso
from .db import REG_CONFIRMED, Referral, ReferralUsage

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 20


async def validate(
    db: AsyncSession, code: str, event_id: str
) -> Optional[str]:
    """Returns the referral id when the code may be used for event_id."""
    row = (await db.execute(text("""
        SELECT r.id
        FROM referrals r
        JOIN registrations g ON g.id = r.registration_id
        WHERE r.code=:code
          AND r.event_id=:eid
          AND r.is_active
          AND g.status=:confirmed
    """), {
        "code": code, "eid": event_id, "confirmed": REG_CONFIRMED,
    })).first()
    return None if row is None else row[0]


def attribute(
    db: AsyncSession,
    referral_id: str,
    new_registration_id: str,
    event_id: str,
    now: float,
) -> ReferralUsage:
    usage = ReferralUsage(
        id=new_id(),
        referral_id=referral_id,
        registration_id=new_registration_id,
        event_id=event_id,
        used_at=now,
    )
    db.add(usage)
    return usage


def _random_code() -> str:
    return "".join(random.choices(CODE_ALPHABET, k=CODE_LENGTH))


async def get_or_create_referral(
    db: AsyncSession, registration_id: str, now: float
) -> Optional[Referral]:
    """
    The active referral of a confirmed registration, issuing one on first
    use. None if the registration is missing or not confirmed.
    Runs inside the caller's transaction.
    """
    reg = (await db.execute(text("""
        SELECT id, event_id, status FROM registrations WHERE id=:id
    """), {"id": registration_id})).mappings().first()
    if reg is None or reg["status"] != REG_CONFIRMED:
        return None

    existing = (await db.execute(text("""
        SELECT id FROM referrals
        WHERE registration_id=:id AND is_active
        ORDER BY created_at
        LIMIT 1
    """), {"id": registration_id})).first()
    if existing is not None:
        return await db.get(Referral, existing[0])

    for _ in range(MAX_CODE_ATTEMPTS):
        code = _random_code()
        taken = (await db.execute(text(
            "SELECT 1 FROM referrals WHERE code=:code"
        ), {"code": code})).first()
        if taken is None:
            break
    else:
        raise RuntimeError(
            f"no free referral code after {MAX_CODE_ATTEMPTS} attempts"
        )

    referral = Referral(
        id=new_id(),
        code=code,
        registration_id=registration_id,
        event_id=reg["event_id"],
        is_active=True,
        created_at=now,
    )
    db.add(referral)
    logger.info("referral %s issued for registration %s", code,
                registration_id)
    return referral


async def referral_stats(
    db: AsyncSession, registration_id: str
) -> Optional[Dict[str, Any]]:
    """
    Usage of the registration's referral, newest first. `total` counts every
    attributed registration, `successful` only the ones still confirmed.
    """
    referral = (await db.execute(text("""
        SELECT r.id, r.code, g.email
        FROM referrals r
        JOIN registrations g ON g.id = r.registration_id
        WHERE r.registration_id=:id AND r.is_active AND g.status=:confirmed
        ORDER BY r.created_at
        LIMIT 1
    """), {"id": registration_id, "confirmed": REG_CONFIRMED})).mappings().first()
    if referral is None:
        return None

    rows = (await db.execute(text("""
        SELECT u.used_at, g.id, g.status, g.email, t.name AS ticket_name
        FROM referral_usages u
        JOIN registrations g ON g.id = u.registration_id
        JOIN tickets t ON t.id = g.ticket_id
        WHERE u.referral_id=:rid
        ORDER BY u.used_at DESC
    """), {"rid": referral["id"]})).mappings().all()

    return {
        "code": referral["code"],
        "total": len(rows),
        "successful": sum(1 for r in rows if r["status"] == REG_CONFIRMED),
        "referrals": [
            {
                "id": r["id"],
                "status": r["status"],
                "ticket_name": r["ticket_name"],
                "registered_at": to_iso(r["used_at"]),
                "email": mask_email(r["email"]),
            }
            for r in rows
        ],
        "referrer": {"id": registration_id,
                     "email": mask_email(referral["email"])},
    }
