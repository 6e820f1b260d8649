"""
Tests for the inventory ledger, the invitation code gate and referrals.
"""
import pytest

from conftest import (
    DAY, NOW, add_rows, make_code, make_event, make_ticket, fetch_one,
)
from ticketdesk.helpers import new_id
from ticketdesk.model import inventory, invitations, referrals
from ticketdesk.model.db import REG_CANCELLED, REG_CONFIRMED, Registration
from ticketdesk.model.invitations import CodeState
from ticketdesk.model.inventory import Reserve


def registration(event_id, ticket_id, email, status=REG_CONFIRMED,
                 created_at=NOW, **kw):
    return Registration(id=kw.pop("id", new_id()), user_id=email,
                        event_id=event_id, ticket_id=ticket_id, email=email,
                        form_data=kw.pop("form_data", {}), status=status,
                        created_at=created_at, updated_at=created_at, **kw)


class TestInventory:
    """Conditional reserve / release against the ticket row."""

    @pytest.mark.asyncio
    async def test_reserve_until_sold_out(self, env):
        event = make_event()
        ticket = make_ticket(event.id, quantity=2)
        await add_rows(env, event, ticket)

        async with env.sessions() as db:
            async with db.begin():
                assert await inventory.try_reserve(db, ticket.id) is Reserve.OK
                assert await inventory.try_reserve(db, ticket.id) is Reserve.OK
                assert await inventory.try_reserve(db, ticket.id) \
                    is Reserve.SOLD_OUT
                assert not await inventory.has_capacity(db, ticket.id)
                snap = await inventory.inventory(db, ticket.id)
        assert snap == {"capacity": 2, "sold": 2, "available": 0,
                        "sold_out": True}

    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self, env):
        event = make_event()
        ticket = make_ticket(event.id, quantity=2, sold_count=1)
        await add_rows(env, event, ticket)

        async with env.sessions() as db:
            async with db.begin():
                assert await inventory.release(db, ticket.id) == 0
                assert await inventory.release(db, ticket.id) is None

    @pytest.mark.asyncio
    async def test_unknown_ticket(self, env):
        async with env.sessions() as db:
            async with db.begin():
                assert await inventory.inventory(db, "nope") is None
                assert not await inventory.has_capacity(db, "nope")
                assert await inventory.try_reserve(db, "nope") \
                    is Reserve.SOLD_OUT


class TestInvitationValidate:
    """validate() reports the first failing check in a fixed order."""

    @pytest.mark.asyncio
    async def test_states(self, env):
        event = make_event()
        ticket = make_ticket(event.id)
        other = make_ticket(event.id, name="Other")
        await add_rows(
            env, event, ticket, other,
            make_code(ticket.id, "OK"),
            make_code(ticket.id, "OFF", is_active=False),
            make_code(ticket.id, "SOON", valid_from=NOW + DAY),
            make_code(ticket.id, "OLD", valid_until=NOW - DAY),
            make_code(other.id, "ELSEWHERE"),
            make_code(ticket.id, "FULL", usage_limit=2, used_count=2),
            # inactive beats usage exhausted
            make_code(ticket.id, "OFFFULL", is_active=False, usage_limit=1,
                      used_count=1),
        )

        expected = {
            "OK": CodeState.VALID,
            "MISSING": CodeState.NOT_FOUND,
            "OFF": CodeState.INACTIVE,
            "SOON": CodeState.NOT_YET_VALID,
            "OLD": CodeState.EXPIRED,
            "ELSEWHERE": CodeState.WRONG_TICKET,
            "FULL": CodeState.USAGE_EXHAUSTED,
            "OFFFULL": CodeState.INACTIVE,
        }
        async with env.sessions() as db:
            async with db.begin():
                for code, state in expected.items():
                    check = await invitations.validate(db, code, ticket.id,
                                                       NOW)
                    assert check.state is state, code
                    assert check.ok is (state is CodeState.VALID)

    @pytest.mark.asyncio
    async def test_same_code_on_two_tickets_prefers_own(self, env):
        event = make_event()
        ticket = make_ticket(event.id)
        other = make_ticket(event.id, name="Other")
        await add_rows(env, event, ticket, other,
                       make_code(other.id, "SHARED", created_at=NOW - 2 * DAY),
                       make_code(ticket.id, "SHARED"))

        async with env.sessions() as db:
            async with db.begin():
                check = await invitations.validate(db, "SHARED", ticket.id,
                                                   NOW)
        assert check.ok


class TestInvitationConsume:
    """consume() is the transactional re-check."""

    @pytest.mark.asyncio
    async def test_consume_up_to_limit(self, env):
        event = make_event()
        ticket = make_ticket(event.id)
        code = make_code(ticket.id, "TWO", usage_limit=2)
        await add_rows(env, event, ticket, code)

        async with env.sessions() as db:
            async with db.begin():
                assert await invitations.consume(db, code.id) \
                    is CodeState.VALID
                assert await invitations.consume(db, code.id) \
                    is CodeState.VALID
                assert await invitations.consume(db, code.id) \
                    is CodeState.USAGE_EXHAUSTED
                assert await invitations.consume(db, "missing") \
                    is CodeState.NOT_FOUND

        row = await fetch_one(env, "SELECT used_count FROM invitation_codes "
                                   "WHERE id=:id", id=code.id)
        assert row["used_count"] == 2

    @pytest.mark.asyncio
    async def test_consume_inactive(self, env):
        event = make_event()
        ticket = make_ticket(event.id)
        code = make_code(ticket.id, "OFF", is_active=False)
        await add_rows(env, event, ticket, code)

        async with env.sessions() as db:
            async with db.begin():
                assert await invitations.consume(db, code.id) \
                    is CodeState.INACTIVE


class TestReferrals:
    """Referral codes belong to confirmed registrations."""

    @pytest.mark.asyncio
    async def test_issue_validate_and_stats(self, env):
        event = make_event()
        ticket = make_ticket(event.id)
        owner = registration(event.id, ticket.id, "owner@example.com")
        friend = registration(event.id, ticket.id, "friend@example.com",
                              created_at=NOW + 10)
        gone = registration(event.id, ticket.id, "gone@example.com",
                            status=REG_CANCELLED, created_at=NOW + 20)
        await add_rows(env, event, ticket, owner, friend, gone)

        async with env.sessions() as db:
            async with db.begin():
                ref = await referrals.get_or_create_referral(db, owner.id,
                                                             NOW)
                await db.flush()
                again = await referrals.get_or_create_referral(db, owner.id,
                                                               NOW + 1)
                assert again.id == ref.id
                assert len(ref.code) == 6

                assert await referrals.validate(db, ref.code, event.id) \
                    == ref.id
                assert await referrals.validate(db, ref.code, "other") \
                    is None
                assert await referrals.validate(db, "NOPE00", event.id) \
                    is None

                referrals.attribute(db, ref.id, friend.id, event.id, NOW + 10)
                referrals.attribute(db, ref.id, gone.id, event.id, NOW + 20)
                await db.flush()
                stats = await referrals.referral_stats(db, owner.id)

        assert stats["code"] == ref.code
        assert stats["total"] == 2
        assert stats["successful"] == 1
        # newest first, emails masked
        assert [r["id"] for r in stats["referrals"]] == [gone.id, friend.id]
        assert stats["referrals"][1]["email"] == "fr****@example.com"
        assert stats["referrer"] == {"id": owner.id,
                                     "email": "ow***@example.com"}

    @pytest.mark.asyncio
    async def test_cancelled_registration_cannot_refer(self, env):
        event = make_event()
        ticket = make_ticket(event.id)
        reg = registration(event.id, ticket.id, "x@example.com",
                           status=REG_CANCELLED)
        await add_rows(env, event, ticket, reg)

        async with env.sessions() as db:
            async with db.begin():
                assert await referrals.get_or_create_referral(
                    db, reg.id, NOW) is None
                assert await referrals.referral_stats(db, reg.id) is None
