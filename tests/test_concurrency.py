"""
Concurrent registrations and cancellations against one ticket or code.

The coroutines share one event loop but each runs its transactions on its own
pooled connection, so the database decides the ordering.
"""
import asyncio

import pytest

from conftest import (
    add_rows, fetch_one, make_code, make_event, make_ticket, requester,
    sold_count,
)
from ticketdesk.coordinator import RegistrationRequest
from ticketdesk.errors import RegistrationError, RegistrationFailed

E = RegistrationError


async def register_all(coordinator, req, n):
    """Fire n registrations at once, one distinct user each."""
    results = await asyncio.gather(
        *(coordinator.register(requester(i), req) for i in range(n)),
        return_exceptions=True,
    )
    ok = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if isinstance(r, RegistrationFailed)]
    assert len(ok) + len(failed) == n, results
    return ok, failed


class TestOversell:
    """sold_count never exceeds quantity."""

    @pytest.mark.asyncio
    async def test_last_seat_two_buyers(self, env, coordinator):
        """One seat, two buyers: one confirmed, one sold out."""
        event = make_event()
        ticket = make_ticket(event.id, quantity=1)
        await add_rows(env, event, ticket)
        req = RegistrationRequest(event_id=event.id, ticket_id=ticket.id)

        ok, failed = await register_all(coordinator, req, 2)

        assert len(ok) == 1
        assert [f.error for f in failed] == [E.TICKET_SOLD_OUT]
        assert await sold_count(env, ticket.id) == 1

    @pytest.mark.asyncio
    async def test_many_buyers_exact_capacity(self, env, coordinator):
        event = make_event()
        ticket = make_ticket(event.id, quantity=5)
        await add_rows(env, event, ticket)
        req = RegistrationRequest(event_id=event.id, ticket_id=ticket.id)

        ok, failed = await register_all(coordinator, req, 12)

        assert len(ok) == 5
        assert {f.error for f in failed} == {E.TICKET_SOLD_OUT}
        assert await sold_count(env, ticket.id) == 5
        row = await fetch_one(env, "SELECT COUNT(*) AS n FROM registrations "
                                   "WHERE status='confirmed'")
        assert row["n"] == 5


class TestInvitationRace:
    """used_count never exceeds usage_limit."""

    @pytest.mark.asyncio
    async def test_last_use_two_holders(self, env, coordinator):
        """Code with one use left, two holders: one wins."""
        event = make_event()
        ticket = make_ticket(event.id, quantity=10,
                             require_invite_code=True)
        code = make_code(ticket.id, "LAST", usage_limit=1)
        await add_rows(env, event, ticket, code)
        req = RegistrationRequest(event_id=event.id, ticket_id=ticket.id,
                                  invitation_code="LAST")

        ok, failed = await register_all(coordinator, req, 2)

        assert len(ok) == 1
        assert [f.error for f in failed] == [E.INVITATION_CODE_EXHAUSTED]
        assert await sold_count(env, ticket.id) == 1
        row = await fetch_one(env, "SELECT used_count FROM invitation_codes "
                                   "WHERE id=:id", id=code.id)
        assert row["used_count"] == 1

    @pytest.mark.asyncio
    async def test_limit_reached_exactly(self, env, coordinator):
        event = make_event()
        ticket = make_ticket(event.id, quantity=50,
                             require_invite_code=True)
        code = make_code(ticket.id, "THREE", usage_limit=3)
        await add_rows(env, event, ticket, code)
        req = RegistrationRequest(event_id=event.id, ticket_id=ticket.id,
                                  invitation_code="THREE")

        ok, failed = await register_all(coordinator, req, 8)

        assert len(ok) == 3
        assert {f.error for f in failed} == {E.INVITATION_CODE_EXHAUSTED}
        assert await sold_count(env, ticket.id) == 3
        row = await fetch_one(env, "SELECT used_count FROM invitation_codes "
                                   "WHERE id=:id", id=code.id)
        assert row["used_count"] == 3


class TestConcurrentCancel:
    """Cancels racing each other or new buyers keep sold_count exact."""

    @pytest.mark.asyncio
    async def test_double_cancel(self, env, coordinator):
        event = make_event()
        ticket = make_ticket(event.id, quantity=3)
        await add_rows(env, event, ticket)
        req = RegistrationRequest(event_id=event.id, ticket_id=ticket.id)
        reg = await coordinator.register(requester(1), req)

        results = await asyncio.gather(
            coordinator.cancel(requester(1), reg["id"]),
            coordinator.cancel(requester(1), reg["id"]),
            return_exceptions=True,
        )

        ok = [r for r in results if isinstance(r, dict)]
        failed = [r for r in results if isinstance(r, RegistrationFailed)]
        assert len(ok) == 1
        assert [f.error for f in failed] == [E.ALREADY_CANCELLED]
        assert await sold_count(env, ticket.id) == 0

    @pytest.mark.asyncio
    async def test_cancels_and_registrations_interleaved(self, env,
                                                         coordinator):
        """Seats freed by concurrent cancels go to concurrent buyers."""
        event = make_event()
        ticket = make_ticket(event.id, quantity=3)
        await add_rows(env, event, ticket)
        req = RegistrationRequest(event_id=event.id, ticket_id=ticket.id)
        holders = [await coordinator.register(requester(i), req)
                   for i in range(3)]

        results = await asyncio.gather(
            *(coordinator.cancel(requester(i), reg["id"])
              for i, reg in enumerate(holders)),
            *(coordinator.register(requester(i), req) for i in range(3, 9)),
            return_exceptions=True,
        )
        cancels, buys = results[:3], results[3:]

        assert all(isinstance(r, dict) and r["status"] == "cancelled"
                   for r in cancels), cancels
        ok = [r for r in buys if isinstance(r, dict)]
        failed = [r for r in buys if isinstance(r, RegistrationFailed)]
        assert len(ok) + len(failed) == 6, buys
        assert {f.error for f in failed} <= {E.TICKET_SOLD_OUT}

        sold = await sold_count(env, ticket.id)
        assert 0 <= sold <= 3
        assert sold == len(ok)
        row = await fetch_one(env, "SELECT COUNT(*) AS n FROM registrations "
                                   "WHERE ticket_id=:id AND "
                                   "status='confirmed'", id=ticket.id)
        assert row["n"] == sold
