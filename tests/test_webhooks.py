"""
Tests for webhook delivery: retries, circuit breaker, admin operations.
"""
import httpx
import orjson
import pytest
from sqlalchemy import text

from conftest import NOW, add_rows, fetch_one, make_endpoint, make_event
from ticketdesk.notify.webhooks import (
    MAX_RESPONSE_BODY_LENGTH, USER_AGENT, RetryOutcome,
    WebhookDeliveryService, backoff_seconds,
)

NOTIFICATION = {"type": "registration_confirmed",
                "registration": {"id": "r1", "email": "a@example.com"}}


class Hook:
    """Programmable receiving end; records every request."""

    def __init__(self, status=200, body="ok"):
        self.status = status
        self.body = body
        self.error = None
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status, text=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def service(env, clock, hook, **kw):
    kw.setdefault("max_retries", 3)
    kw.setdefault("base_delay", 60.0)
    kw.setdefault("max_delay", 3600.0)
    kw.setdefault("timeout", 5.0)
    kw.setdefault("failure_threshold", 3)
    return WebhookDeliveryService(env.sessions, env.gated, hook.client(),
                                  clock=clock, **kw)


async def setup_endpoint(env, **kw):
    event = make_event()
    endpoint = make_endpoint(event.id, **kw)
    await add_rows(env, event, endpoint)
    return event, endpoint


async def enqueue(env, svc, event_id, now=NOW,
                  event_type="registration_confirmed"):
    async with env.sessions() as db:
        async with db.begin():
            return await svc.enqueue_for_event(db, event_id, event_type,
                                               NOTIFICATION, now)


async def delivery(env, delivery_id):
    return await fetch_one(env, "SELECT * FROM webhook_deliveries "
                                "WHERE id=:id", id=delivery_id)


async def endpoint_row(env, endpoint_id):
    return await fetch_one(env, "SELECT * FROM webhook_endpoints "
                                "WHERE id=:id", id=endpoint_id)


class TestBackoff:
    """Delay after the n-th failure."""

    def test_doubles_and_caps(self):
        assert backoff_seconds(1, 60, 3600) == 60
        assert backoff_seconds(2, 60, 3600) == 120
        assert backoff_seconds(3, 60, 3600) == 240
        assert backoff_seconds(10, 60, 3600) == 3600


class TestEnqueue:
    """One delivery per active, subscribed endpoint."""

    @pytest.mark.asyncio
    async def test_only_subscribed_active_endpoints(self, env, clock):
        hook = Hook()
        svc = service(env, clock, hook)
        event = make_event()
        both = make_endpoint(event.id)
        cancel_only = make_endpoint(event.id,
                                    event_types=["registration_cancelled"])
        off = make_endpoint(event.id, is_active=False)
        await add_rows(env, event, both, cancel_only, off)

        ids = await enqueue(env, svc, event.id)

        assert len(ids) == 1
        row = await delivery(env, ids[0])
        assert row["webhook_id"] == both.id
        assert row["status"] == "pending"
        assert row["retry_count"] == 0
        assert orjson.loads(row["payload"]) == {
            "notifications": [NOTIFICATION]}


class TestAttempt:
    """Automatic attempts follow the retry schedule."""

    @pytest.mark.asyncio
    async def test_request_shape(self, env, clock):
        hook = Hook()
        svc = service(env, clock, hook)
        event, _ = await setup_endpoint(env, auth_header_name="X-Token",
                                        auth_header_value="s3cret")
        [did] = await enqueue(env, svc, event.id)

        assert await svc.attempt(did) == "delivered"

        [req] = hook.requests
        assert req.method == "POST"
        assert str(req.url) == "https://hooks.example.com/in"
        assert req.headers["content-type"] == "application/json"
        assert req.headers["user-agent"] == USER_AGENT
        assert req.headers["x-token"] == "s3cret"
        assert orjson.loads(req.content) == {"notifications": [NOTIFICATION]}

        row = await delivery(env, did)
        assert row["status"] == "delivered"
        assert row["status_code"] == 200
        assert row["delivered_at"] == NOW
        assert row["next_retry_at"] is None

    @pytest.mark.asyncio
    async def test_always_500_gives_four_attempts(self, env, clock):
        """Fresh delivery against a 500 endpoint ends failed after 4 tries."""
        hook = Hook(status=500, body="nope")
        svc = service(env, clock, hook)
        event, endpoint = await setup_endpoint(env)
        [did] = await enqueue(env, svc, event.id)

        assert await svc.attempt(did) == "retrying"
        row = await delivery(env, did)
        assert row["retry_count"] == 1
        assert row["next_retry_at"] == NOW + 60
        assert row["error_message"] == "HTTP 500: Internal Server Error"

        # not due yet
        assert await svc.process_due() == 0

        for delay, expect_rc in ((60, 2), (120, 3)):
            clock.advance(delay)
            assert await svc.process_due() == 1
            row = await delivery(env, did)
            assert row["status"] == "retrying"
            assert row["retry_count"] == expect_rc
            assert row["next_retry_at"] == clock() + 2 * delay

        clock.advance(240)
        assert await svc.process_due() == 1
        row = await delivery(env, did)
        assert row["status"] == "failed"
        assert row["retry_count"] == 3
        assert row["next_retry_at"] is None
        assert len(hook.requests) == 4

        ep = await endpoint_row(env, endpoint.id)
        assert ep["consecutive_failure_periods"] == 1
        assert ep["is_active"]

        clock.advance(10_000)
        assert await svc.process_due() == 0
        assert len(hook.requests) == 4

    @pytest.mark.asyncio
    async def test_timeout_and_transport_errors(self, env, clock):
        hook = Hook()
        svc = service(env, clock, hook)
        event, _ = await setup_endpoint(env)
        [first] = await enqueue(env, svc, event.id)
        [second] = await enqueue(env, svc, event.id)

        hook.error = httpx.ReadTimeout("slow")
        assert await svc.attempt(first) == "retrying"
        assert (await delivery(env, first))["error_message"] \
            == "Request timeout"

        hook.error = httpx.ConnectError("refused")
        assert await svc.attempt(second) == "retrying"
        row = await delivery(env, second)
        assert row["error_message"] == "ConnectError: refused"
        assert row["status_code"] is None

    @pytest.mark.asyncio
    async def test_response_body_truncated(self, env, clock):
        hook = Hook(status=502, body="x" * 5000)
        svc = service(env, clock, hook)
        event, _ = await setup_endpoint(env)
        [did] = await enqueue(env, svc, event.id)

        await svc.attempt(did)
        row = await delivery(env, did)
        assert len(row["response_body"]) == MAX_RESPONSE_BODY_LENGTH

    @pytest.mark.asyncio
    async def test_claimed_delivery_is_not_attempted_twice(self, env, clock):
        hook = Hook(status=500)
        svc = service(env, clock, hook)
        event, _ = await setup_endpoint(env)
        [did] = await enqueue(env, svc, event.id)

        await svc.attempt(did)
        # retrying and not due: no second send
        assert await svc.attempt(did) is None
        assert len(hook.requests) == 1


class TestCircuitBreaker:
    """Consecutive terminal failures switch the endpoint off."""

    @pytest.mark.asyncio
    async def test_trips_at_threshold(self, env, clock):
        hook = Hook(status=500)
        svc = service(env, clock, hook, max_retries=0)
        event, endpoint = await setup_endpoint(env)

        for n in range(1, 4):
            [did] = await enqueue(env, svc, event.id)
            assert await svc.attempt(did) == "failed"
            ep = await endpoint_row(env, endpoint.id)
            assert ep["consecutive_failure_periods"] == n
            assert bool(ep["is_active"]) is (n < 3)

        # disabled endpoints get no new deliveries and no attempts
        assert await enqueue(env, svc, event.id) == []
        assert len(hook.requests) == 3

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, env, clock):
        hook = Hook(status=500)
        svc = service(env, clock, hook, max_retries=0)
        event, endpoint = await setup_endpoint(env)

        for _ in range(2):
            [did] = await enqueue(env, svc, event.id)
            await svc.attempt(did)
        hook.status = 204
        [did] = await enqueue(env, svc, event.id)
        assert await svc.attempt(did) == "delivered"

        ep = await endpoint_row(env, endpoint.id)
        assert ep["consecutive_failure_periods"] == 0
        assert ep["last_failure_at"] is None
        assert ep["is_active"]

    @pytest.mark.asyncio
    async def test_delivery_settled_during_attempt_is_not_counted(self, env,
                                                                 clock):
        """Delivered by someone else mid-attempt: no failure period."""
        event, endpoint = await setup_endpoint(env)

        async def delivered_elsewhere(request):
            async with env.sessions() as db:
                async with db.begin():
                    await db.execute(text(
                        "UPDATE webhook_deliveries SET status='delivered'"))
            return httpx.Response(500)

        http = httpx.AsyncClient(
            transport=httpx.MockTransport(delivered_elsewhere))
        svc = WebhookDeliveryService(env.sessions, env.gated, http,
                                     clock=clock, max_retries=0,
                                     failure_threshold=1)
        [did] = await enqueue(env, svc, event.id)

        assert await svc.attempt(did) is None

        assert (await delivery(env, did))["status"] == "delivered"
        ep = await endpoint_row(env, endpoint.id)
        assert ep["consecutive_failure_periods"] == 0
        assert ep["last_failure_at"] is None
        assert ep["is_active"]

    @pytest.mark.asyncio
    async def test_pending_delivery_waits_while_disabled(self, env, clock):
        hook = Hook(status=500)
        svc = service(env, clock, hook, max_retries=0, failure_threshold=1)
        event, endpoint = await setup_endpoint(env)
        [first] = await enqueue(env, svc, event.id)
        [second] = await enqueue(env, svc, event.id)

        assert await svc.attempt(first) == "failed"
        assert await svc.process_due() == 0
        assert (await delivery(env, second))["status"] == "pending"

        hook.status = 200
        assert await svc.reenable_endpoint(endpoint.id)
        assert await svc.process_due() == 1
        assert (await delivery(env, second))["status"] == "delivered"
        assert not await svc.reenable_endpoint("missing")


class TestManualRetry:
    """Operator-forced retries of failed deliveries."""

    @pytest.mark.asyncio
    async def test_failed_then_delivered(self, env, clock):
        """A failed delivery retried against a healthy endpoint."""
        hook = Hook(status=500)
        svc = service(env, clock, hook, max_retries=0)
        event, endpoint = await setup_endpoint(env)
        [did] = await enqueue(env, svc, event.id)
        assert await svc.attempt(did) == "failed"

        hook.status = 200
        outcome, view = await svc.retry_delivery(did)

        assert outcome is RetryOutcome.DELIVERED
        assert view["status"] == "delivered"
        assert view["statusCode"] == 200
        listing = await svc.list_failed_deliveries(event.id)
        assert listing["pagination"]["total"] == 0
        ep = await endpoint_row(env, endpoint.id)
        assert ep["consecutive_failure_periods"] == 0

    @pytest.mark.asyncio
    async def test_failed_manual_attempt_keeps_state(self, env, clock):
        hook = Hook(status=500)
        svc = service(env, clock, hook, max_retries=0)
        event, endpoint = await setup_endpoint(env)
        [did] = await enqueue(env, svc, event.id)
        await svc.attempt(did)

        hook.status = 503
        outcome, view = await svc.retry_delivery(did)

        assert outcome is RetryOutcome.FAILED
        assert view["status"] == "failed"
        assert view["statusCode"] == 503
        assert view["retryCount"] == 0
        ep = await endpoint_row(env, endpoint.id)
        assert ep["consecutive_failure_periods"] == 1

    @pytest.mark.asyncio
    async def test_ineligible_and_missing(self, env, clock):
        hook = Hook()
        svc = service(env, clock, hook)
        event, _ = await setup_endpoint(env)
        [pending] = await enqueue(env, svc, event.id)

        outcome, view = await svc.retry_delivery(pending)
        assert outcome is RetryOutcome.INELIGIBLE
        assert view["status"] == "pending"

        await svc.attempt(pending)
        outcome, _ = await svc.retry_delivery(pending)
        assert outcome is RetryOutcome.INELIGIBLE

        outcome, view = await svc.retry_delivery("missing")
        assert outcome is RetryOutcome.NOT_FOUND
        assert view is None
        assert len(hook.requests) == 1

    @pytest.mark.asyncio
    async def test_disabled_endpoint(self, env, clock):
        hook = Hook(status=500)
        svc = service(env, clock, hook, max_retries=0, failure_threshold=1)
        event, _ = await setup_endpoint(env)
        [did] = await enqueue(env, svc, event.id)
        await svc.attempt(did)

        outcome, _ = await svc.retry_delivery(did)
        assert outcome is RetryOutcome.ENDPOINT_DISABLED
        assert len(hook.requests) == 1


class TestFailedListing:
    """Failed deliveries across an event's endpoints, newest first."""

    @pytest.mark.asyncio
    async def test_pagination(self, env, clock):
        hook = Hook(status=500)
        svc = service(env, clock, hook, max_retries=0, failure_threshold=99)
        event = make_event()
        a = make_endpoint(event.id, url="https://a.example.com/hook")
        b = make_endpoint(event.id, url="https://b.example.com/hook")
        other_event = make_event()
        c = make_endpoint(other_event.id)
        await add_rows(env, event, a, b, other_event, c)

        created = []
        for i in range(3):
            ids = await enqueue(env, svc, event.id, now=clock())
            for did in ids:
                await svc.attempt(did)
            created.append(ids)
            clock.advance(10)
        for did in await enqueue(env, svc, other_event.id, now=clock()):
            await svc.attempt(did)

        page1 = await svc.list_failed_deliveries(event.id, page=1, limit=4)
        page2 = await svc.list_failed_deliveries(event.id, page=2, limit=4)

        assert page1["pagination"] == {"page": 1, "limit": 4, "total": 6,
                                       "totalPages": 2}
        assert len(page1["deliveries"]) == 4
        assert len(page2["deliveries"]) == 2
        newest = set(created[2])
        assert {d["id"] for d in page1["deliveries"][:2]} == newest
        assert all(d["status"] == "failed"
                   for d in page1["deliveries"] + page2["deliveries"])

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, env, clock):
        svc = service(env, clock, Hook())
        event, _ = await setup_endpoint(env)
        res = await svc.list_failed_deliveries(event.id, page=0, limit=1000)
        assert res["pagination"] == {"page": 1, "limit": 100, "total": 0,
                                     "totalPages": 0}
