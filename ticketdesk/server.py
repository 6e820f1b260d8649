from __future__ import annotations
import asyncio
import logging
from typing import Optional

import httpx
from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request,
)
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from . import config
from .coordinator import (
    RegistrationCoordinator, RegistrationRequest, Requester,
    registration_view,
)
from .errors import RegistrationFailed
from .helpers import is_valid_email, now_ts, to_iso
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .infra.timings import install_shutdown_flush, snapshot, timeit
from .model import inventory, invitations, referrals
from .model.db import Event, Registration, create_schema
from .notify.campaigns import CampaignService
from .notify.dispatcher import NotificationDispatcher
from .notify.mailer import Mailer, new_mailer
from .notify.webhooks import RetryOutcome, WebhookDeliveryService

logger = logging.getLogger(__name__)

router = APIRouter()
admin = APIRouter(prefix="/api/admin")


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.sessions() as session:
        yield session


def gated(request: Request):
    return request.app.state.gated()


def current_user(request: Request) -> Requester:
    """Identity comes from the session set by the auth service."""
    user = request.session.get("user") or {}
    if not user.get("id") or not is_valid_email(user.get("email")):
        raise HTTPException(401, detail="login required")
    return Requester(
        id=str(user["id"]),
        email=str(user["email"]).strip(),
        phone_verified=bool(user.get("phoneVerified")),
    )


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=403, detail="admin only")


def _str_field(payload: dict, key: str, required: bool = False):
    v = payload.get(key)
    if v is None or v == "":
        if required:
            raise HTTPException(400, detail=f"{key} is required")
        return None
    if not isinstance(v, str):
        raise HTTPException(400, detail=f"{key} must be a string")
    return v.strip()


# ----------------------------
# Registrations
# ----------------------------
@router.post("/api/registrations", status_code=201)
async def create_registration(
    payload: dict,
    request: Request,
    user: Requester = Depends(current_user),
):
    form_data = payload.get("formData") or {}
    if not isinstance(form_data, dict):
        raise HTTPException(400, detail="formData must be an object")
    req = RegistrationRequest(
        event_id=_str_field(payload, "eventId", required=True),
        ticket_id=_str_field(payload, "ticketId", required=True),
        form_data=form_data,
        invitation_code=_str_field(payload, "invitationCode"),
        referral_code=_str_field(payload, "referralCode"),
    )
    reg = await request.app.state.coordinator.register(user, req)
    return {"ok": True, "data": reg}


@router.put("/api/registrations/{registration_id}/cancel")
async def cancel_registration(
    registration_id: str,
    request: Request,
    user: Requester = Depends(current_user),
):
    reg = await request.app.state.coordinator.cancel(user, registration_id)
    return {"ok": True, "data": reg}


async def _own_registration(db: AsyncSession, registration_id: str,
                            user: Requester) -> Registration:
    reg = await db.get(Registration, registration_id)
    if reg is None or reg.user_id != user.id:
        raise HTTPException(404, detail="registration not found")
    return reg


@router.get("/api/registrations/{registration_id}")
async def get_registration(
    registration_id: str,
    request: Request,
    user: Requester = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    async with timeit("db.get_registration"):
        async with gated(request):
            async with db.begin():
                reg = await _own_registration(db, registration_id, user)
                row = (await db.execute(text("""
                    SELECT e.name AS event_name, e.slug AS event_slug,
                           t.name AS ticket_name, t.price AS ticket_price
                    FROM events e, tickets t
                    WHERE e.id=:eid AND t.id=:tid
                """), {"eid": reg.event_id, "tid": reg.ticket_id})).mappings().first()
    data = registration_view(reg)
    if row is not None:
        data["event"] = {"name": row["event_name"], "slug": row["event_slug"]}
        data["ticket"] = {"name": row["ticket_name"],
                          "price": row["ticket_price"]}
    return {"ok": True, "data": data}


@router.get("/api/registrations/{registration_id}/referral")
async def get_referral_link(
    registration_id: str,
    request: Request,
    user: Requester = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    async with gated(request):
        async with db.begin():
            reg = await _own_registration(db, registration_id, user)
            referral = await referrals.get_or_create_referral(
                db, reg.id, now_ts()
            )
            if referral is None:
                raise HTTPException(
                    409, detail="only confirmed registrations can refer"
                )
            event = await db.get(Event, reg.event_id)
    slug = (event.slug if event is not None else None) or reg.event_id
    return {"ok": True, "data": {
        "code": referral.code,
        "eventId": referral.event_id,
        "link": f"{config.FRONTEND_URI.rstrip('/')}/{slug}?ref={referral.code}",
        "createdAt": to_iso(referral.created_at),
    }}


@router.get("/api/registrations/{registration_id}/referral-stats")
async def get_referral_stats(
    registration_id: str,
    request: Request,
    user: Requester = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    async with gated(request):
        async with db.begin():
            await _own_registration(db, registration_id, user)
            stats = await referrals.referral_stats(db, registration_id)
    if stats is None:
        raise HTTPException(404, detail="no referral for this registration")
    return {"ok": True, "data": stats}


@router.post("/api/referrals/validate")
async def validate_referral(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    code = _str_field(payload, "code", required=True)
    event_id = _str_field(payload, "eventId", required=True)
    async with gated(request):
        async with db.begin():
            referral_id = await referrals.validate(db, code, event_id)
    return {"ok": True, "data": {"valid": referral_id is not None}}


@router.post("/api/invitation-codes/verify")
async def verify_invitation_code(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    code = _str_field(payload, "code", required=True)
    ticket_id = _str_field(payload, "ticketId", required=True)
    async with gated(request):
        async with db.begin():
            check = await invitations.validate(db, code, ticket_id, now_ts())
    return {"ok": True, "data": {"valid": check.ok,
                                 "reason": check.state.value}}


@router.get("/api/tickets/{ticket_id}/availability")
async def ticket_availability(
    ticket_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    async with gated(request):
        async with db.begin():
            inv = await inventory.inventory(db, ticket_id)
    if inv is None:
        raise HTTPException(404, detail="ticket not found")
    return {"ok": True, "data": inv}


# ----------------------------
# Admin
# ----------------------------
@admin.get("/events/{event_id}/webhook/failed-deliveries")
async def failed_deliveries(
    event_id: str,
    request: Request,
    page: int = 1,
    limit: int = 20,
    _: None = Depends(require_admin),
):
    res = await request.app.state.webhooks.list_failed_deliveries(
        event_id, page, limit
    )
    return {"ok": True, "data": res}


@admin.post("/webhook/deliveries/{delivery_id}/retry")
async def retry_delivery(
    delivery_id: str,
    request: Request,
    _: None = Depends(require_admin),
):
    outcome, delivery = await request.app.state.webhooks.retry_delivery(
        delivery_id
    )
    if outcome is RetryOutcome.NOT_FOUND:
        raise HTTPException(404, detail="delivery not found")
    if outcome is RetryOutcome.INELIGIBLE:
        raise HTTPException(
            409, detail=f"delivery is {delivery['status']}, not retryable"
        )
    if outcome is RetryOutcome.ENDPOINT_DISABLED:
        raise HTTPException(409, detail="webhook endpoint is disabled")
    return {"ok": True, "data": {
        "delivered": outcome is RetryOutcome.DELIVERED,
        "delivery": delivery,
    }}


@admin.post("/webhook/endpoints/{endpoint_id}/enable")
async def enable_endpoint(
    endpoint_id: str,
    request: Request,
    _: None = Depends(require_admin),
):
    if not await request.app.state.webhooks.reenable_endpoint(endpoint_id):
        raise HTTPException(404, detail="endpoint not found")
    return {"ok": True}


@admin.post("/campaigns", status_code=201)
async def create_campaign(
    payload: dict,
    request: Request,
    background: BackgroundTasks,
    _: None = Depends(require_admin),
):
    subject = _str_field(payload, "subject", required=True)
    content = payload.get("content")
    if not isinstance(content, str) or not content.strip():
        raise HTTPException(400, detail="content is required")
    audience = payload.get("targetAudience")
    if audience is not None and not isinstance(audience, dict):
        raise HTTPException(400, detail="targetAudience must be an object")

    campaigns: CampaignService = request.app.state.campaigns
    campaign = await campaigns.create(subject, content, audience)
    if payload.get("send", True):
        background.add_task(campaigns.send, campaign["id"])
    return {"ok": True, "data": campaign}


@admin.get("/campaigns/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    request: Request,
    _: None = Depends(require_admin),
):
    campaign = await request.app.state.campaigns.get(campaign_id)
    if campaign is None:
        raise HTTPException(404, detail="campaign not found")
    return {"ok": True, "data": campaign}


@admin.get("/timings")
async def timings(_: None = Depends(require_admin)):
    return {"ok": True, "data": snapshot()}


# ----------------------------
# App factory
# ----------------------------
def create_app(
    database_url: Optional[str] = None,
    run_workers: Optional[bool] = None,
    mailer: Optional[Mailer] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    database_url = database_url or config.DATABASE_URL
    run_workers = config.RUN_WORKERS if run_workers is None else run_workers

    app = FastAPI(
        title="ticketdesk",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)

    engine, SessionAsync, _, gate = make_async_engine(database_url)
    webhooks = WebhookDeliveryService(SessionAsync, gate, http)
    dispatcher = NotificationDispatcher(SessionAsync, gate, mailer, webhooks)
    app.state.engine = engine
    app.state.sessions = SessionAsync
    app.state.gated = gate
    app.state.webhooks = webhooks
    app.state.dispatcher = dispatcher
    app.state.coordinator = RegistrationCoordinator(
        SessionAsync, gate, on_commit=dispatcher.kick
    )
    app.state.campaigns = CampaignService(SessionAsync, gate, mailer)
    app.state.mailer = mailer
    app.state.workers = []

    @app.exception_handler(RegistrationFailed)
    async def _registration_failed(request: Request, exc: RegistrationFailed):
        headers = {"Retry-After": "1"} if exc.error.retryable else None
        return ORJSONResponse(exc.to_body(), status_code=exc.http_status,
                              headers=headers)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        setup_logging(config.LOG_LEVEL)
        logger.info("ticketdesk starting: db=%s mail=%s workers=%s",
                    engine.url.get_backend_name(), config.MAIL_BACKEND,
                    run_workers)

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await create_schema(conn)

    @app.on_event("startup")
    async def _http_client_start():
        if webhooks.http is None:
            app.state.http = httpx.AsyncClient(
                timeout=config.WEBHOOK_TIMEOUT_SECONDS,
                limits=httpx.Limits(
                    max_connections=100, max_keepalive_connections=20
                ),
            )
            webhooks.http = app.state.http

    @app.on_event("startup")
    async def _mailer_start():
        m = app.state.mailer
        if m is None:
            m = new_mailer()
            app.state.mailer = m
        await m.start()
        dispatcher.mailer = m
        app.state.campaigns.mailer = m

    @app.on_event("startup")
    async def _workers_start():
        if not run_workers:
            return
        app.state.stop = asyncio.Event()
        app.state.workers = [
            asyncio.create_task(dispatcher.run(app.state.stop)),
            asyncio.create_task(webhooks.run(app.state.stop)),
        ]

    @app.on_event("shutdown")
    async def _workers_stop():
        stop = getattr(app.state, "stop", None)
        if stop is not None:
            stop.set()
        if app.state.workers:
            await asyncio.gather(*app.state.workers, return_exceptions=True)
            app.state.workers = []

    @app.on_event("shutdown")
    async def _mailer_stop():
        if app.state.mailer is not None:
            await app.state.mailer.aclose()

    @app.on_event("shutdown")
    async def _http_client_stop():
        client = getattr(app.state, "http", None)
        if client is not None:
            await client.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _db_stop():
        await engine.dispose()

    # shutdown handler trying to post our detailed timings
    install_shutdown_flush(app, config.METRICS_URL, config.METRICS_RUN_ID)

    app.include_router(router)
    app.include_router(admin)
    return app


app = create_app()
