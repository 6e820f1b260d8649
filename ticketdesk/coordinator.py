# ticketdesk/coordinator.py
"""
Registration transaction coordinator.

register() and cancel() each run
  1. a preflight: cheap reads that fail fast, possibly on stale data
  2. one serializable transaction that re-checks every contended
     precondition against committed state and writes all rows, including
     the outbox rows for email + webhooks

A serialization failure is reported as TRANSACTION_CONFLICT and never
retried here; the client decides. After commit the dispatcher is woken,
nothing on this path waits for email or webhook I/O.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import RegistrationError, RegistrationFailed
from .formcheck import validate_form_data
from .helpers import new_id, now_ts, to_iso
from .infra.sql import is_serialization_failure
from .infra.timings import timeit
from .model import inventory, invitations, outbox, payloads, referrals
from .model.db import (
    EVT_CANCELLED, EVT_CONFIRMED, OBX_EMAIL, OBX_WEBHOOK,
    REG_CANCELLED, REG_CONFIRMED,
    Event, EventFormField, Registration, Ticket,
)
from .model.invitations import CodeState
from .model.inventory import Reserve

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

E = RegistrationError


@dataclass(frozen=True)
class Requester:
    """The authenticated caller, as handed over by the session layer."""
    id: str
    email: str
    phone_verified: bool = False


@dataclass
class RegistrationRequest:
    event_id: str
    ticket_id: str
    form_data: Dict[str, Any] = field(default_factory=dict)
    invitation_code: Optional[str] = None
    referral_code: Optional[str] = None


@dataclass
class _Plan:
    # what the preflight decided to carry into the transaction
    code_id: Optional[str] = None
    code_required: bool = False
    referral_id: Optional[str] = None


def registration_view(reg: Registration) -> Dict[str, Any]:
    return {
        "id": reg.id,
        "eventId": reg.event_id,
        "ticketId": reg.ticket_id,
        "email": reg.email,
        "status": reg.status,
        "formData": reg.form_data or {},
        "createdAt": to_iso(reg.created_at),
        "updatedAt": to_iso(reg.updated_at),
    }


def _invitation_error(state: CodeState) -> RegistrationError:
    if state is CodeState.USAGE_EXHAUSTED:
        return E.INVITATION_CODE_EXHAUSTED
    return E.INVITATION_CODE_INVALID


def _is_duplicate_registration(exc: IntegrityError) -> bool:
    msg = str(exc.orig).lower()
    return ("uq_registrations_event_email_live" in msg
            or ("unique" in msg and "registrations" in msg))


class RegistrationCoordinator:
    def __init__(
        self,
        sessions: async_sessionmaker,
        gated: Gated,
        on_commit: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = now_ts,
    ):
        self._sessions = sessions
        self._gated = gated
        self._on_commit = on_commit
        self._clock = clock

    def _committed(self) -> None:
        if self._on_commit is not None:
            self._on_commit()

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------
    async def register(
        self, requester: Requester, req: RegistrationRequest
    ) -> Dict[str, Any]:
        now = self._clock()
        try:
            async with self._sessions() as db:
                async with timeit("registration.preflight"):
                    plan = await self._preflight(db, requester, req, now)
                async with timeit("registration.tx"):
                    reg = await self._register_tx(db, requester, req, plan,
                                                  now)
        except RegistrationFailed as e:
            logger.info("registration rejected: event=%s ticket=%s "
                        "user=%s: %s", req.event_id, req.ticket_id,
                        requester.id, e)
            raise
        except IntegrityError as e:
            if _is_duplicate_registration(e):
                raise RegistrationFailed(E.DUPLICATE_EMAIL) from e
            logger.exception("registration failed: event=%s ticket=%s",
                             req.event_id, req.ticket_id)
            raise RegistrationFailed(E.INTERNAL) from e
        except DBAPIError as e:
            if is_serialization_failure(e):
                logger.info("registration conflict: event=%s ticket=%s",
                            req.event_id, req.ticket_id)
                raise RegistrationFailed(E.TRANSACTION_CONFLICT) from e
            logger.exception("registration failed: event=%s ticket=%s",
                             req.event_id, req.ticket_id)
            raise RegistrationFailed(E.INTERNAL) from e
        except Exception as e:
            logger.exception("registration failed: event=%s ticket=%s",
                             req.event_id, req.ticket_id)
            raise RegistrationFailed(E.INTERNAL) from e

        logger.info("registration %s confirmed: event=%s ticket=%s",
                    reg.id, reg.event_id, reg.ticket_id)
        self._committed()
        return registration_view(reg)

    async def _preflight(
        self, db: AsyncSession, requester: Requester,
        req: RegistrationRequest, now: float,
    ) -> _Plan:
        async with self._gated():
            async with db.begin():
                event = await db.get(Event, req.event_id)
                if event is None or not event.is_active:
                    raise RegistrationFailed(E.EVENT_NOT_FOUND)

                ticket = await db.get(Ticket, req.ticket_id)
                if (ticket is None or not ticket.is_active or ticket.hidden
                        or ticket.event_id != event.id):
                    raise RegistrationFailed(E.TICKET_NOT_FOUND)

                if ticket.sale_start is not None and now < ticket.sale_start:
                    raise RegistrationFailed(E.TICKET_NOT_ON_SALE,
                                             "sale has not started")
                if ticket.sale_end is not None and now > ticket.sale_end:
                    raise RegistrationFailed(E.TICKET_NOT_ON_SALE,
                                             "sale has ended")

                if not await inventory.has_capacity(db, ticket.id):
                    raise RegistrationFailed(E.TICKET_SOLD_OUT)

                if await self._has_live_registration(db, event.id,
                                                     requester.email):
                    raise RegistrationFailed(E.ALREADY_REGISTERED)

                plan = _Plan(code_required=ticket.require_invite_code)
                code = (req.invitation_code or "").strip()
                if ticket.require_invite_code and not code:
                    raise RegistrationFailed(E.INVITATION_CODE_REQUIRED)
                if code:
                    check = await invitations.validate(db, code, ticket.id,
                                                       now)
                    if check.ok:
                        plan.code_id = check.code_id
                    elif ticket.require_invite_code:
                        raise RegistrationFailed(
                            _invitation_error(check.state),
                            check.state.value,
                        )
                    else:
                        logger.info("ignoring invitation code for ticket %s "
                                    "(%s)", ticket.id, check.state.value)

                if (ticket.require_sms_verification
                        and not requester.phone_verified):
                    raise RegistrationFailed(E.SMS_VERIFICATION_REQUIRED)

                ref = (req.referral_code or "").strip()
                if ref:
                    plan.referral_id = await referrals.validate(db, ref,
                                                                event.id)
                    if plan.referral_id is None:
                        raise RegistrationFailed(E.REFERRAL_CODE_INVALID)

                fields = await self._form_fields(db, event.id)
                errs = validate_form_data(req.form_data or {}, fields,
                                          ticket.id, now)
                if errs:
                    raise RegistrationFailed(E.FORM_VALIDATION_FAILED,
                                             fields=errs)
        return plan

    async def _register_tx(
        self, db: AsyncSession, requester: Requester,
        req: RegistrationRequest, plan: _Plan, now: float,
    ) -> Registration:
        async with self._gated():
            async with db.begin():
                if await self._has_live_registration(db, req.event_id,
                                                     requester.email):
                    raise RegistrationFailed(E.ALREADY_REGISTERED)

                if await inventory.try_reserve(db, req.ticket_id) \
                        is Reserve.SOLD_OUT:
                    raise RegistrationFailed(E.TICKET_SOLD_OUT)

                code_id = plan.code_id
                if code_id is not None:
                    state = await invitations.consume(db, code_id)
                    if state is not CodeState.VALID:
                        if plan.code_required:
                            raise RegistrationFailed(
                                _invitation_error(state), state.value
                            )
                        # optional code went stale meanwhile: register
                        # without it
                        code_id = None

                reg = Registration(
                    id=new_id(),
                    user_id=requester.id,
                    event_id=req.event_id,
                    ticket_id=req.ticket_id,
                    invitation_code_id=code_id,
                    email=requester.email,
                    form_data=req.form_data or {},
                    status=REG_CONFIRMED,
                    created_at=now,
                    updated_at=now,
                )
                db.add(reg)
                # write it now: the live-registration unique index fires
                # here, and referral_usages references the row
                await db.flush()

                if plan.referral_id is not None:
                    referrals.attribute(db, plan.referral_id, reg.id,
                                        req.event_id, now)

                await self._enqueue_notifications(db, EVT_CONFIRMED, reg, now)
        return reg

    # ------------------------------------------------------------------
    # cancellation
    # ------------------------------------------------------------------
    async def cancel(
        self, requester: Requester, registration_id: str
    ) -> Dict[str, Any]:
        now = self._clock()
        try:
            async with self._sessions() as db:
                async with timeit("cancel.preflight"):
                    await self._cancel_preflight(db, requester,
                                                 registration_id, now)
                async with timeit("cancel.tx"):
                    reg = await self._cancel_tx(db, registration_id, now)
        except RegistrationFailed as e:
            logger.info("cancellation rejected: registration=%s: %s",
                        registration_id, e)
            raise
        except DBAPIError as e:
            if is_serialization_failure(e):
                raise RegistrationFailed(E.TRANSACTION_CONFLICT) from e
            logger.exception("cancellation failed: registration=%s",
                             registration_id)
            raise RegistrationFailed(E.INTERNAL) from e
        except Exception as e:
            logger.exception("cancellation failed: registration=%s",
                             registration_id)
            raise RegistrationFailed(E.INTERNAL) from e

        logger.info("registration %s cancelled", registration_id)
        self._committed()
        return registration_view(reg)

    async def _cancel_preflight(
        self, db: AsyncSession, requester: Requester,
        registration_id: str, now: float,
    ) -> None:
        async with self._gated():
            async with db.begin():
                reg = await db.get(Registration, registration_id)
                if reg is None or reg.user_id != requester.id:
                    raise RegistrationFailed(E.REGISTRATION_NOT_FOUND)
                if reg.status == REG_CANCELLED:
                    raise RegistrationFailed(E.ALREADY_CANCELLED)
                if reg.status != REG_CONFIRMED:
                    raise RegistrationFailed(E.REGISTRATION_NOT_FOUND,
                                             f"status is {reg.status}")
                event = await db.get(Event, reg.event_id)
                if event is not None and now >= event.start_date:
                    raise RegistrationFailed(E.EVENT_ALREADY_STARTED)

    async def _cancel_tx(
        self, db: AsyncSession, registration_id: str, now: float
    ) -> Registration:
        async with self._gated():
            async with db.begin():
                # confirmed -> cancelled at most once, whoever gets here first
                flipped = (await db.execute(text("""
                    UPDATE registrations
                    SET status=:cancelled, updated_at=:now
                    WHERE id=:id AND status=:confirmed
                    RETURNING ticket_id
                """), {
                    "id": registration_id, "now": now,
                    "cancelled": REG_CANCELLED, "confirmed": REG_CONFIRMED,
                })).first()
                if flipped is None:
                    raise RegistrationFailed(E.ALREADY_CANCELLED)

                if await inventory.release(db, flipped[0]) is None:
                    # CHECK constraint makes this unreachable unless counters
                    # were edited by hand
                    logger.warning("release on ticket %s with sold_count=0",
                                   flipped[0])

                reg = await db.get(Registration, registration_id,
                                   populate_existing=True)
                await self._enqueue_notifications(db, EVT_CANCELLED, reg, now)
        return reg

    # ------------------------------------------------------------------
    # shared
    # ------------------------------------------------------------------
    @staticmethod
    async def _has_live_registration(
        db: AsyncSession, event_id: str, email: str
    ) -> bool:
        row = (await db.execute(text("""
            SELECT 1 FROM registrations
            WHERE event_id=:eid AND email=:email AND status != :cancelled
            LIMIT 1
        """), {
            "eid": event_id, "email": email, "cancelled": REG_CANCELLED,
        })).first()
        return row is not None

    @staticmethod
    async def _form_fields(db: AsyncSession, event_id: str):
        rows = (await db.execute(
            select(EventFormField)
            .where(EventFormField.event_id == event_id)
            .order_by(EventFormField.order)
        )).scalars().all()
        return [
            {
                "id": f.id,
                "type": f.type,
                "description": f.description,
                "required": f.required,
                "validater": f.validater,
                "values": f.values,
                "filters": f.filters,
                "enable_other": f.enable_other,
            }
            for f in rows
        ]

    async def _enqueue_notifications(
        self, db: AsyncSession, event_type: str, reg: Registration,
        now: float,
    ) -> None:
        event = await db.get(Event, reg.event_id)
        ticket = await db.get(Ticket, reg.ticket_id)
        outbox.enqueue(
            db, kind=OBX_EMAIL, event_type=event_type,
            event_id=reg.event_id, registration_id=reg.id,
            payload=payloads.email_payload(event_type, event, ticket, reg),
            now=now,
        )
        outbox.enqueue(
            db, kind=OBX_WEBHOOK, event_type=event_type,
            event_id=reg.event_id, registration_id=reg.id,
            payload=payloads.build_notification(event_type, event, ticket,
                                                reg, now),
            now=now,
        )
