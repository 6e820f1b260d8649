# model/payloads.py
"""Notification bodies, built from rows inside the registration transaction."""

from __future__ import annotations
from typing import Any, Dict, Optional

from ..helpers import registration_token, to_iso
from .db import EVT_CANCELLED, Event, Registration, Ticket


def _attendee_name(form_data: Optional[Dict[str, Any]]) -> Optional[str]:
    if not form_data:
        return None
    name = form_data.get("name")
    return name if isinstance(name, str) and name else None


def build_notification(
    event_type: str,
    event: Event,
    ticket: Ticket,
    reg: Registration,
    now: float,
) -> Dict[str, Any]:
    created_iso = to_iso(reg.created_at)
    registration: Dict[str, Any] = {
        "id": reg.id,
        "status": reg.status,
        "email": reg.email,
        "created_at": created_iso,
        # derived from created_at so confirm and cancel carry the same token
        "token": registration_token(reg.id, created_iso),
    }
    if event_type == EVT_CANCELLED:
        registration["cancelled_at"] = to_iso(reg.updated_at)

    return {
        "type": event_type,
        "timestamp": to_iso(now),
        "event": {"name": event.name, "slug": event.slug},
        "registration": registration,
        "ticket": {
            "id": ticket.id,
            "name": ticket.name,
            "price": ticket.price,
            "attendee": {
                "name": _attendee_name(reg.form_data),
                "email": reg.email,
            },
        },
        "formData": reg.form_data or {},
    }


def email_payload(
    event_type: str, event: Event, ticket: Ticket, reg: Registration
) -> Dict[str, Any]:
    """Everything the mail template needs; the dispatcher reads no rows."""
    return {
        "to": reg.email,
        "template": ("registration_cancelled.html"
                     if event_type == EVT_CANCELLED
                     else "registration_confirmation.html"),
        "context": {
            "name": _attendee_name(reg.form_data),
            "email": reg.email,
            "event_name": event.name,
            "event_location": event.location,
            "event_start": to_iso(event.start_date),
            "ticket_name": ticket.name,
            "registration_id": reg.id,
        },
    }
