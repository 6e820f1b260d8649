# ticketdesk/formcheck.py
"""
Registration form checks against the event's form schema.

A field is skipped when its display filter hides it for this ticket/answers.
Errors are collected per field id: {"<field id>": ["message", ...]}.
"""

from __future__ import annotations
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

FieldErrors = Dict[str, List[str]]


def _empty(value: Any) -> bool:
    return value is None or value == ""


def _filled(value: Any) -> bool:
    return not (_empty(value) or (isinstance(value, list) and not value))


def _parse_time(s: Optional[str]) -> Optional[float]:
    if not s:
        return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _option_values(values: Any) -> List[Any]:
    # values is either a JSON string or a list of plain strings and/or
    # objects: {"value": ...} or per-locale labels {"en": ..., "zh": ...}
    options = json.loads(values) if isinstance(values, str) else values
    out: List[Any] = []
    for opt in options:
        if isinstance(opt, dict):
            if opt.get("value") is not None:
                out.append(opt["value"])
            else:
                out.extend(opt.values())
        else:
            out.append(opt)
    return out


def _condition_met(cond: Dict[str, Any], ticket_id: str,
                   form_data: Dict[str, Any], field_ids: set,
                   now: float) -> bool:
    kind = cond.get("type")
    if kind == "ticket":
        return ticket_id == cond["ticketId"] if cond.get("ticketId") else True

    if kind == "field":
        fid = cond.get("fieldId")
        if not fid or fid not in field_ids:
            return True
        value = form_data.get(fid)
        op = cond.get("operator") or "equals"
        if op == "filled":
            return _filled(value)
        if op == "notFilled":
            return not _filled(value)
        if op == "equals":
            return str(value) == str(cond.get("value"))
        return True

    if kind == "time":
        start = _parse_time(cond.get("startTime"))
        end = _parse_time(cond.get("endTime"))
        return ((start is None or now >= start)
                and (end is None or now <= end))

    return True


def should_display(field: Dict[str, Any], ticket_id: str,
                   form_data: Dict[str, Any], field_ids: set,
                   now: float) -> bool:
    filters = field.get("filters")
    if not filters or not filters.get("enabled"):
        return True
    results = [
        _condition_met(c, ticket_id, form_data, field_ids, now)
        for c in filters.get("conditions") or []
    ]
    if filters.get("operator") == "and":
        met = all(results)
    else:
        met = any(results)
    return met if filters.get("action") == "display" else not met


def _regex_ok(pattern: Optional[str], value: str) -> bool:
    if not pattern:
        return True
    try:
        return re.search(pattern, value) is not None
    except re.error:
        # broken validater in the schema: don't block registrants on it
        logger.warning("invalid validater regex %r", pattern)
        return True


def _check_field(field: Dict[str, Any], value: Any) -> List[str]:
    label = field.get("description") or field["id"]
    ftype = field.get("type")

    if ftype in ("text", "textarea"):
        if not isinstance(value, str):
            return [f"{label} must be text"]
        if not _regex_ok(field.get("validater"), value):
            return [f"{label} has an invalid format"]
        return []

    if ftype in ("select", "radio"):
        if not field.get("values"):
            return []
        try:
            valid = _option_values(field["values"])
        except (ValueError, TypeError):
            return [f"{label} has a broken option list"]
        if value in valid:
            return []
        if ftype == "radio" and field.get("enable_other"):
            if isinstance(value, str) and not _regex_ok(
                    field.get("validater"), value):
                return [f"{label} has an invalid format"]
            return []
        return [f"{label} must be one of: "
                + ", ".join(str(v) for v in valid)]

    if ftype == "checkbox":
        if not field.get("values"):
            return []
        if not isinstance(value, list):
            return [f"{label} must be a list"]
        try:
            valid = _option_values(field["values"])
        except (ValueError, TypeError):
            return [f"{label} has a broken option list"]
        bad = [v for v in value if v not in valid]
        if bad:
            return [f"{label} contains invalid options: "
                    + ", ".join(str(v) for v in bad)]
        return []

    return []


def validate_form_data(
    form_data: Dict[str, Any],
    fields: List[Dict[str, Any]],
    ticket_id: str,
    now: float,
) -> Optional[FieldErrors]:
    """None when the answers satisfy every displayed field."""
    errors: FieldErrors = {}
    field_ids = {f["id"] for f in fields}

    for field in fields:
        if not should_display(field, ticket_id, form_data, field_ids, now):
            continue
        fid = field["id"]
        value = form_data.get(fid)
        if _empty(value):
            if field.get("required"):
                errors[fid] = ["This field is required"]
            continue
        msgs = _check_field(field, value)
        if msgs:
            errors[fid] = msgs

    return errors or None
