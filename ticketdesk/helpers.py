import hashlib
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def mask_email(email: str) -> str:
    """alice@example.com -> al***@example.com (keeps 1-2 leading chars)."""
    local, sep, domain = email.partition("@")
    if not sep or not local:
        return email
    keep = local[:2]
    return keep + "*" * max(3, len(local) - len(keep)) + "@" + domain


def registration_token(registration_id: str, created_at_iso: str) -> str:
    # subscribers use this to tie confirm/cancel notifications together
    return hashlib.sha256(
        (registration_id + created_at_iso).encode()
    ).hexdigest()
