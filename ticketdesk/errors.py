"""Registration error taxonomy.

Every precondition failure the coordinator reports is one member of
`RegistrationError`; callers dispatch on the member, never on message text.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ErrorClass(Enum):
    CONFLICT = "conflict"
    VALIDATION = "validation"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    SERVER = "server"


class RegistrationError(Enum):
    """(code, class, user-safe message)"""

    ALREADY_REGISTERED = (
        "ALREADY_REGISTERED", ErrorClass.CONFLICT,
        "You are already registered for this event",
    )
    TICKET_SOLD_OUT = (
        "TICKET_SOLD_OUT", ErrorClass.CONFLICT, "Ticket is sold out",
    )
    TICKET_NOT_ON_SALE = (
        "TICKET_NOT_ON_SALE", ErrorClass.VALIDATION,
        "Ticket is not on sale",
    )
    INVITATION_CODE_REQUIRED = (
        "INVITATION_CODE_REQUIRED", ErrorClass.AUTH,
        "This ticket requires an invitation code",
    )
    INVITATION_CODE_INVALID = (
        "INVITATION_CODE_INVALID", ErrorClass.VALIDATION,
        "Invitation code is not valid",
    )
    INVITATION_CODE_EXHAUSTED = (
        "INVITATION_CODE_EXHAUSTED", ErrorClass.VALIDATION,
        "Invitation code has reached its usage limit",
    )
    SMS_VERIFICATION_REQUIRED = (
        "SMS_VERIFICATION_REQUIRED", ErrorClass.AUTH,
        "This ticket requires a verified phone number",
    )
    REFERRAL_CODE_INVALID = (
        "REFERRAL_CODE_INVALID", ErrorClass.VALIDATION,
        "Referral code is not valid",
    )
    FORM_VALIDATION_FAILED = (
        "FORM_VALIDATION_FAILED", ErrorClass.VALIDATION,
        "Form validation failed",
    )
    TRANSACTION_CONFLICT = (
        "TRANSACTION_CONFLICT", ErrorClass.CONFLICT,
        "Concurrent update, please retry",
    )
    DUPLICATE_EMAIL = (
        "DUPLICATE_EMAIL", ErrorClass.CONFLICT,
        "This email is already registered for this event",
    )
    INTERNAL = (
        "INTERNAL", ErrorClass.SERVER, "Registration failed",
    )
    EVENT_NOT_FOUND = (
        "EVENT_NOT_FOUND", ErrorClass.NOT_FOUND,
        "Event does not exist or is closed",
    )
    TICKET_NOT_FOUND = (
        "TICKET_NOT_FOUND", ErrorClass.NOT_FOUND,
        "Ticket does not exist or is closed",
    )
    REGISTRATION_NOT_FOUND = (
        "REGISTRATION_NOT_FOUND", ErrorClass.NOT_FOUND,
        "Registration not found",
    )
    ALREADY_CANCELLED = (
        "ALREADY_CANCELLED", ErrorClass.CONFLICT,
        "Registration is already cancelled",
    )
    EVENT_ALREADY_STARTED = (
        "EVENT_ALREADY_STARTED", ErrorClass.VALIDATION,
        "The event has already started",
    )

    def __init__(self, code: str, error_class: ErrorClass, message: str):
        self.code = code
        self.error_class = error_class
        self.message = message

    @property
    def retryable(self) -> bool:
        return self is RegistrationError.TRANSACTION_CONFLICT


HTTP_STATUS = {
    ErrorClass.CONFLICT: 409,
    ErrorClass.VALIDATION: 422,
    ErrorClass.AUTH: 403,
    ErrorClass.NOT_FOUND: 404,
    ErrorClass.SERVER: 500,
}


@dataclass(eq=False)
class RegistrationFailed(Exception):
    """Raised by the coordinator; carries exactly one taxonomy member."""

    error: RegistrationError
    detail: Optional[str] = None
    fields: Optional[Dict[str, List[str]]] = field(default=None)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.error.code}: {self.detail}"
        return self.error.code

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.error.error_class]

    def to_body(self) -> dict:
        err = {
            "code": self.error.code,
            "message": self.error.message,
            "retryable": self.error.retryable,
        }
        if self.fields:
            err["fields"] = self.fields
        return {"ok": False, "error": err}
