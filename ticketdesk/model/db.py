from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# Registration.status
REG_PENDING = "pending"
REG_CONFIRMED = "confirmed"
REG_CANCELLED = "cancelled"

# WebhookDelivery.status
DLV_PENDING = "pending"
DLV_RETRYING = "retrying"
DLV_DELIVERED = "delivered"
DLV_FAILED = "failed"  # terminal

# NotificationOutbox.status / kind
OBX_PENDING = "pending"
OBX_PROCESSING = "processing"
OBX_DONE = "done"
OBX_FAILED = "failed"
OBX_EMAIL = "email"
OBX_WEBHOOK = "webhook"

# webhook event types
EVT_CONFIRMED = "registration_confirmed"
EVT_CANCELLED = "registration_cancelled"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=True, unique=True)
    location = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(Float, nullable=False)
    end_date = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint(
            "sold_count >= 0 AND sold_count <= quantity",
            name="ck_tickets_sold_within_quantity",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)  # minor units
    quantity = Column(Integer, nullable=False)
    sold_count = Column(Integer, nullable=False, default=0)
    sale_start = Column(Float, nullable=True)
    sale_end = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    hidden = Column(Boolean, nullable=False, default=False)
    require_invite_code = Column(Boolean, nullable=False, default=False)
    require_sms_verification = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class InvitationCode(Base):
    __tablename__ = "invitation_codes"
    __table_args__ = (
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_invitation_codes_within_limit",
        ),
        Index("ix_invitation_codes_code", "code"),
    )
    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False)
    code = Column(String, nullable=False)
    usage_limit = Column(Integer, nullable=True)  # NULL = unlimited
    used_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(Float, nullable=True)
    valid_until = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        # one live registration per (event, email); cancelled rows don't count
        Index(
            "uq_registrations_event_email_live",
            "event_id", "email",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_registrations_user", "user_id"),
    )
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False)
    # soft reference, kept when the registration is cancelled
    invitation_code_id = Column(String, nullable=True)
    email = Column(String, nullable=False)
    form_data = Column(JSON, nullable=False, default=dict)

    # pending | confirmed | cancelled
    status = Column(String, nullable=False, default=REG_PENDING)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Referral(Base):
    __tablename__ = "referrals"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    registration_id = Column(String, ForeignKey("registrations.id"),
                             nullable=False, index=True)
    event_id = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class ReferralUsage(Base):
    __tablename__ = "referral_usages"
    id = Column(String, primary_key=True)
    referral_id = Column(String, ForeignKey("referrals.id"), nullable=False,
                         index=True)
    registration_id = Column(String, ForeignKey("registrations.id"),
                             nullable=False)
    event_id = Column(String, nullable=False)
    used_at = Column(Float, nullable=False)


class EventFormField(Base):
    __tablename__ = "event_form_fields"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    # text | textarea | select | radio | checkbox
    type = Column(String, nullable=False)
    name = Column(JSON, nullable=True)
    description = Column(String, nullable=False, default="")
    required = Column(Boolean, nullable=False, default=False)
    validater = Column(String, nullable=True)  # regex
    values = Column(JSON, nullable=True)
    filters = Column(JSON, nullable=True)
    enable_other = Column(Boolean, nullable=False, default=False)
    order = Column(Integer, nullable=False, default=0)


class WebhookEndpoint(Base):
    __tablename__ = "webhook_endpoints"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    url = Column(String, nullable=False)
    auth_header_name = Column(String, nullable=True)
    auth_header_value = Column(String, nullable=True)
    event_types = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    consecutive_failure_periods = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_due", "status", "next_retry_at"),
        Index("ix_webhook_deliveries_webhook_created",
              "webhook_id", "created_at"),
    )
    id = Column(String, primary_key=True)
    webhook_id = Column(String, ForeignKey("webhook_endpoints.id"),
                        nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(Text, nullable=False)  # serialized JSON

    # pending | retrying | delivered | failed (terminal)
    status = Column(String, nullable=False, default=DLV_PENDING)
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(Float, nullable=True)
    delivered_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        Index("ix_notification_outbox_status_created", "status",
              "created_at"),
    )
    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)  # email | webhook
    event_type = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    registration_id = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)

    # pending | processing | done | failed
    status = Column(String, nullable=False, default=OBX_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    claimed_at = Column(Float, nullable=True)
    processed_at = Column(Float, nullable=True)


class EmailCampaign(Base):
    __tablename__ = "email_campaigns"
    id = Column(String, primary_key=True)
    subject = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    target_audience = Column(JSON, nullable=True)

    # draft | sending | sent | failed
    status = Column(String, nullable=False, default="draft")
    recipient_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    sent_at = Column(Float, nullable=True)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
