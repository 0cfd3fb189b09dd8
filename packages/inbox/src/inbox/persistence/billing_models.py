"""
Billing Database Models

Local mirror of Stripe state. Stripe stays the source of truth for payments,
refunds and card authentication; these rows record what we asked for and what
Stripe told us.

Tables:
- webhook_events: Stripe events, unique on stripe_event_id (idempotency key)
- refunds / refund_history: Refund requests and every status change
- payment_intents: PaymentIntents, including 3DS/SCA next actions
- invoices: Stripe invoices per organization
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID

from inboxcore.db import Base
from inbox.persistence.models import TenantMixin


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    PRORATED = "prorated"


class RefundReason(str, Enum):
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE_PAYMENT = "duplicate_payment"
    FRAUDULENT = "fraudulent"
    SERVICE_NOT_PROVIDED = "service_not_provided"
    TECHNICAL_ISSUE = "technical_issue"
    BILLING_ERROR = "billing_error"
    OTHER = "other"


class PaymentPurpose(str, Enum):
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    ADDITIONAL_CHARGE = "additional_charge"
    INVOICE_PAYMENT = "invoice_payment"
    SETUP_PAYMENT_METHOD = "setup_payment_method"


class PaymentIntentStatus(str, Enum):
    CREATED = "created"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELLED = "cancelled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"
    FAILED = "failed"


class WebhookEvent(Base):
    """A Stripe webhook event and its processing state."""

    __tablename__ = "webhook_events"

    id = Column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    stripe_event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSONB, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    received_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONB, nullable=True)
    signature_verified = Column(Boolean, nullable=False, default=True)
    processing_duration_ms = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("stripe_event_id", name="uq_webhook_events_stripe_event_id"),
        Index("idx_webhook_events_status", "status", "received_at"),
        Index("idx_webhook_events_type", "event_type"),
    )


class Refund(Base, TenantMixin):
    """A refund request processed through Stripe."""

    __tablename__ = "refunds"

    stripe_subscription_id = Column(String(255), nullable=True)
    stripe_refund_id = Column(String(255), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    refund_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=RefundStatus.PENDING.value)
    reason = Column(String(50), nullable=False)
    reason_details = Column(Text, nullable=True)
    cancel_subscription = Column(Boolean, nullable=False, default=False)

    requested_by = Column(PGUUID(as_uuid=True), nullable=False)
    approved_by = Column(PGUUID(as_uuid=True), nullable=True)
    processed_by = Column(PGUUID(as_uuid=True), nullable=True)

    requested_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    error_message = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("stripe_refund_id", name="uq_refunds_stripe_refund_id"),
        CheckConstraint("amount_cents > 0", name="ck_refunds_amount_positive"),
        Index("idx_refunds_org_status", "organization_id", "status"),
        Index("idx_refunds_charge", "stripe_charge_id"),
    )


class RefundHistory(Base):
    """Audit trail of refund status changes."""

    __tablename__ = "refund_history"

    id = Column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    refund_id = Column(
        PGUUID(as_uuid=True), ForeignKey("refunds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    changed_by = Column(PGUUID(as_uuid=True), nullable=True)
    change_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)


class PaymentIntent(Base, TenantMixin):
    """
    A Stripe PaymentIntent.

    client_secret is kept so the browser can complete 3DS; it is never listed.
    """

    __tablename__ = "payment_intents"

    stripe_payment_intent_id = Column(String(255), nullable=False)
    stripe_customer_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    purpose = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(50), nullable=False, default=PaymentIntentStatus.CREATED.value)
    authentication_required = Column(Boolean, nullable=False, default=False)
    authentication_status = Column(String(20), nullable=True)
    next_action = Column(JSONB, nullable=True)
    client_secret = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    succeeded_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("stripe_payment_intent_id", name="uq_payment_intents_stripe_id"),
        CheckConstraint("amount_cents > 0", name="ck_payment_intents_amount_positive"),
        Index("idx_payment_intents_org_status", "organization_id", "status"),
    )


class Invoice(Base, TenantMixin):
    """A Stripe invoice."""

    __tablename__ = "invoices"

    stripe_invoice_id = Column(String(255), nullable=False)
    stripe_subscription_id = Column(String(255), nullable=True)
    amount_due_cents = Column(Integer, nullable=False, default=0)
    amount_paid_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default=InvoiceStatus.OPEN.value)
    billing_reason = Column(String(50), nullable=True)
    hosted_invoice_url = Column(Text, nullable=True)
    invoice_pdf = Column(Text, nullable=True)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("stripe_invoice_id", name="uq_invoices_stripe_invoice_id"),
        Index("idx_invoices_org_created", "organization_id", "created_at"),
    )
