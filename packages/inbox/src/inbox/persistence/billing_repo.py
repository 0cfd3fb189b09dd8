"""
Billing Repository

Queries over the local mirror of Stripe state.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from inbox.persistence.billing_models import (
    Invoice,
    PaymentIntent,
    Refund,
    RefundHistory,
    RefundStatus,
    WebhookEvent,
    WebhookEventStatus,
)


class BillingRepository:
    """Repository for billing tables."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Webhook events
    # =========================================================================

    def get_webhook_event(self, event_id: UUID) -> WebhookEvent | None:
        return self.db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()

    def get_webhook_event_by_stripe_id(self, stripe_event_id: str) -> WebhookEvent | None:
        return (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.stripe_event_id == stripe_event_id)
            .first()
        )

    def create_webhook_event(
        self,
        stripe_event_id: str,
        event_type: str,
        event_data: dict[str, Any],
        signature_verified: bool = True,
    ) -> WebhookEvent:
        event = WebhookEvent(
            stripe_event_id=stripe_event_id,
            event_type=event_type,
            event_data=event_data,
            status=WebhookEventStatus.PENDING.value,
            retry_count=0,
            max_retries=3,
            received_at=datetime.utcnow(),
            signature_verified=signature_verified,
        )
        self.db.add(event)
        return event

    def list_webhook_events(
        self,
        status: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        query = self.db.query(WebhookEvent)
        if status:
            query = query.filter(WebhookEvent.status == status)
        if event_type:
            query = query.filter(WebhookEvent.event_type == event_type)
        return query.order_by(WebhookEvent.received_at.desc()).offset(offset).limit(limit).all()

    def get_events_for_retry(self, limit: int = 100) -> list[WebhookEvent]:
        """Failed events that still have retries left."""
        return (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
                WebhookEvent.retry_count < WebhookEvent.max_retries,
            )
            .order_by(WebhookEvent.failed_at)
            .limit(limit)
            .all()
        )

    def webhook_counts(self) -> list[tuple[str, str, int, float | None]]:
        """(event_type, status, count, average processing ms)."""
        return (
            self.db.query(
                WebhookEvent.event_type,
                WebhookEvent.status,
                func.count(WebhookEvent.id),
                func.avg(WebhookEvent.processing_duration_ms),
            )
            .group_by(WebhookEvent.event_type, WebhookEvent.status)
            .all()
        )

    # =========================================================================
    # Refunds
    # =========================================================================

    def get_refund(self, refund_id: UUID) -> Refund | None:
        return self.db.query(Refund).filter(Refund.id == refund_id).first()

    def create_refund(self, **fields: Any) -> Refund:
        refund = Refund(status=RefundStatus.PENDING.value, requested_at=datetime.utcnow(), **fields)
        self.db.add(refund)
        return refund

    def add_refund_history(
        self,
        refund: Refund,
        previous_status: str | None,
        new_status: str,
        changed_by: UUID | None = None,
        change_reason: str | None = None,
    ) -> RefundHistory:
        entry = RefundHistory(
            refund_id=refund.id,
            previous_status=previous_status,
            new_status=new_status,
            changed_by=changed_by,
            change_reason=change_reason,
            created_at=datetime.utcnow(),
        )
        self.db.add(entry)
        return entry

    def list_refund_history(self, refund_id: UUID) -> list[RefundHistory]:
        return (
            self.db.query(RefundHistory)
            .filter(RefundHistory.refund_id == refund_id)
            .order_by(RefundHistory.created_at)
            .all()
        )

    def list_refunds(
        self,
        organization_id: UUID | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Refund]:
        query = self.db.query(Refund)
        if organization_id:
            query = query.filter(Refund.organization_id == organization_id)
        if status:
            query = query.filter(Refund.status == status)
        return query.order_by(Refund.requested_at.desc()).offset(offset).limit(limit).all()

    def list_refunds_by_charge(self, charge_id: str) -> list[Refund]:
        return self.db.query(Refund).filter(Refund.stripe_charge_id == charge_id).all()

    def count_recent_completed_refunds(self, organization_id: UUID, days: int = 30) -> int:
        since = datetime.utcnow() - timedelta(days=days)
        return (
            self.db.query(func.count(Refund.id))
            .filter(
                Refund.organization_id == organization_id,
                Refund.status == RefundStatus.COMPLETED.value,
                Refund.completed_at >= since,
            )
            .scalar()
            or 0
        )

    def has_open_refund(self, organization_id: UUID) -> bool:
        return (
            self.db.query(Refund.id)
            .filter(
                Refund.organization_id == organization_id,
                Refund.status.in_([RefundStatus.PENDING.value, RefundStatus.PROCESSING.value]),
            )
            .first()
            is not None
        )

    def refund_totals(self, organization_id: UUID | None = None) -> list[tuple[str, int, int]]:
        """(status, count, total amount in cents)."""
        query = self.db.query(Refund.status, func.count(Refund.id), func.sum(Refund.amount_cents))
        if organization_id:
            query = query.filter(Refund.organization_id == organization_id)
        return [(status, count, total or 0) for status, count, total in query.group_by(Refund.status).all()]

    # =========================================================================
    # Payment intents
    # =========================================================================

    def get_payment_intent(self, organization_id: UUID, payment_intent_id: UUID) -> PaymentIntent | None:
        return (
            self.db.query(PaymentIntent)
            .filter(
                PaymentIntent.organization_id == organization_id,
                PaymentIntent.id == payment_intent_id,
            )
            .first()
        )

    def get_payment_intent_by_stripe_id(self, stripe_payment_intent_id: str) -> PaymentIntent | None:
        return (
            self.db.query(PaymentIntent)
            .filter(PaymentIntent.stripe_payment_intent_id == stripe_payment_intent_id)
            .first()
        )

    def list_payment_intents(self, organization_id: UUID, limit: int = 50) -> list[PaymentIntent]:
        return (
            self.db.query(PaymentIntent)
            .filter(PaymentIntent.organization_id == organization_id)
            .order_by(PaymentIntent.created_at.desc())
            .limit(limit)
            .all()
        )

    # =========================================================================
    # Invoices
    # =========================================================================

    def get_invoice_by_stripe_id(self, stripe_invoice_id: str) -> Invoice | None:
        return self.db.query(Invoice).filter(Invoice.stripe_invoice_id == stripe_invoice_id).first()

    def get_invoice(self, organization_id: UUID, invoice_id: UUID) -> Invoice | None:
        return (
            self.db.query(Invoice)
            .filter(Invoice.organization_id == organization_id, Invoice.id == invoice_id)
            .first()
        )

    def list_invoices(self, organization_id: UUID, limit: int = 50, offset: int = 0) -> list[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.organization_id == organization_id)
            .order_by(Invoice.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
