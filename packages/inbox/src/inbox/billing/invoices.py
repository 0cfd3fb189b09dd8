"""Local copies of Stripe invoices."""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.persistence.billing_models import Invoice, InvoiceStatus
from inbox.persistence.billing_repo import BillingRepository
from inboxcore.errors import NotFoundError

logger = logging.getLogger(__name__)

KNOWN_STATUSES = {s.value for s in InvoiceStatus}


def _timestamp(value: int | None) -> datetime | None:
    return datetime.utcfromtimestamp(value) if value else None


class InvoiceService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = BillingRepository(db)

    def upsert_from_stripe(self, organization_id: UUID, data: dict[str, Any], status: str | None = None) -> Invoice:
        """
        Create or update the local invoice from a Stripe invoice object.

        status overrides the Stripe status (payment failures keep Stripe's "open").
        """
        invoice = self.repo.get_invoice_by_stripe_id(data["id"])
        if invoice is None:
            invoice = Invoice(organization_id=organization_id, stripe_invoice_id=data["id"])
            self.db.add(invoice)

        stripe_status = data.get("status") or InvoiceStatus.OPEN.value
        invoice.status = status or (stripe_status if stripe_status in KNOWN_STATUSES else InvoiceStatus.OPEN.value)
        invoice.stripe_subscription_id = data.get("subscription")
        invoice.amount_due_cents = data.get("amount_due") or 0
        invoice.amount_paid_cents = data.get("amount_paid") or 0
        invoice.currency = data.get("currency") or "usd"
        invoice.billing_reason = data.get("billing_reason")
        invoice.hosted_invoice_url = data.get("hosted_invoice_url")
        invoice.invoice_pdf = data.get("invoice_pdf")
        invoice.period_start = _timestamp(data.get("period_start"))
        invoice.period_end = _timestamp(data.get("period_end"))
        if invoice.status == InvoiceStatus.PAID.value:
            paid_at = (data.get("status_transitions") or {}).get("paid_at")
            invoice.paid_at = _timestamp(paid_at) or datetime.utcnow()

        logger.info(
            f"Stored invoice {data['id']} as {invoice.status}",
            extra={"organization_id": str(organization_id)},
        )
        return invoice

    def list_invoices(self, organization_id: UUID, limit: int = 50, offset: int = 0) -> list[Invoice]:
        return self.repo.list_invoices(organization_id, limit=min(limit, 100), offset=offset)

    def get_invoice(self, organization_id: UUID, invoice_id: UUID) -> Invoice:
        invoice = self.repo.get_invoice(organization_id, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found")
        return invoice
