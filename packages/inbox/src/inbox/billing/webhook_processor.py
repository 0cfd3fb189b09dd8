"""
Stripe Webhook Processor

Processes Stripe events exactly once. Each event is recorded in
webhook_events keyed by the Stripe event id:

- completed: the event is acknowledged without reprocessing
- processing: another delivery is handling it, unless it started more than
  STALE_PROCESSING_SECONDS ago (a crashed delivery), in which case it runs again
- failed: the row is reused and the event is processed again
- new: the row is inserted; the unique constraint resolves concurrent deliveries
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inbox.billing.invoices import InvoiceService
from inbox.billing.payment_intents import PaymentIntentService
from inbox.billing.plans import PLANS, plan_from_price_id
from inbox.billing.refunds import RefundService
from inbox.persistence.billing_models import InvoiceStatus, WebhookEvent, WebhookEventStatus
from inbox.persistence.billing_repo import BillingRepository
from inbox.persistence.models import Organization, SubscriptionStatus, SubscriptionTier
from inbox.persistence.repo import InboxRepository
from inboxcore.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STALE_PROCESSING_SECONDS = 300

SUBSCRIPTION_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELLED.value,
    "incomplete_expired": SubscriptionStatus.CANCELLED.value,
    "trialing": SubscriptionStatus.TRIAL.value,
}


def is_stale(record: WebhookEvent, now: datetime | None = None) -> bool:
    """Whether a processing row was abandoned by a crashed delivery."""
    if record.processing_started_at is None:
        return True
    now = now or datetime.utcnow()
    return (now - record.processing_started_at).total_seconds() > STALE_PROCESSING_SECONDS


def map_subscription_status(stripe_status: str | None) -> str:
    return SUBSCRIPTION_STATUS_MAP.get(stripe_status or "", SubscriptionStatus.INCOMPLETE.value)


def _timestamp(value: int | None) -> datetime | None:
    return datetime.utcfromtimestamp(value) if value else None


def _tier_from_subscription(subscription: dict[str, Any]) -> str | None:
    plan_id = (subscription.get("metadata") or {}).get("planId")
    if plan_id in PLANS:
        return plan_id
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        plan = plan_from_price_id((items[0].get("price") or {}).get("id"))
        if plan:
            return plan.id
    return None


class WebhookProcessor:
    """Idempotent processing of Stripe webhook events."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BillingRepository(db)
        self.inbox_repo = InboxRepository(db)
        self.handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_updated,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
            "customer.deleted": self._customer_deleted,
            "payment_intent.succeeded": self._payment_intent,
            "payment_intent.payment_failed": self._payment_intent_failed,
            "payment_intent.requires_action": self._payment_intent,
            "payment_intent.canceled": self._payment_intent,
            "charge.refunded": self._charge_refunded,
        }

    def process(self, event: dict[str, Any], signature_verified: bool = True) -> dict[str, Any]:
        """
        Process a verified Stripe event.

        Returns a result dict; "retryable" tells the caller whether Stripe
        should redeliver (non-2xx) after a failure.
        """
        stripe_event_id = event["id"]
        event_type = event["type"]

        record = self.repo.get_webhook_event_by_stripe_id(stripe_event_id)
        if record and record.status == WebhookEventStatus.COMPLETED.value:
            logger.info(f"Stripe event {stripe_event_id} already processed")
            return {"status": "already_processed", "event_id": stripe_event_id}
        if record and record.status == WebhookEventStatus.PROCESSING.value:
            if not is_stale(record):
                return {"status": "in_progress", "event_id": stripe_event_id}
            logger.warning(
                f"Stripe event {stripe_event_id} stuck in processing since {record.processing_started_at}, reprocessing",
                extra={"event_type": event_type},
            )

        if record is None:
            try:
                record = self.repo.create_webhook_event(
                    stripe_event_id, event_type, event, signature_verified=signature_verified
                )
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.info(f"Stripe event {stripe_event_id} recorded concurrently")
                return {"status": "already_processed", "event_id": stripe_event_id}

        return self._run(record, event)

    def _run(self, record: WebhookEvent, event: dict[str, Any]) -> dict[str, Any]:
        record.status = WebhookEventStatus.PROCESSING.value
        record.processing_started_at = datetime.utcnow()
        self.db.commit()

        started = time.monotonic()
        try:
            self.route(event)
        except Exception as e:
            self.db.rollback()
            record.status = WebhookEventStatus.FAILED.value
            record.failed_at = datetime.utcnow()
            record.retry_count = (record.retry_count or 0) + 1
            record.error_message = str(e)
            record.error_details = {"type": type(e).__name__, "event_type": record.event_type}
            self.db.commit()

            retryable = record.retry_count < record.max_retries
            logger.error(
                f"Stripe event {record.stripe_event_id} failed: {e}",
                extra={"event_type": record.event_type, "retry_count": record.retry_count},
                exc_info=True,
            )
            return {
                "status": "failed",
                "event_id": record.stripe_event_id,
                "error": str(e),
                "retryable": retryable,
            }

        record.status = WebhookEventStatus.COMPLETED.value
        record.processed_at = datetime.utcnow()
        record.processing_duration_ms = int((time.monotonic() - started) * 1000)
        record.error_message = None
        self.db.commit()

        logger.info(
            f"Processed Stripe event {record.event_type}",
            extra={"event_id": record.stripe_event_id, "duration_ms": record.processing_duration_ms},
        )
        return {"status": "completed", "event_id": record.stripe_event_id}

    def route(self, event: dict[str, Any]) -> None:
        handler = self.handlers.get(event["type"])
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event['type']}")
            return
        handler(event["data"]["object"])

    def retry_failed(self, event_id: UUID) -> dict[str, Any]:
        record = self.repo.get_webhook_event(event_id)
        if not record:
            raise NotFoundError("Webhook event not found")
        if record.status != WebhookEventStatus.FAILED.value:
            raise ValidationError(f"Only failed events can be retried (status is {record.status})")
        if record.retry_count >= record.max_retries:
            raise ValidationError("Maximum retries exceeded", code="MAX_RETRIES_EXCEEDED")
        return self._run(record, record.event_data)

    def get_events_for_retry(self, limit: int = 100) -> list[WebhookEvent]:
        return self.repo.get_events_for_retry(limit=limit)

    def get_statistics(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        by_type: dict[str, int] = {}
        weighted_ms = 0.0
        timed = 0
        for event_type, status, count, avg_ms in self.repo.webhook_counts():
            by_status[status] = by_status.get(status, 0) + count
            by_type[event_type] = by_type.get(event_type, 0) + count
            if avg_ms is not None:
                weighted_ms += float(avg_ms) * count
                timed += count
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
            "avg_processing_ms": round(weighted_ms / timed, 1) if timed else None,
        }

    # =========================================================================
    # Handlers
    # =========================================================================

    def _organization_for(self, obj: dict[str, Any]) -> Organization | None:
        organization_id = (obj.get("metadata") or {}).get("organizationId")
        if organization_id:
            try:
                organization = self.inbox_repo.get_organization(UUID(organization_id))
            except ValueError:
                organization = None
            if organization:
                return organization
        customer = obj.get("customer")
        if customer:
            return self.inbox_repo.get_organization_by_stripe_customer(customer)
        return None

    def _checkout_completed(self, session: dict[str, Any]) -> None:
        organization = self._organization_for(session)
        if not organization:
            raise NotFoundError(f"No organization for checkout session {session.get('id')}")

        organization.stripe_customer_id = session.get("customer") or organization.stripe_customer_id
        organization.stripe_subscription_id = session.get("subscription")
        organization.subscription_status = SubscriptionStatus.ACTIVE.value
        plan_id = (session.get("metadata") or {}).get("planId")
        if plan_id in PLANS:
            organization.subscription_tier = plan_id
        logger.info(
            "Checkout completed",
            extra={"organization_id": str(organization.id), "plan": organization.subscription_tier},
        )

    def _subscription_updated(self, subscription: dict[str, Any]) -> None:
        organization = self._organization_for(subscription)
        if not organization:
            organization = self.inbox_repo.get_organization_by_stripe_subscription(subscription["id"])
        if not organization:
            raise NotFoundError(f"No organization for subscription {subscription['id']}")

        organization.stripe_subscription_id = subscription["id"]
        organization.subscription_status = map_subscription_status(subscription.get("status"))
        tier = _tier_from_subscription(subscription)
        if tier:
            organization.subscription_tier = tier

        items = (subscription.get("items") or {}).get("data") or [{}]
        start = subscription.get("current_period_start") or items[0].get("current_period_start")
        end = subscription.get("current_period_end") or items[0].get("current_period_end")
        organization.current_period_start = _timestamp(start)
        organization.current_period_end = _timestamp(end)
        organization.cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

    def _subscription_deleted(self, subscription: dict[str, Any]) -> None:
        organization = self.inbox_repo.get_organization_by_stripe_subscription(subscription["id"])
        if not organization:
            organization = self._organization_for(subscription)
        if not organization:
            logger.warning(f"No organization for deleted subscription {subscription['id']}")
            return

        organization.subscription_status = SubscriptionStatus.CANCELLED.value
        organization.subscription_tier = SubscriptionTier.STARTER.value
        organization.stripe_subscription_id = None
        organization.cancel_at_period_end = False

    def _invoice_paid(self, invoice: dict[str, Any]) -> None:
        organization = self._organization_for(invoice)
        if not organization:
            raise NotFoundError(f"No organization for invoice {invoice.get('id')}")

        InvoiceService(self.db).upsert_from_stripe(organization.id, invoice, status=InvoiceStatus.PAID.value)
        if invoice.get("billing_reason") == "subscription_cycle":
            organization.messages_sent_this_month = 0
            logger.info("Monthly usage reset", extra={"organization_id": str(organization.id)})
        if organization.subscription_status == SubscriptionStatus.PAST_DUE.value:
            organization.subscription_status = SubscriptionStatus.ACTIVE.value

    def _invoice_failed(self, invoice: dict[str, Any]) -> None:
        organization = self._organization_for(invoice)
        if not organization:
            raise NotFoundError(f"No organization for invoice {invoice.get('id')}")

        InvoiceService(self.db).upsert_from_stripe(organization.id, invoice, status=InvoiceStatus.FAILED.value)
        organization.subscription_status = SubscriptionStatus.PAST_DUE.value
        logger.warning("Invoice payment failed", extra={"organization_id": str(organization.id)})

    def _customer_deleted(self, customer: dict[str, Any]) -> None:
        organization = self.inbox_repo.get_organization_by_stripe_customer(customer["id"])
        if not organization:
            return
        organization.stripe_customer_id = None
        organization.stripe_subscription_id = None

    def _payment_intent(self, intent: dict[str, Any]) -> None:
        PaymentIntentService(self.db).sync_from_stripe(intent)

    def _payment_intent_failed(self, intent: dict[str, Any]) -> None:
        PaymentIntentService(self.db).sync_from_stripe(intent, payment_failed=True)

    def _charge_refunded(self, charge: dict[str, Any]) -> None:
        updated = RefundService(self.db).sync_charge_refunded(charge)
        logger.info(f"charge.refunded updated {updated} refund(s)", extra={"charge_id": charge.get("id")})
