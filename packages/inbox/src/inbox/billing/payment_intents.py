"""
Payment Intents

One-off charges through Stripe PaymentIntents. Card authentication (3DS/SCA)
happens in the browser with Stripe.js; we only store the next action Stripe
asks for and the client secret the frontend needs.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

import stripe
from sqlalchemy.orm import Session

from inbox.billing.stripe_service import StripeService, configure_stripe, stripe_field
from inbox.persistence.billing_models import PaymentIntent, PaymentIntentStatus, PaymentPurpose
from inbox.persistence.billing_repo import BillingRepository
from inbox.persistence.models import Organization
from inboxcore.errors import ExternalServiceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MIN_AMOUNT_CENTS = 50
TERMINAL_STATUSES = {
    PaymentIntentStatus.SUCCEEDED.value,
    PaymentIntentStatus.CANCELLED.value,
    PaymentIntentStatus.FAILED.value,
}

# Stripe spells it "canceled"
STRIPE_STATUS_MAP = {
    "canceled": PaymentIntentStatus.CANCELLED.value,
}


def map_stripe_status(status: str | None) -> str:
    status = STRIPE_STATUS_MAP.get(status or "", status)
    known = {s.value for s in PaymentIntentStatus}
    return status if status in known else PaymentIntentStatus.CREATED.value


class PaymentIntentService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = BillingRepository(db)

    def create_payment_intent(
        self,
        organization: Organization,
        amount_cents: int,
        purpose: str,
        email: str,
        description: str | None = None,
        currency: str = "usd",
    ) -> dict[str, Any]:
        if amount_cents < MIN_AMOUNT_CENTS:
            raise ValidationError(f"Amount must be at least {MIN_AMOUNT_CENTS} cents")
        try:
            purpose = PaymentPurpose(purpose).value
        except ValueError:
            raise ValidationError(f"Invalid payment purpose: {purpose}")

        customer_id = StripeService.get_or_create_customer(organization, email)
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                description=description,
                automatic_payment_methods={"enabled": True},
                metadata={"organizationId": str(organization.id), "purpose": purpose},
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create payment intent: {e}")
            raise ExternalServiceError(f"Stripe payment intent failed: {e}", code="STRIPE_ERROR")

        record = PaymentIntent(
            organization_id=organization.id,
            stripe_payment_intent_id=intent["id"],
            stripe_customer_id=customer_id,
            amount_cents=amount_cents,
            currency=currency,
            purpose=purpose,
            description=description,
            status=PaymentIntentStatus.CREATED.value,
            attempt_count=0,
            max_attempts=3,
            authentication_required=False,
            client_secret=stripe_field(intent, "client_secret"),
            metadata_={},
        )
        self.db.add(record)
        self._apply_stripe_state(record, intent)
        self.db.commit()

        logger.info(
            f"Created payment intent {intent['id']} for {amount_cents} {currency}",
            extra={"organization_id": str(organization.id), "purpose": purpose},
        )
        return self._client_view(record)

    def get(self, organization_id: UUID, payment_intent_id: UUID) -> PaymentIntent:
        record = self.repo.get_payment_intent(organization_id, payment_intent_id)
        if not record:
            raise NotFoundError("Payment intent not found")
        return record

    def list_payment_intents(self, organization_id: UUID, limit: int = 50) -> list[PaymentIntent]:
        return self.repo.list_payment_intents(organization_id, limit=limit)

    def confirm(self, organization_id: UUID, payment_intent_id: UUID, payment_method: str | None = None) -> dict[str, Any]:
        record = self.get(organization_id, payment_intent_id)
        if record.status in TERMINAL_STATUSES:
            raise ValidationError(f"Payment intent is already {record.status}")

        configure_stripe()
        params = {"payment_method": payment_method} if payment_method else {}
        try:
            intent = stripe.PaymentIntent.confirm(record.stripe_payment_intent_id, **params)
        except stripe.CardError as e:
            self.record_attempt(record, str(e.user_message or e))
            self.db.commit()
            return self._client_view(record)
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Stripe confirmation failed: {e}", code="STRIPE_ERROR")

        self.record_attempt(record)
        self._apply_stripe_state(record, intent)
        self.db.commit()
        return self._client_view(record)

    def cancel(self, organization_id: UUID, payment_intent_id: UUID) -> PaymentIntent:
        record = self.get(organization_id, payment_intent_id)
        if record.status in TERMINAL_STATUSES:
            raise ValidationError(f"Payment intent is already {record.status}")

        configure_stripe()
        try:
            intent = stripe.PaymentIntent.cancel(record.stripe_payment_intent_id)
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Stripe cancellation failed: {e}", code="STRIPE_ERROR")

        self._apply_stripe_state(record, intent)
        self.db.commit()
        return record

    def sync_from_stripe(self, intent: dict[str, Any], payment_failed: bool = False) -> PaymentIntent | None:
        """
        Update the local row from a Stripe payment_intent.* webhook object.

        A row failed locally after max_attempts only moves on when Stripe
        reports it succeeded. payment_failed events count as an attempt.
        """
        record = self.repo.get_payment_intent_by_stripe_id(intent["id"])
        if not record:
            logger.debug(f"No local payment intent for {intent['id']}")
            return None

        stripe_status = map_stripe_status(stripe_field(intent, "status"))
        if record.status != PaymentIntentStatus.FAILED.value or stripe_status == PaymentIntentStatus.SUCCEEDED.value:
            self._apply_stripe_state(record, intent)

        error = intent.get("last_payment_error") or {}
        if error:
            record.last_error = error.get("message")
        if payment_failed:
            self.record_attempt(record, error.get("message") or "Payment failed")
        return record

    def record_attempt(self, record: PaymentIntent, error: str | None = None) -> PaymentIntent:
        record.attempt_count = (record.attempt_count or 0) + 1
        if error:
            record.last_error = error
            if record.attempt_count >= record.max_attempts:
                record.status = PaymentIntentStatus.FAILED.value
                logger.warning(
                    f"Payment intent {record.stripe_payment_intent_id} failed after {record.attempt_count} attempts",
                    extra={"organization_id": str(record.organization_id)},
                )
        return record

    def _apply_stripe_state(self, record: PaymentIntent, intent: Any) -> None:
        status = map_stripe_status(stripe_field(intent, "status"))
        record.status = status
        next_action = stripe_field(intent, "next_action")

        if status == PaymentIntentStatus.REQUIRES_ACTION.value:
            record.authentication_required = True
            record.authentication_status = "pending"
            record.next_action = dict(next_action) if next_action else None
        elif status == PaymentIntentStatus.SUCCEEDED.value:
            record.succeeded_at = record.succeeded_at or datetime.utcnow()
            record.next_action = None
            if record.authentication_required:
                record.authentication_status = "succeeded"
        elif status == PaymentIntentStatus.CANCELLED.value:
            record.cancelled_at = record.cancelled_at or datetime.utcnow()
            record.next_action = None
        elif status == PaymentIntentStatus.REQUIRES_PAYMENT_METHOD.value and record.authentication_required:
            record.authentication_status = "failed"

    @staticmethod
    def _client_view(record: PaymentIntent) -> dict[str, Any]:
        return {
            "id": str(record.id),
            "stripe_payment_intent_id": record.stripe_payment_intent_id,
            "status": record.status,
            "amount_cents": record.amount_cents,
            "currency": record.currency,
            "requires_action": record.authentication_required and record.status == PaymentIntentStatus.REQUIRES_ACTION.value,
            "next_action": record.next_action,
            "client_secret": record.client_secret,
            "attempt_count": record.attempt_count,
        }
