"""
Refund Workflow

Refunds are issued by super admins only. Stripe performs the money movement;
each local status change is appended to refund_history.

Flow:
1. Authorize (super admin)
2. Eligibility (Stripe customer, < 3 completed refunds in 30 days, none open)
3. Record the request as pending, then processing
4. stripe.Refund.create against the given charge or the customer's latest charge
5. completed or failed
6. Optionally cancel the subscription
7. Notify
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

import stripe
from sqlalchemy.orm import Session

from inbox.billing.stripe_service import configure_stripe, stripe_field
from inbox.persistence.billing_models import Refund, RefundHistory, RefundReason, RefundStatus, RefundType
from inbox.persistence.billing_repo import BillingRepository
from inbox.persistence.models import Organization, SubscriptionStatus, SubscriptionTier
from inbox.persistence.repo import InboxRepository
from inbox.security.auth import UserClaims
from inboxcore.errors import ExternalServiceError, NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

MAX_REFUNDS_PER_30_DAYS = 3


@dataclass
class RefundRequest:
    organization_id: UUID
    amount_cents: int
    refund_type: str
    reason: str
    reason_details: str | None = None
    currency: str = "usd"
    charge_id: str | None = None
    cancel_subscription: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Eligibility:
    eligible: bool
    reasons: list[str] = field(default_factory=list)


def _require_super_admin(actor: UserClaims, action: str) -> None:
    if not actor.is_super_admin:
        raise PermissionDeniedError(f"Only super admins can {action} refunds")


def prorate(amount_cents: int, period_start: int, period_end: int, now: int | None = None) -> int:
    """Share of amount_cents for the unused part of a billing period (unix seconds)."""
    now = int(time.time()) if now is None else now
    total = period_end - period_start
    remaining = period_end - now
    if total <= 0 or remaining <= 0:
        raise ValidationError("Subscription period has already ended", code="PERIOD_ENDED")
    return (amount_cents * min(remaining, total)) // total


def _subscription_period(subscription: Any) -> tuple[int | None, int | None]:
    start = stripe_field(subscription, "current_period_start")
    end = stripe_field(subscription, "current_period_end")
    if start is None or end is None:
        # Newer API versions carry the period on the subscription item
        items = stripe_field(stripe_field(subscription, "items", {}), "data", [])
        if items:
            start = stripe_field(items[0], "current_period_start")
            end = stripe_field(items[0], "current_period_end")
    return start, end


class RefundService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = BillingRepository(db)
        self.inbox_repo = InboxRepository(db)

    def check_eligibility(self, organization: Organization) -> Eligibility:
        reasons = []
        if not organization.stripe_customer_id:
            reasons.append("Organization has no Stripe customer")
        if self.repo.count_recent_completed_refunds(organization.id) >= MAX_REFUNDS_PER_30_DAYS:
            reasons.append(f"At most {MAX_REFUNDS_PER_30_DAYS} refunds are allowed per 30 days")
        if self.repo.has_open_refund(organization.id):
            reasons.append("Another refund is already pending or processing")
        return Eligibility(eligible=not reasons, reasons=reasons)

    def calculate_amount(self, request: RefundRequest, subscription_id: str | None) -> int:
        if request.amount_cents <= 0:
            raise ValidationError("Refund amount must be greater than zero")

        if request.refund_type in (RefundType.FULL.value, RefundType.PARTIAL.value):
            return request.amount_cents

        if request.refund_type == RefundType.PRORATED.value:
            if not subscription_id:
                raise ValidationError("A subscription is required for prorated refunds")
            configure_stripe()
            try:
                subscription = stripe.Subscription.retrieve(subscription_id)
            except stripe.StripeError as e:
                raise ExternalServiceError(f"Stripe subscription lookup failed: {e}", code="STRIPE_ERROR")
            start, end = _subscription_period(subscription)
            if start is None or end is None:
                raise ValidationError("Subscription has no billing period")
            return prorate(request.amount_cents, start, end)

        raise ValidationError(f"Invalid refund type: {request.refund_type}")

    def _set_status(
        self,
        refund: Refund,
        status: str,
        changed_by: UUID | None = None,
        reason: str | None = None,
    ) -> None:
        previous = refund.status
        refund.status = status
        now = datetime.utcnow()
        if status == RefundStatus.PROCESSING.value:
            refund.processed_at = now
            refund.processed_by = changed_by
        elif status == RefundStatus.COMPLETED.value:
            refund.completed_at = now
        elif status == RefundStatus.FAILED.value:
            refund.failed_at = now
        elif status == RefundStatus.CANCELLED.value:
            refund.cancelled_at = now
        self.repo.add_refund_history(refund, previous, status, changed_by=changed_by, change_reason=reason)

    def process_refund(self, request: RefundRequest, actor: UserClaims) -> dict[str, Any]:
        _require_super_admin(actor, "process")

        try:
            RefundType(request.refund_type)
            RefundReason(request.reason)
        except ValueError as e:
            raise ValidationError(str(e))

        organization = self.inbox_repo.get_organization(request.organization_id)
        if not organization:
            raise NotFoundError("Organization not found")

        eligibility = self.check_eligibility(organization)
        if not eligibility.eligible:
            raise ValidationError(
                "Organization is not eligible for a refund",
                code="REFUND_NOT_ELIGIBLE",
                details={"reasons": eligibility.reasons},
            )

        amount = self.calculate_amount(request, organization.stripe_subscription_id)

        refund = self.repo.create_refund(
            organization_id=organization.id,
            stripe_subscription_id=organization.stripe_subscription_id,
            stripe_charge_id=request.charge_id,
            amount_cents=amount,
            currency=request.currency,
            refund_type=request.refund_type,
            reason=request.reason,
            reason_details=request.reason_details,
            cancel_subscription=request.cancel_subscription,
            requested_by=actor.id,
            metadata_=request.metadata,
        )
        self.db.flush()
        self.repo.add_refund_history(refund, None, RefundStatus.PENDING.value, changed_by=actor.id, change_reason="Refund requested")
        self._set_status(refund, RefundStatus.PROCESSING.value, changed_by=actor.id)
        self.db.commit()

        try:
            stripe_refund = self._create_stripe_refund(
                organization.stripe_customer_id, amount, request.charge_id, request.reason_details
            )
        except (ExternalServiceError, ValidationError) as e:
            refund.error_message = e.message
            refund.error_code = e.code
            self._set_status(refund, RefundStatus.FAILED.value, changed_by=actor.id, reason=e.message)
            self.db.commit()
            logger.error(
                f"Refund {refund.id} failed: {e.message}",
                extra={"organization_id": str(organization.id)},
            )
            return {"refund_id": str(refund.id), "status": RefundStatus.FAILED.value, "error": e.message}

        # Stripe has moved the money
        refund.stripe_refund_id = stripe_refund["id"]
        refund.stripe_charge_id = stripe_field(stripe_refund, "charge", refund.stripe_charge_id)
        self._set_status(refund, RefundStatus.COMPLETED.value, changed_by=actor.id)
        self.db.commit()

        result = {
            "refund_id": str(refund.id),
            "status": RefundStatus.COMPLETED.value,
            "stripe_refund_id": refund.stripe_refund_id,
            "amount_cents": amount,
        }

        if request.cancel_subscription:
            result["subscription_cancelled"] = self._cancel_subscription(organization, refund, actor)
            self.db.commit()

        self._notify(organization, refund)
        return result

    def _create_stripe_refund(
        self,
        customer_id: str,
        amount: int,
        charge_id: str | None,
        details: str | None,
    ) -> Any:
        configure_stripe()
        metadata = {"customerId": customer_id, "refundReason": details or "Refund requested"}
        try:
            if not charge_id:
                charges = stripe.Charge.list(customer=customer_id, limit=1)
                data = stripe_field(charges, "data", [])
                if not data:
                    raise ValidationError("No charges found for customer", code="NO_CHARGES")
                charge = data[0]
                if stripe_field(charge, "refunded", False):
                    raise ValidationError("Charge has already been refunded", code="ALREADY_REFUNDED")
                if amount > stripe_field(charge, "amount", 0):
                    raise ValidationError(
                        f"Refund amount ({amount}) exceeds charge amount ({charge['amount']})",
                        code="AMOUNT_EXCEEDS_CHARGE",
                    )
                charge_id = charge["id"]

            return stripe.Refund.create(
                charge=charge_id,
                amount=amount,
                reason="requested_by_customer",
                metadata=metadata,
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Stripe refund failed: {e}", code="STRIPE_ERROR")

    def _cancel_subscription(self, organization: Organization, refund: Refund, actor: UserClaims) -> bool:
        """
        Cancel the organization's subscription after a completed refund.

        A failure is recorded on the refund and leaves the refund completed.
        """
        if organization.stripe_subscription_id:
            try:
                stripe.Subscription.cancel(organization.stripe_subscription_id)
            except stripe.StripeError as e:
                logger.error(
                    f"Failed to cancel subscription after refund: {e}",
                    extra={"organization_id": str(organization.id), "refund_id": str(refund.id)},
                )
                refund.error_code = "SUBSCRIPTION_CANCEL_FAILED"
                refund.error_message = f"Refund completed but subscription cancellation failed: {e}"
                self.repo.add_refund_history(
                    refund,
                    refund.status,
                    refund.status,
                    changed_by=actor.id,
                    change_reason="Subscription cancellation failed",
                )
                return False
        organization.subscription_status = SubscriptionStatus.CANCELLED.value
        organization.subscription_tier = SubscriptionTier.STARTER.value
        organization.stripe_subscription_id = None
        return True

    def _notify(self, organization: Organization, refund: Refund) -> None:
        logger.info(
            f"Refund of {refund.amount_cents} {refund.currency} completed",
            extra={
                "organization_id": str(organization.id),
                "refund_id": str(refund.id),
                "notification": "refund_completed",
            },
        )

    def approve_refund(self, refund_id: UUID, actor: UserClaims) -> Refund:
        _require_super_admin(actor, "approve")
        refund = self.get_refund(refund_id)
        if refund.status != RefundStatus.PENDING.value:
            raise ValidationError("Only pending refunds can be approved")
        refund.approved_by = actor.id
        refund.approved_at = datetime.utcnow()
        self.repo.add_refund_history(refund, refund.status, refund.status, changed_by=actor.id, change_reason="Approved")
        self.db.commit()
        return refund

    def cancel_refund(self, refund_id: UUID, actor: UserClaims, reason: str | None = None) -> Refund:
        _require_super_admin(actor, "cancel")
        refund = self.get_refund(refund_id)
        if refund.status != RefundStatus.PENDING.value:
            raise ValidationError("Only pending refunds can be cancelled")
        self._set_status(refund, RefundStatus.CANCELLED.value, changed_by=actor.id, reason=reason)
        self.db.commit()
        return refund

    def get_refund(self, refund_id: UUID) -> Refund:
        refund = self.repo.get_refund(refund_id)
        if not refund:
            raise NotFoundError("Refund not found")
        return refund

    def list_refunds(
        self,
        organization_id: UUID | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Refund]:
        return self.repo.list_refunds(organization_id=organization_id, status=status, limit=limit, offset=offset)

    def get_history(self, refund_id: UUID) -> list[RefundHistory]:
        self.get_refund(refund_id)
        return self.repo.list_refund_history(refund_id)

    def sync_charge_refunded(self, charge: dict[str, Any]) -> int:
        """Mark local refunds for a charge completed from a charge.refunded webhook."""
        updated = 0
        for refund in self.repo.list_refunds_by_charge(charge["id"]):
            if refund.status in (RefundStatus.PENDING.value, RefundStatus.PROCESSING.value):
                self._set_status(refund, RefundStatus.COMPLETED.value, reason="charge.refunded webhook")
                updated += 1
        return updated

    def get_statistics(self, organization_id: UUID | None = None) -> dict[str, Any]:
        by_status = {}
        total_refunded = 0
        for status, count, amount in self.repo.refund_totals(organization_id):
            by_status[status] = {"count": count, "amount_cents": amount}
            if status == RefundStatus.COMPLETED.value:
                total_refunded = amount
        return {
            "total_count": sum(v["count"] for v in by_status.values()),
            "total_refunded_cents": total_refunded,
            "by_status": by_status,
        }
