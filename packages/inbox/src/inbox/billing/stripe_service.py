"""
Stripe Subscription Service

All Stripe API calls for customers, checkout, the customer portal and
subscription changes. Stripe SDK errors are raised as ExternalServiceError.
"""

import logging
from typing import Any

import stripe

from inbox.billing.plans import get_plan, is_upgrade, usage_violations
from inbox.persistence.models import Organization
from inbox.persistence.repo import InboxRepository
from inboxcore.errors import ExternalServiceError, ValidationError
from inboxcore.settings import get_settings

logger = logging.getLogger(__name__)


def configure_stripe() -> None:
    stripe.api_key = get_settings().STRIPE_SECRET_KEY


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or plain dict."""
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _external_error(action: str, error: Exception) -> ExternalServiceError:
    logger.error(f"Stripe {action} failed: {error}")
    return ExternalServiceError(
        f"Stripe {action} failed: {getattr(error, 'user_message', None) or error}",
        code="STRIPE_ERROR",
        retryable=isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)),
    )


class StripeService:
    """
    Service class for Stripe operations.
    All methods are static for easy use without instantiation.
    """

    @staticmethod
    def is_configured() -> bool:
        settings = get_settings()
        return bool(settings.STRIPE_SECRET_KEY and settings.STRIPE_STARTER_PRICE_ID)

    @staticmethod
    def get_or_create_customer(organization: Organization, email: str) -> str:
        """
        Return the organization's Stripe customer, creating it if needed.

        The caller commits the organization after a customer is created.
        """
        configure_stripe()
        if organization.stripe_customer_id:
            try:
                customer = stripe.Customer.retrieve(organization.stripe_customer_id)
                if not stripe_field(customer, "deleted", False):
                    return organization.stripe_customer_id
            except stripe.InvalidRequestError:
                logger.warning(f"Stripe customer {organization.stripe_customer_id} no longer exists")
            except stripe.StripeError as e:
                raise _external_error("customer lookup", e)

        try:
            customer = stripe.Customer.create(
                email=email,
                name=organization.name,
                metadata={"organizationId": str(organization.id)},
            )
        except stripe.StripeError as e:
            raise _external_error("customer creation", e)

        organization.stripe_customer_id = customer["id"]
        logger.info(f"Created Stripe customer {customer['id']}", extra={"organization_id": str(organization.id)})
        return customer["id"]

    @staticmethod
    def create_checkout_session(
        organization: Organization,
        plan_id: str,
        email: str,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        plan = get_plan(plan_id)
        if not plan.stripe_price_id:
            raise ValidationError(f"Plan {plan_id} has no Stripe price configured", code="INVALID_PLAN")

        customer_id = StripeService.get_or_create_customer(organization, email)
        app_url = get_settings().APP_URL
        metadata = {"organizationId": str(organization.id), "planId": plan.id}

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": plan.stripe_price_id, "quantity": 1}],
                success_url=success_url or f"{app_url}/billing?checkout=success",
                cancel_url=cancel_url or f"{app_url}/billing?checkout=cancelled",
                metadata=metadata,
                subscription_data={"metadata": metadata},
                allow_promotion_codes=True,
                billing_address_collection="auto",
            )
        except stripe.StripeError as e:
            raise _external_error("checkout session", e)

        logger.info(
            f"Created checkout session {session['id']}",
            extra={"organization_id": str(organization.id), "plan": plan.id},
        )
        return {"session_id": session["id"], "url": session["url"]}

    @staticmethod
    def create_portal_session(organization: Organization, return_url: str | None = None) -> str:
        if not organization.stripe_customer_id:
            raise ValidationError("Organization has no billing account", code="NO_CUSTOMER")
        configure_stripe()
        try:
            session = stripe.billing_portal.Session.create(
                customer=organization.stripe_customer_id,
                return_url=return_url or f"{get_settings().APP_URL}/billing",
            )
        except stripe.StripeError as e:
            raise _external_error("portal session", e)
        return session["url"]

    @staticmethod
    def get_subscription(subscription_id: str) -> Any:
        configure_stripe()
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _external_error("subscription lookup", e)

    @staticmethod
    def change_plan(organization: Organization, new_plan_id: str, repo: InboxRepository) -> dict[str, Any]:
        """
        Move an active subscription to another plan with proration.

        Downgrades are refused while current usage exceeds the new plan's limits.
        """
        if not organization.stripe_subscription_id:
            raise ValidationError("Organization has no active subscription", code="NO_SUBSCRIPTION")
        new_plan = get_plan(new_plan_id)
        if new_plan.id == organization.subscription_tier:
            raise ValidationError(f"Already on the {new_plan.name} plan")

        upgrade = is_upgrade(organization.subscription_tier, new_plan.id)
        if not upgrade:
            violations = usage_violations(
                new_plan,
                seats=repo.count_members(organization.id),
                contacts=repo.count_contacts(organization.id),
                messages=organization.messages_sent_this_month or 0,
            )
            if violations:
                raise ValidationError(
                    f"Current usage exceeds the {new_plan.name} plan limits",
                    code="DOWNGRADE_BLOCKED",
                    details={"violations": violations},
                )

        subscription = StripeService.get_subscription(organization.stripe_subscription_id)
        try:
            item_id = subscription["items"]["data"][0]["id"]
            updated = stripe.Subscription.modify(
                organization.stripe_subscription_id,
                items=[{"id": item_id, "price": new_plan.stripe_price_id}],
                proration_behavior="create_prorations" if upgrade else "none",
                metadata={"organizationId": str(organization.id), "planId": new_plan.id},
            )
        except stripe.StripeError as e:
            raise _external_error("plan change", e)

        organization.subscription_tier = new_plan.id
        logger.info(
            f"Changed plan {('upgrade' if upgrade else 'downgrade')} to {new_plan.id}",
            extra={"organization_id": str(organization.id)},
        )
        return {"plan": new_plan.id, "upgrade": upgrade, "status": stripe_field(updated, "status")}

    @staticmethod
    def cancel_subscription(organization: Organization, at_period_end: bool = True) -> dict[str, Any]:
        if not organization.stripe_subscription_id:
            raise ValidationError("Organization has no active subscription", code="NO_SUBSCRIPTION")
        configure_stripe()
        try:
            if at_period_end:
                subscription = stripe.Subscription.modify(
                    organization.stripe_subscription_id, cancel_at_period_end=True
                )
            else:
                subscription = stripe.Subscription.cancel(organization.stripe_subscription_id)
        except stripe.StripeError as e:
            raise _external_error("subscription cancellation", e)

        organization.cancel_at_period_end = at_period_end
        if not at_period_end:
            organization.subscription_status = "cancelled"
        logger.info(
            f"Cancelled subscription {organization.stripe_subscription_id}",
            extra={"organization_id": str(organization.id), "at_period_end": at_period_end},
        )
        return {"status": stripe_field(subscription, "status"), "cancel_at_period_end": at_period_end}

    @staticmethod
    def resume_subscription(organization: Organization) -> dict[str, Any]:
        if not organization.stripe_subscription_id or not organization.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled for cancellation")
        configure_stripe()
        try:
            subscription = stripe.Subscription.modify(
                organization.stripe_subscription_id, cancel_at_period_end=False
            )
        except stripe.StripeError as e:
            raise _external_error("subscription resume", e)

        organization.cancel_at_period_end = False
        return {"status": stripe_field(subscription, "status"), "cancel_at_period_end": False}

    @staticmethod
    def construct_event(payload: bytes, signature: str | None) -> Any:
        """
        Verify a Stripe webhook signature and construct the event.

        Raises:
            ValidationError: If the signature or payload is invalid
        """
        secret = get_settings().STRIPE_WEBHOOK_SECRET
        if not secret:
            raise ExternalServiceError("Stripe webhook secret is not configured", code="STRIPE_NOT_CONFIGURED")
        if not signature:
            raise ValidationError("Missing Stripe signature", code="INVALID_SIGNATURE")
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError:
            logger.warning("Stripe webhook signature verification failed")
            raise ValidationError("Invalid Stripe signature", code="INVALID_SIGNATURE")
        except ValueError:
            raise ValidationError("Invalid Stripe payload", code="INVALID_PAYLOAD")
