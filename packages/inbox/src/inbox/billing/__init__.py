"""
Billing

Plans, Stripe subscriptions, webhook processing, refunds, payment intents
and invoices.
"""

from inbox.billing.plans import PLANS, Plan, get_all_plans, get_plan, is_upgrade, plan_from_price_id
from inbox.billing.stripe_service import StripeService

__all__ = [
    "PLANS",
    "Plan",
    "StripeService",
    "get_all_plans",
    "get_plan",
    "is_upgrade",
    "plan_from_price_id",
]
