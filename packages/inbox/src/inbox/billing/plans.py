"""
Subscription Plans

starter < professional < enterprise. Limits of None mean unlimited.
Stripe price ids come from settings so each environment can use its own prices.
"""

from dataclasses import dataclass, field

from inboxcore.errors import ValidationError
from inboxcore.settings import get_settings


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    description: str
    price_cents: int
    rank: int
    message_limit: int | None
    seat_limit: int | None
    contact_limit: int | None
    features: list[str] = field(default_factory=list)
    interval: str = "month"

    @property
    def stripe_price_id(self) -> str:
        return getattr(get_settings(), f"STRIPE_{self.id.upper()}_PRICE_ID")


PLANS: dict[str, Plan] = {
    "starter": Plan(
        id="starter",
        name="Starter",
        description="Perfect for small businesses",
        price_cents=2900,
        rank=1,
        message_limit=1000,
        seat_limit=3,
        contact_limit=1000,
        features=[
            "1,000 messages/month",
            "3 team members",
            "Basic automation",
            "Standard support",
            "WhatsApp integration",
        ],
    ),
    "professional": Plan(
        id="professional",
        name="Professional",
        description="For growing teams",
        price_cents=7900,
        rank=2,
        message_limit=10000,
        seat_limit=10,
        contact_limit=10000,
        features=[
            "10,000 messages/month",
            "10 team members",
            "Advanced automation",
            "Priority support",
            "Analytics & reports",
            "Custom templates",
        ],
    ),
    "enterprise": Plan(
        id="enterprise",
        name="Enterprise",
        description="For large organizations",
        price_cents=19900,
        rank=3,
        message_limit=None,
        seat_limit=None,
        contact_limit=None,
        features=[
            "Unlimited messages",
            "Unlimited team members",
            "Custom automation",
            "24/7 phone support",
            "Advanced analytics",
            "Custom integrations",
        ],
    ),
}


def get_plan(plan_id: str) -> Plan:
    plan = PLANS.get(plan_id)
    if plan is None:
        raise ValidationError(f"Unknown plan: {plan_id}", code="INVALID_PLAN")
    return plan


def get_all_plans() -> list[Plan]:
    return sorted(PLANS.values(), key=lambda p: p.rank)


def plan_from_price_id(price_id: str | None) -> Plan | None:
    if not price_id:
        return None
    for plan in PLANS.values():
        if plan.stripe_price_id and plan.stripe_price_id == price_id:
            return plan
    return None


def is_upgrade(current_plan_id: str, new_plan_id: str) -> bool:
    return get_plan(new_plan_id).rank > get_plan(current_plan_id).rank


def usage_violations(plan: Plan, seats: int, contacts: int, messages: int) -> list[str]:
    """Limits the current usage would exceed on a plan (checked before downgrades)."""
    violations = []
    if plan.seat_limit is not None and seats > plan.seat_limit:
        violations.append(f"Users ({seats}/{plan.seat_limit})")
    if plan.contact_limit is not None and contacts > plan.contact_limit:
        violations.append(f"Contacts ({contacts}/{plan.contact_limit})")
    if plan.message_limit is not None and messages > plan.message_limit:
        violations.append(f"Messages ({messages}/{plan.message_limit})")
    return violations
