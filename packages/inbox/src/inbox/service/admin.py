"""
Admin Service

Platform administration for super admins: organizations, webhook events and
platform statistics.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.billing.plans import PLANS
from inbox.billing.webhook_processor import WebhookProcessor
from inbox.persistence.billing_models import WebhookEvent
from inbox.persistence.billing_repo import BillingRepository
from inbox.persistence.models import Organization, SubscriptionStatus, SubscriptionTier
from inbox.persistence.repo import InboxRepository
from inbox.security.auth import UserClaims
from inboxcore.errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "subscription_tier", "subscription_status", "is_active"}


def require_super_admin(actor: UserClaims) -> None:
    if not actor.is_super_admin:
        raise PermissionDeniedError("Super admin access required")


class AdminService:
    def __init__(self, db: Session, actor: UserClaims):
        require_super_admin(actor)
        self.db = db
        self.actor = actor
        self.repo = InboxRepository(db)
        self.billing_repo = BillingRepository(db)

    def list_organizations(
        self,
        search: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Organization]:
        return self.repo.list_organizations(search=search, status=status, limit=min(limit, 200), offset=offset)

    def _get(self, organization_id: UUID) -> Organization:
        organization = self.repo.get_organization(organization_id)
        if not organization:
            raise NotFoundError("Organization not found")
        return organization

    def get_organization(self, organization_id: UUID) -> dict[str, Any]:
        organization = self._get(organization_id)
        plan = PLANS.get(organization.subscription_tier)
        return {
            "organization": organization,
            "member_count": self.repo.count_members(organization_id),
            "usage": {
                "contacts": self.repo.count_contacts(organization_id),
                "conversations": self.repo.count_conversations(organization_id),
                "open_conversations": self.repo.count_conversations(organization_id, status="open"),
                "messages_sent_this_month": organization.messages_sent_this_month,
                "message_limit": plan.message_limit if plan else None,
            },
        }

    def update_organization(self, organization_id: UUID, **changes: Any) -> Organization:
        organization = self._get(organization_id)

        tier = changes.get("subscription_tier")
        if tier is not None and tier not in {t.value for t in SubscriptionTier}:
            raise ValidationError(f"Invalid subscription tier: {tier}")
        status = changes.get("subscription_status")
        if status is not None and status not in {s.value for s in SubscriptionStatus}:
            raise ValidationError(f"Invalid subscription status: {status}")

        applied = {}
        for field, value in changes.items():
            if field in UPDATABLE_FIELDS and value is not None:
                setattr(organization, field, value)
                applied[field] = value
        self.db.commit()

        logger.info(
            "Organization updated by admin",
            extra={"organization_id": str(organization_id), "changes": applied, "admin_id": str(self.actor.id)},
        )
        return organization

    def suspend(self, organization_id: UUID, reason: str | None = None) -> Organization:
        organization = self._get(organization_id)
        organization.is_active = False
        self.db.commit()
        logger.warning(
            f"Organization suspended: {reason or 'no reason given'}",
            extra={"organization_id": str(organization_id), "admin_id": str(self.actor.id)},
        )
        return organization

    def reactivate(self, organization_id: UUID) -> Organization:
        organization = self._get(organization_id)
        organization.is_active = True
        self.db.commit()
        logger.info(
            "Organization reactivated",
            extra={"organization_id": str(organization_id), "admin_id": str(self.actor.id)},
        )
        return organization

    def list_webhook_events(
        self,
        status: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        return self.billing_repo.list_webhook_events(status=status, event_type=event_type, limit=limit, offset=offset)

    def retry_webhook_event(self, event_id: UUID) -> dict[str, Any]:
        return WebhookProcessor(self.db).retry_failed(event_id)

    def platform_stats(self) -> dict[str, Any]:
        by_tier = self.repo.count_organizations_by("subscription_tier")
        by_status = self.repo.count_organizations_by("subscription_status")

        # MRR counts paying organizations only
        active_by_tier: dict[str, int] = {}
        for organization in self.repo.list_organizations(status=SubscriptionStatus.ACTIVE.value, limit=100_000):
            if organization.is_active:
                active_by_tier[organization.subscription_tier] = active_by_tier.get(organization.subscription_tier, 0) + 1

        mrr_cents = sum(PLANS[tier].price_cents * count for tier, count in active_by_tier.items() if tier in PLANS)

        return {
            "organizations": {
                "total": sum(by_status.values()),
                "by_tier": by_tier,
                "by_status": by_status,
            },
            "mrr_cents": mrr_cents,
            "webhooks": WebhookProcessor(self.db).get_statistics(),
        }
