"""
Billing routes.

Plans and subscription management for organization owners, payment intents
for one-off charges, and refunds for super admins.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from inbox.billing.invoices import InvoiceService
from inbox.billing.payment_intents import PaymentIntentService
from inbox.billing.plans import get_all_plans, get_plan
from inbox.billing.refunds import RefundRequest, RefundService
from inbox.billing.stripe_service import StripeService
from inbox.persistence.models import Organization
from inbox.persistence.repo import InboxRepository
from inbox.security.auth import UserClaims
from inbox.security.rbac import Action, Resource
from inbox_api.deps import get_current_organization, require_permission, require_super_admin
from inbox_api.schemas import (
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    InvoiceOut,
    PaymentIntentConfirm,
    PaymentIntentCreate,
    PlanOut,
    RefundCancel,
    RefundCreate,
    RefundHistoryOut,
    RefundOut,
    SubscriptionOut,
)
from inboxcore.db import get_db
from inboxcore.errors import NotFoundError

router = APIRouter(prefix="/billing", tags=["billing"])


def _plan_out(plan) -> PlanOut:
    return PlanOut(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        price_cents=plan.price_cents,
        interval=plan.interval,
        message_limit=plan.message_limit,
        seat_limit=plan.seat_limit,
        contact_limit=plan.contact_limit,
        features=list(plan.features),
    )


# =============================================================================
# Plans and subscription
# =============================================================================


@router.get("/plans", response_model=list[PlanOut])
def list_plans():
    return [_plan_out(plan) for plan in get_all_plans()]


@router.get("/subscription", response_model=SubscriptionOut)
def get_subscription(
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.READ)),
    organization: Organization = Depends(get_current_organization),
):
    plan = get_plan(organization.subscription_tier)
    return SubscriptionOut(
        tier=organization.subscription_tier,
        status=organization.subscription_status,
        trial_ends_at=organization.trial_ends_at,
        current_period_start=organization.current_period_start,
        current_period_end=organization.current_period_end,
        cancel_at_period_end=organization.cancel_at_period_end,
        messages_sent_this_month=organization.messages_sent_this_month,
        message_limit=plan.message_limit,
    )


@router.post("/checkout")
def create_checkout(
    body: CheckoutRequest,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    session = StripeService.create_checkout_session(
        organization, body.plan_id, user.email, success_url=body.success_url, cancel_url=body.cancel_url
    )
    db.commit()
    return session


@router.post("/portal")
def create_portal(
    return_url: str | None = None,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
):
    return {"url": StripeService.create_portal_session(organization, return_url=return_url)}


@router.post("/subscription/change-plan")
def change_plan(
    body: ChangePlanRequest,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    result = StripeService.change_plan(organization, body.plan_id, InboxRepository(db))
    db.commit()
    return result


@router.post("/subscription/cancel")
def cancel_subscription(
    body: CancelRequest,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    result = StripeService.cancel_subscription(organization, at_period_end=body.at_period_end)
    db.commit()
    return result


@router.post("/subscription/resume")
def resume_subscription(
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    result = StripeService.resume_subscription(organization)
    db.commit()
    return result


# =============================================================================
# Invoices
# =============================================================================


@router.get("/invoices", response_model=list[InvoiceOut])
def list_invoices(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.READ)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return InvoiceService(db).list_invoices(organization.id, limit=limit, offset=offset)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.READ)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return InvoiceService(db).get_invoice(organization.id, invoice_id)


# =============================================================================
# Payment intents
# =============================================================================


@router.post("/payment-intents", status_code=201)
def create_payment_intent(
    body: PaymentIntentCreate,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    """Returns the client secret; the browser completes any 3DS challenge with Stripe.js."""
    return PaymentIntentService(db).create_payment_intent(
        organization,
        amount_cents=body.amount_cents,
        purpose=body.purpose,
        email=user.email,
        description=body.description,
        currency=body.currency,
    )


@router.get("/payment-intents")
def list_payment_intents(
    limit: int = Query(50, ge=1, le=100),
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.READ)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return [
        {
            "id": str(intent.id),
            "stripe_payment_intent_id": intent.stripe_payment_intent_id,
            "amount_cents": intent.amount_cents,
            "currency": intent.currency,
            "purpose": intent.purpose,
            "status": intent.status,
            "authentication_required": intent.authentication_required,
            "attempt_count": intent.attempt_count,
            "created_at": intent.created_at.isoformat() if intent.created_at else None,
        }
        for intent in PaymentIntentService(db).list_payment_intents(organization.id, limit=limit)
    ]


@router.post("/payment-intents/{payment_intent_id}/confirm")
def confirm_payment_intent(
    payment_intent_id: UUID,
    body: PaymentIntentConfirm,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return PaymentIntentService(db).confirm(organization.id, payment_intent_id, payment_method=body.payment_method)


@router.post("/payment-intents/{payment_intent_id}/cancel")
def cancel_payment_intent(
    payment_intent_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.BILLING, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    intent = PaymentIntentService(db).cancel(organization.id, payment_intent_id)
    return {"id": str(intent.id), "status": intent.status}


# =============================================================================
# Refunds (super admin)
# =============================================================================


@router.post("/refunds", status_code=201)
def process_refund(
    body: RefundCreate,
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    request = RefundRequest(
        organization_id=body.organization_id,
        amount_cents=body.amount_cents,
        refund_type=body.refund_type,
        reason=body.reason,
        reason_details=body.reason_details,
        currency=body.currency,
        charge_id=body.charge_id,
        cancel_subscription=body.cancel_subscription,
    )
    return RefundService(db).process_refund(request, actor=admin)


@router.get("/refunds", response_model=list[RefundOut])
def list_refunds(
    organization_id: UUID | None = None,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return RefundService(db).list_refunds(organization_id=organization_id, status=status, limit=limit, offset=offset)


@router.get("/refunds/statistics")
def refund_statistics(
    organization_id: UUID | None = None,
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return RefundService(db).get_statistics(organization_id)


@router.get("/refunds/eligibility/{organization_id}")
def refund_eligibility(
    organization_id: UUID,
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    organization = InboxRepository(db).get_organization(organization_id)
    if not organization:
        raise NotFoundError("Organization not found")
    eligibility = RefundService(db).check_eligibility(organization)
    return {"eligible": eligibility.eligible, "reasons": eligibility.reasons}


@router.get("/refunds/{refund_id}", response_model=RefundOut)
def get_refund(
    refund_id: UUID,
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return RefundService(db).get_refund(refund_id)


@router.get("/refunds/{refund_id}/history", response_model=list[RefundHistoryOut])
def get_refund_history(
    refund_id: UUID,
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return RefundService(db).get_history(refund_id)


@router.post("/refunds/{refund_id}/approve", response_model=RefundOut)
def approve_refund(
    refund_id: UUID,
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return RefundService(db).approve_refund(refund_id, actor=admin)


@router.post("/refunds/{refund_id}/cancel", response_model=RefundOut)
def cancel_refund(
    refund_id: UUID,
    body: RefundCancel,
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return RefundService(db).cancel_refund(refund_id, actor=admin, reason=body.reason)
