"""
API Schemas

Pydantic request and response models for the HTTP API.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Auth
# =============================================================================


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: UUID
    organization_id: UUID | None
    role: str


# =============================================================================
# Contacts
# =============================================================================


class ContactCreate(BaseModel):
    phone_number: str
    name: str | None = None
    email: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None


class ContactUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    tags: list[str] | None = None
    notes: str | None = None


class TagsRequest(BaseModel):
    tags: list[str] = Field(min_length=1)


class BlockRequest(BaseModel):
    blocked: bool


class ContactOut(ORMModel):
    id: UUID
    whatsapp_id: str
    phone_number: str
    name: str | None
    email: str | None
    tags: list[str]
    notes: str | None
    is_blocked: bool
    opted_out_at: datetime | None
    last_message_at: datetime | None
    created_at: datetime


class SegmentCriteria(BaseModel):
    conditions: list[dict[str, Any]] = Field(default_factory=list)


class SegmentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    criteria: SegmentCriteria


class SegmentOut(ORMModel):
    id: UUID
    name: str
    description: str | None
    criteria: dict[str, Any]
    contact_count: int
    created_at: datetime
    updated_at: datetime


class SegmentPreview(BaseModel):
    count: int
    contacts: list[ContactOut]


class SegmentOverview(BaseModel):
    builtin: list[dict[str, Any]]
    tags: list[dict[str, Any]]
    custom: list[SegmentOut]
    summary: dict[str, int]


class BroadcastRequest(BaseModel):
    text: str | None = None
    template_id: UUID | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    segment_id: UUID | None = None
    tags: list[str] | None = None
    contact_ids: list[UUID] | None = None


class BroadcastResult(BaseModel):
    audience: int
    queued: int
    skipped: dict[str, int]


# =============================================================================
# Conversations
# =============================================================================


class MessageOut(ORMModel):
    id: UUID
    conversation_id: UUID
    direction: str
    sender_type: str
    sender_id: UUID | None
    content: str | None
    message_type: str
    media_url: str | None
    template_name: str | None
    status: str
    error_code: str | None
    error_message: str | None
    is_read: bool
    delivered_at: datetime | None
    read_at: datetime | None
    created_at: datetime


class ConversationOut(ORMModel):
    id: UUID
    contact_id: UUID
    assigned_to: UUID | None
    status: str
    priority: str
    subject: str | None
    last_message_at: datetime | None
    unread_count: int
    first_response_at: datetime | None
    resolved_at: datetime | None
    created_at: datetime


class ConversationListItem(BaseModel):
    conversation: ConversationOut
    contact: ContactOut


class ConversationDetail(BaseModel):
    conversation: ConversationOut
    contact: ContactOut | None
    messages: list[MessageOut]


class AssignRequest(BaseModel):
    assignee_id: UUID | None = None


class StatusRequest(BaseModel):
    status: str


class PriorityRequest(BaseModel):
    priority: str


class SendMessageRequest(BaseModel):
    text: str | None = None
    template_id: UUID | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Templates
# =============================================================================


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    content: str
    category: str = "general"
    language: str = "en"
    whatsapp_template_name: str | None = None


class TemplateUpdate(BaseModel):
    name: str | None = None
    content: str | None = None
    category: str | None = None
    language: str | None = None
    is_active: bool | None = None
    whatsapp_template_name: str | None = None


class TemplateOut(ORMModel):
    id: UUID
    name: str
    content: str
    category: str
    language: str
    variables: list[str]
    is_active: bool
    whatsapp_template_name: str | None
    created_at: datetime


class RenderRequest(BaseModel):
    values: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Team
# =============================================================================


class MemberOut(ORMModel):
    id: UUID
    email: str
    full_name: str | None
    role: str
    is_active: bool
    last_seen_at: datetime | None
    created_at: datetime


class InviteRequest(BaseModel):
    email: str
    role: str = "agent"


class InvitationOut(ORMModel):
    id: UUID
    email: str
    role: str
    status: str
    expires_at: datetime
    accepted_at: datetime | None
    created_at: datetime


class InvitationCreated(InvitationOut):
    token: str


class AcceptInvitationRequest(BaseModel):
    token: str
    password: str | None = Field(default=None, min_length=8)
    full_name: str | None = None


class RoleRequest(BaseModel):
    role: str


# =============================================================================
# Billing
# =============================================================================


class PlanOut(BaseModel):
    id: str
    name: str
    description: str
    price_cents: int
    interval: str
    message_limit: int | None
    seat_limit: int | None
    contact_limit: int | None
    features: list[str]


class SubscriptionOut(BaseModel):
    tier: str
    status: str
    trial_ends_at: datetime | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    messages_sent_this_month: int
    message_limit: int | None


class CheckoutRequest(BaseModel):
    plan_id: str
    success_url: str | None = None
    cancel_url: str | None = None


class ChangePlanRequest(BaseModel):
    plan_id: str


class CancelRequest(BaseModel):
    at_period_end: bool = True


class InvoiceOut(ORMModel):
    id: UUID
    stripe_invoice_id: str
    amount_due_cents: int
    amount_paid_cents: int
    currency: str
    status: str
    billing_reason: str | None
    hosted_invoice_url: str | None
    invoice_pdf: str | None
    period_start: datetime | None
    period_end: datetime | None
    paid_at: datetime | None
    created_at: datetime


class PaymentIntentCreate(BaseModel):
    amount_cents: int = Field(gt=0)
    purpose: str
    description: str | None = None
    currency: str = "usd"


class PaymentIntentConfirm(BaseModel):
    payment_method: str | None = None


class RefundCreate(BaseModel):
    organization_id: UUID
    amount_cents: int = Field(gt=0)
    refund_type: str
    reason: str
    reason_details: str | None = None
    currency: str = "usd"
    charge_id: str | None = None
    cancel_subscription: bool = False


class RefundCancel(BaseModel):
    reason: str | None = None


class RefundOut(ORMModel):
    id: UUID
    organization_id: UUID
    stripe_refund_id: str | None
    stripe_charge_id: str | None
    amount_cents: int
    currency: str
    refund_type: str
    status: str
    reason: str
    reason_details: str | None
    cancel_subscription: bool
    requested_at: datetime
    completed_at: datetime | None
    failed_at: datetime | None
    error_message: str | None


class RefundHistoryOut(ORMModel):
    id: UUID
    previous_status: str | None
    new_status: str
    changed_by: UUID | None
    change_reason: str | None
    created_at: datetime


# =============================================================================
# Admin
# =============================================================================


class OrganizationOut(ORMModel):
    id: UUID
    name: str
    slug: str
    is_active: bool
    whatsapp_phone_number_id: str | None
    whatsapp_display_number: str | None
    subscription_status: str
    subscription_tier: str
    trial_ends_at: datetime | None
    current_period_end: datetime | None
    messages_sent_this_month: int
    created_at: datetime


class OrganizationUpdate(BaseModel):
    name: str | None = None
    subscription_tier: str | None = None
    subscription_status: str | None = None
    is_active: bool | None = None


class SuspendRequest(BaseModel):
    reason: str | None = None


class WebhookEventOut(ORMModel):
    id: UUID
    stripe_event_id: str
    event_type: str
    status: str
    retry_count: int
    max_retries: int
    received_at: datetime
    processed_at: datetime | None
    failed_at: datetime | None
    error_message: str | None
    processing_duration_ms: int | None
