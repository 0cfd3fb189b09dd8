"""
Inbox Database Models

Tables:
- organizations: Tenants, with their WhatsApp binding and subscription state
- profiles: Organization members (agents, admins, owners)
- contacts: WhatsApp customers of an organization
- conversations: One thread per contact, assigned to agents
- messages: Inbound and outbound WhatsApp messages
- message_templates: Reusable canned replies with {{variables}}
- team_invitations: Pending invitations to join an organization
- contact_segments: Saved contact audiences used for broadcasts

Every tenant-scoped table carries organization_id; row-level security policies
on that column are installed by the migrations.
"""

from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID

from inboxcore.db import Base

DEFAULT_TRIAL_DAYS = 14


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"


class SubscriptionTier(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    OWNER = "owner"
    ADMIN = "admin"
    AGENT = "agent"
    VIEWER = "viewer"


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ConversationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SenderType(str, Enum):
    CONTACT = "contact"
    AGENT = "agent"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REVOKED = "revoked"
    EXPIRED = "expired"


def _trial_end() -> datetime:
    return datetime.utcnow() + timedelta(days=DEFAULT_TRIAL_DAYS)


class TimestampMixin:
    """Primary key and timestamps shared by all models."""

    id = Column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class TenantMixin(TimestampMixin):
    """Common fields for organization-scoped models."""

    organization_id = Column(
        PGUUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


class Organization(Base, TimestampMixin):
    """
    A tenant of the inbox.

    whatsapp_phone_number_id routes incoming webhooks to the organization.
    The WhatsApp access token is stored encrypted (see inboxcore.crypto).
    """

    __tablename__ = "organizations"

    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # WhatsApp Cloud API binding
    whatsapp_business_account_id = Column(String(100), nullable=True)
    whatsapp_phone_number_id = Column(String(100), nullable=True)
    whatsapp_display_number = Column(String(20), nullable=True)
    whatsapp_access_token_encrypted = Column(Text, nullable=True)
    webhook_verify_token = Column(String(100), nullable=True)

    # Billing
    stripe_customer_id = Column(String(100), nullable=True)
    stripe_subscription_id = Column(String(100), nullable=True)
    subscription_status = Column(String(20), nullable=False, default=SubscriptionStatus.TRIAL.value)
    subscription_tier = Column(String(20), nullable=False, default=SubscriptionTier.STARTER.value)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True, default=_trial_end)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    messages_sent_this_month = Column(Integer, nullable=False, default=0)

    settings = Column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("slug", name="uq_organizations_slug"),
        UniqueConstraint("whatsapp_phone_number_id", name="uq_organizations_phone_number_id"),
        UniqueConstraint("stripe_customer_id", name="uq_organizations_stripe_customer"),
        Index("idx_organizations_subscription", "subscription_status", "subscription_tier"),
    )


class Profile(Base, TimestampMixin):
    """A user. Super admins may have no organization."""

    __tablename__ = "profiles"

    organization_id = Column(
        PGUUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    email = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=Role.AGENT.value)
    password_hash = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("email", name="uq_profiles_email"),
        Index("idx_profiles_org_role", "organization_id", "role"),
    )


class Contact(Base, TenantMixin):
    """A WhatsApp customer, identified by whatsapp_id (digits of the phone number)."""

    __tablename__ = "contacts"

    whatsapp_id = Column(String(32), nullable=False)
    phone_number = Column(String(32), nullable=False)  # E.164
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    tags = Column(ARRAY(String(50)), nullable=False, default=list)
    notes = Column(Text, nullable=True)
    is_blocked = Column(Boolean, nullable=False, default=False)
    opted_out_at = Column(DateTime(timezone=True), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("organization_id", "whatsapp_id", name="uq_contacts_org_whatsapp_id"),
        Index("idx_contacts_org_last_message", "organization_id", "last_message_at"),
    )


class Conversation(Base, TenantMixin):
    """A conversation thread with a contact."""

    __tablename__ = "conversations"

    contact_id = Column(
        PGUUID(as_uuid=True), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assigned_to = Column(
        PGUUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status = Column(String(20), nullable=False, default=ConversationStatus.OPEN.value)
    priority = Column(String(20), nullable=False, default=ConversationPriority.MEDIUM.value)
    subject = Column(String(255), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    first_response_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_conversations_org_status", "organization_id", "status"),
        Index("idx_conversations_org_last_message", "organization_id", "last_message_at"),
    )


class Message(Base, TenantMixin):
    """
    A WhatsApp message.

    whatsapp_message_id is the provider id and the idempotency key for webhooks.
    """

    __tablename__ = "messages"

    conversation_id = Column(
        PGUUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    whatsapp_message_id = Column(String(128), nullable=True)
    direction = Column(String(10), nullable=False)
    sender_type = Column(String(10), nullable=False)
    sender_id = Column(PGUUID(as_uuid=True), nullable=True)  # profile id for agents
    content = Column(Text, nullable=True)
    message_type = Column(String(20), nullable=False, default="text")
    media_url = Column(Text, nullable=True)
    media_mime_type = Column(String(100), nullable=True)
    template_name = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    raw_payload = Column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("whatsapp_message_id", name="uq_messages_whatsapp_message_id"),
        Index("idx_messages_org_conversation", "organization_id", "conversation_id", "created_at"),
        Index("idx_messages_org_direction_created", "organization_id", "direction", "created_at"),
    )


class MessageTemplate(Base, TenantMixin):
    """A canned reply. content uses {{variable}} placeholders."""

    __tablename__ = "message_templates"

    name = Column(String(100), nullable=False)
    content = Column(Text, nullable=False)
    category = Column(String(50), nullable=False, default="general")
    language = Column(String(10), nullable=False, default="en")
    variables = Column(ARRAY(String(50)), nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(PGUUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    whatsapp_template_name = Column(String(100), nullable=True)  # Meta approved template

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_message_templates_org_name"),
    )


class TeamInvitation(Base, TenantMixin):
    """An invitation for an email address to join an organization."""

    __tablename__ = "team_invitations"

    email = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=Role.AGENT.value)
    token = Column(String(100), nullable=False)
    invited_by = Column(PGUUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default=InvitationStatus.PENDING.value)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("token", name="uq_team_invitations_token"),
        Index("idx_team_invitations_org_email", "organization_id", "email"),
    )


class ContactSegment(Base, TenantMixin):
    """
    A saved audience. criteria is {"conditions": [{"field", "operator", "value"}]},
    all conditions must match. contact_count is refreshed when the segment is
    saved or listed.
    """

    __tablename__ = "contact_segments"

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    criteria = Column(JSONB, nullable=False, default=dict)
    contact_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(PGUUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_contact_segments_org_name"),
    )
