"""
Inbox Persistence

SQLAlchemy models and repositories for the inbox and billing tables.
"""

from inbox.persistence.billing_models import (
    Invoice,
    PaymentIntent,
    Refund,
    RefundHistory,
    WebhookEvent,
)
from inbox.persistence.billing_repo import BillingRepository
from inbox.persistence.models import (
    Contact,
    Conversation,
    ConversationPriority,
    ConversationStatus,
    Message,
    MessageDirection,
    MessageStatus,
    MessageTemplate,
    Organization,
    Profile,
    Role,
    SenderType,
    SubscriptionStatus,
    SubscriptionTier,
    TeamInvitation,
)
from inbox.persistence.repo import InboxRepository

__all__ = [
    "BillingRepository",
    "Contact",
    "Conversation",
    "ConversationPriority",
    "ConversationStatus",
    "InboxRepository",
    "Invoice",
    "Message",
    "MessageDirection",
    "MessageStatus",
    "MessageTemplate",
    "Organization",
    "PaymentIntent",
    "Profile",
    "Refund",
    "RefundHistory",
    "Role",
    "SenderType",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TeamInvitation",
    "WebhookEvent",
]
