"""
Conversation Service

Listing, assignment, status and priority changes for inbox conversations.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.persistence.models import (
    Contact,
    Conversation,
    ConversationPriority,
    ConversationStatus,
    Message,
)
from inbox.persistence.repo import InboxRepository
from inbox.security.auth import UserClaims
from inboxcore.errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    ConversationStatus.OPEN.value: {
        ConversationStatus.PENDING.value,
        ConversationStatus.RESOLVED.value,
        ConversationStatus.CLOSED.value,
    },
    ConversationStatus.PENDING.value: {
        ConversationStatus.OPEN.value,
        ConversationStatus.RESOLVED.value,
        ConversationStatus.CLOSED.value,
    },
    ConversationStatus.RESOLVED.value: {
        ConversationStatus.OPEN.value,
        ConversationStatus.CLOSED.value,
    },
    ConversationStatus.CLOSED.value: {
        ConversationStatus.OPEN.value,
    },
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


class ConversationService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = InboxRepository(db)

    def list_conversations(
        self,
        organization_id: UUID,
        status: str | None = None,
        assigned_to: UUID | None = None,
        priority: str | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[Conversation, Contact]]:
        if status and status not in ALLOWED_TRANSITIONS:
            raise ValidationError(f"Invalid status filter: {status}")
        return self.repo.list_conversations(
            organization_id,
            status=status,
            assigned_to=assigned_to,
            priority=priority,
            search=search,
            limit=min(limit, 100),
            offset=offset,
        )

    def get_conversation(self, organization_id: UUID, conversation_id: UUID) -> Conversation:
        conversation = self.repo.get_conversation(organization_id, conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    def get_with_messages(
        self,
        organization_id: UUID,
        conversation_id: UUID,
        limit: int = 100,
        before: datetime | None = None,
    ) -> tuple[Conversation, Contact | None, list[Message]]:
        conversation = self.get_conversation(organization_id, conversation_id)
        contact = self.repo.get_contact(organization_id, conversation.contact_id)
        messages = self.repo.list_messages(organization_id, conversation_id, limit=limit, before=before)
        return conversation, contact, messages

    def assign(
        self,
        organization_id: UUID,
        conversation_id: UUID,
        assignee_id: UUID | None,
        actor: UserClaims,
    ) -> Conversation:
        """
        Assign a conversation to a member, or unassign with None.

        Agents may only assign conversations to themselves.
        """
        conversation = self.get_conversation(organization_id, conversation_id)

        if actor.role == "agent" and assignee_id not in (None, actor.id):
            raise PermissionDeniedError("Agents can only assign conversations to themselves")
        if actor.role == "agent" and assignee_id is None and conversation.assigned_to not in (None, actor.id):
            raise PermissionDeniedError("Agents can only unassign their own conversations")

        if assignee_id is not None:
            member = self.repo.get_member(organization_id, assignee_id)
            if not member:
                raise ValidationError("Assignee is not an active member of this organization")
            if member.role == "viewer":
                raise ValidationError("Viewers cannot be assigned conversations")

        conversation.assigned_to = assignee_id
        self.db.commit()

        logger.info(
            "Conversation assigned",
            extra={
                "organization_id": str(organization_id),
                "conversation_id": str(conversation_id),
                "assigned_to": str(assignee_id) if assignee_id else None,
                "actor": str(actor.id),
            },
        )
        return conversation

    def update_status(self, organization_id: UUID, conversation_id: UUID, status: str) -> Conversation:
        conversation = self.get_conversation(organization_id, conversation_id)

        if status not in ALLOWED_TRANSITIONS:
            raise ValidationError(f"Invalid status: {status}")
        if not can_transition(conversation.status, status):
            raise ValidationError(
                f"Cannot change conversation from {conversation.status} to {status}",
                code="INVALID_STATUS_TRANSITION",
                details={"from": conversation.status, "to": status},
            )

        previous = conversation.status
        conversation.status = status
        if status == ConversationStatus.RESOLVED.value:
            conversation.resolved_at = datetime.utcnow()
        elif status == ConversationStatus.OPEN.value:
            conversation.resolved_at = None

        self.db.commit()
        logger.info(
            f"Conversation status {previous} -> {status}",
            extra={"organization_id": str(organization_id), "conversation_id": str(conversation_id)},
        )
        return conversation

    def set_priority(self, organization_id: UUID, conversation_id: UUID, priority: str) -> Conversation:
        try:
            priority = ConversationPriority(priority).value
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority}")

        conversation = self.get_conversation(organization_id, conversation_id)
        conversation.priority = priority
        self.db.commit()
        return conversation

    def mark_read(self, organization_id: UUID, conversation_id: UUID) -> dict[str, Any]:
        conversation = self.get_conversation(organization_id, conversation_id)
        updated = self.repo.mark_conversation_messages_read(organization_id, conversation_id)
        conversation.unread_count = 0
        self.db.commit()
        return {"conversation_id": str(conversation_id), "messages_marked": updated}
