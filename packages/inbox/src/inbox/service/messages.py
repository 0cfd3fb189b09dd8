"""
Message Service

Agent replies and system messages. Messages are stored as pending outbound
rows and queued on the outbound stream; the worker sends them.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.contracts.payloads import OutboundMessagePayload
from inbox.persistence.models import (
    Contact,
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    MessageStatus,
    Organization,
    SenderType,
)
from inbox.persistence.repo import InboxRepository
from inbox.providers.base import MessageType
from inbox.service.templates import render_template
from inbox.streams.producer import InboxStreamProducer
from inboxcore.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4096


class MessageService:
    def __init__(self, db: Session, producer: InboxStreamProducer):
        self.db = db
        self.repo = InboxRepository(db)
        self.producer = producer

    def _check_recipient(self, conversation: Conversation, contact: Contact) -> None:
        if conversation.status == ConversationStatus.CLOSED.value:
            raise ValidationError("Conversation is closed", code="CONVERSATION_CLOSED")
        if contact.is_blocked:
            raise ValidationError("Contact is blocked", code="CONTACT_BLOCKED")
        if contact.opted_out_at is not None:
            raise ValidationError("Contact has opted out of messages", code="CONTACT_OPTED_OUT")

    def create_outbound(
        self,
        organization_id: UUID,
        conversation: Conversation,
        contact: Contact,
        text: str | None,
        sender_type: SenderType = SenderType.AGENT,
        sender_id: UUID | None = None,
        template_name: str | None = None,
        template_language: str = "en",
        template_variables: dict[str, str] | None = None,
        reply_to_message_id: str | None = None,
    ) -> tuple[Message, OutboundMessagePayload]:
        """
        Store a pending outbound message without committing.

        Returns the row and the payload to queue once the transaction commits.
        """
        message_type = MessageType.TEMPLATE if template_name else MessageType.TEXT
        message = self.repo.create_message(
            organization_id=organization_id,
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            sender_type=sender_type,
            sender_id=sender_id,
            message_type=message_type.value,
            content=text,
            template_name=template_name,
            status=MessageStatus.PENDING,
        )
        self.db.flush()

        now = datetime.utcnow()
        conversation.last_message_at = now
        if sender_type == SenderType.AGENT and conversation.first_response_at is None:
            conversation.first_response_at = now

        payload = OutboundMessagePayload(
            message_id=message.id,
            conversation_id=conversation.id,
            to_phone=contact.whatsapp_id,
            message_type=message_type,
            text=text,
            template_name=template_name,
            template_language=template_language,
            template_variables=template_variables or {},
            reply_to_message_id=reply_to_message_id,
        )
        return message, payload

    def enqueue(self, organization_id: UUID, payload: OutboundMessagePayload) -> str:
        return self.producer.publish_outbound(
            organization_id=organization_id,
            payload=payload.model_dump(mode="json"),
        )

    def prepare_content(
        self,
        organization_id: UUID,
        text: str | None = None,
        template_id: UUID | None = None,
        variables: dict[str, Any] | None = None,
    ) -> tuple[str, str | None, str, dict[str, str]]:
        """
        Resolve free text or a stored template into what gets sent.

        Templates bound to an approved WhatsApp template are sent as template
        messages; others are rendered and sent as text.

        Returns:
            (text, template_name, template_language, template_variables)
        """
        template_name = None
        template_language = "en"
        template_variables: dict[str, str] = {}

        if template_id:
            template = self.repo.get_template(organization_id, template_id)
            if not template:
                raise NotFoundError("Template not found")
            if not template.is_active:
                raise ValidationError("Template is inactive", code="TEMPLATE_INACTIVE")
            text = render_template(template.content, variables or {})
            if template.whatsapp_template_name:
                template_name = template.whatsapp_template_name
                template_language = template.language
                template_variables = {
                    name: str((variables or {})[name]) for name in template.variables or []
                }

        if not text or not text.strip():
            raise ValidationError("Message text is required")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationError(
                f"Message exceeds {MAX_TEXT_LENGTH} characters",
                code="MESSAGE_TOO_LONG",
            )
        return text, template_name, template_language, template_variables

    def send_message(
        self,
        organization: Organization,
        conversation_id: UUID,
        sender_id: UUID,
        text: str | None = None,
        template_id: UUID | None = None,
        variables: dict[str, Any] | None = None,
    ) -> Message:
        """Send an agent reply: either free text or a stored template."""
        conversation = self.repo.get_conversation(organization.id, conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        contact = self.repo.get_contact(organization.id, conversation.contact_id)
        if not contact:
            raise NotFoundError("Contact not found")

        self._check_recipient(conversation, contact)
        text, template_name, template_language, template_variables = self.prepare_content(
            organization.id, text, template_id, variables
        )

        message, payload = self.create_outbound(
            organization.id,
            conversation,
            contact,
            text,
            sender_type=SenderType.AGENT,
            sender_id=sender_id,
            template_name=template_name,
            template_language=template_language,
            template_variables=template_variables,
        )
        self.db.commit()

        self.enqueue(organization.id, payload)

        logger.info(
            "Queued outbound message",
            extra={
                "organization_id": str(organization.id),
                "conversation_id": str(conversation.id),
                "message_id": str(message.id),
            },
        )
        return message
