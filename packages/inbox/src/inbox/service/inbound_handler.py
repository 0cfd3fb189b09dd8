"""
Inbound Message Handler

Processes events from the inbound stream:
1. Idempotency check on the provider message id
2. Contact upsert
3. Get, re-open or create the conversation
4. Persist the message
5. Run automation (opt-out/opt-in, human request, welcome)
6. Queue auto-replies after commit

Delivery status events update the stored outbound message.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inbox.contracts.envelope import InboxEnvelope
from inbox.contracts.event_types import InboxEventType
from inbox.contracts.payloads import DeliveryStatusPayload, InboundMessagePayload, OutboundMessagePayload
from inbox.persistence.models import (
    Contact,
    Conversation,
    ConversationPriority,
    ConversationStatus,
    MessageDirection,
    MessageStatus,
    Organization,
    SenderType,
)
from inbox.persistence.repo import InboxRepository
from inbox.providers.base import DeliveryState, MessageType
from inbox.service.automation import AutomationEngine, AutoReplyType, DetectionResult, Intent
from inbox.service.messages import MessageService
from inbox.streams.producer import InboxStreamProducer
from inboxcore.db import set_tenant_context

logger = logging.getLogger(__name__)

# Stored message_type for each provider type
STORED_MESSAGE_TYPES: dict[MessageType, str] = {
    MessageType.TEXT: "text",
    MessageType.IMAGE: "image",
    MessageType.STICKER: "image",
    MessageType.DOCUMENT: "document",
    MessageType.AUDIO: "audio",
    MessageType.VIDEO: "video",
    MessageType.LOCATION: "location",
    MessageType.TEMPLATE: "template",
    MessageType.INTERACTIVE: "interactive",
    MessageType.BUTTON: "interactive",
}

# Delivery states only move forward; failed is terminal
STATUS_RANK: dict[str, int] = {
    MessageStatus.PENDING.value: 0,
    MessageStatus.SENT.value: 1,
    MessageStatus.DELIVERED.value: 2,
    MessageStatus.READ.value: 3,
}

REOPEN_STATUSES = {ConversationStatus.RESOLVED.value, ConversationStatus.CLOSED.value}


def should_apply_status(current: str, new: str) -> bool:
    """Whether a delivery status update may replace the current status."""
    if current == MessageStatus.FAILED.value:
        return False
    if new == MessageStatus.FAILED.value:
        return current in (MessageStatus.PENDING.value, MessageStatus.SENT.value)
    return STATUS_RANK.get(new, -1) > STATUS_RANK.get(current, -1)


class InboundHandler:
    """Handles events from the inbound stream."""

    def __init__(
        self,
        db: Session,
        producer: InboxStreamProducer,
        automation: AutomationEngine | None = None,
    ):
        self.db = db
        self.repo = InboxRepository(db)
        self.producer = producer
        self.messages = MessageService(db, producer)
        self._automation = automation

    def handle_envelope(self, envelope: InboxEnvelope) -> dict[str, Any]:
        if envelope.event_type == InboxEventType.STATUS_RECEIVED.value:
            return self.handle_delivery_status(
                envelope.organization_id, DeliveryStatusPayload.model_validate(envelope.payload)
            )

        payload = InboundMessagePayload.model_validate(envelope.payload)
        if self.repo.is_message_processed(payload.message_id):
            logger.debug(f"Message {payload.message_id} already processed, skipping")
            return {"status": "skipped", "reason": "already_processed", "message_id": payload.message_id}

        return self.process_message(envelope.organization_id, payload)

    def process_message(self, organization_id: UUID, message: InboundMessagePayload) -> dict[str, Any]:
        result: dict[str, Any] = {
            "message_id": message.message_id,
            "from": message.from_phone,
            "status": "processed",
        }
        auto_replies: list[OutboundMessagePayload] = []

        try:
            set_tenant_context(self.db, organization_id)

            organization = self.repo.get_organization(organization_id)
            if not organization or not organization.is_active:
                logger.warning(f"Dropping message for inactive organization {organization_id}")
                return {**result, "status": "skipped", "reason": "organization_inactive"}

            contact, is_new_contact = self._upsert_contact(organization_id, message)
            if contact.is_blocked:
                logger.info(
                    "Ignoring message from blocked contact",
                    extra={"organization_id": str(organization_id), "contact_id": str(contact.id)},
                )
                self.db.commit()
                return {**result, "status": "skipped", "reason": "contact_blocked"}

            conversation, is_new_conversation = self._get_or_open_conversation(organization_id, contact)

            self.repo.create_message(
                organization_id=organization_id,
                conversation_id=conversation.id,
                direction=MessageDirection.INBOUND,
                sender_type=SenderType.CONTACT,
                message_type=STORED_MESSAGE_TYPES.get(message.message_type, "unknown"),
                content=message.text or message.button_payload,
                whatsapp_message_id=message.message_id,
                status=MessageStatus.DELIVERED,
                media_url=message.media_id,  # provider media id, resolved with get_media_url
                media_mime_type=message.media_mime_type,
                raw_payload=message.raw_payload,
            )
            conversation.last_message_at = message.timestamp
            conversation.unread_count = (conversation.unread_count or 0) + 1

            automation = self._automation or AutomationEngine.for_organization(organization.settings)
            detection = automation.detect(text=message.text, button_payload=message.button_payload)
            result["detection"] = {
                "is_optout": detection.is_optout,
                "is_optin": detection.is_optin,
                "intent": detection.intent.value if detection.intent else None,
            }

            action = self._apply_detection(contact, conversation, detection)
            if action:
                result["action"] = action

            reply_type = automation.should_auto_reply(is_new_contact, detection, organization.settings)
            if reply_type:
                auto_replies.append(
                    self._create_auto_reply(organization, conversation, contact, automation, reply_type, message)
                )
                result["auto_reply"] = reply_type.value

            self.db.commit()

        except IntegrityError:
            # Concurrent delivery of the same webhook message
            self.db.rollback()
            logger.info(f"Message {message.message_id} stored concurrently, skipping")
            return {**result, "status": "skipped", "reason": "already_processed"}
        except Exception:
            # The worker retries or dead-letters the entry
            self.db.rollback()
            raise

        for payload in auto_replies:
            self.messages.enqueue(organization_id, payload)

        result["conversation_id"] = str(conversation.id)
        result["contact_id"] = str(contact.id)
        result["is_new_conversation"] = is_new_conversation
        return result

    def _upsert_contact(self, organization_id: UUID, message: InboundMessagePayload) -> tuple[Contact, bool]:
        contact, created = self.repo.get_or_create_contact(
            organization_id=organization_id,
            whatsapp_id=message.from_phone,
            phone_number=f"+{message.from_phone.lstrip('+')}",
            name=message.contact_name,
        )
        if message.contact_name and contact.name != message.contact_name:
            contact.name = message.contact_name
        contact.last_message_at = message.timestamp
        return contact, created

    def _get_or_open_conversation(self, organization_id: UUID, contact: Contact) -> tuple[Conversation, bool]:
        conversation = self.repo.get_latest_conversation_for_contact(organization_id, contact.id)
        if conversation is None:
            conversation = self.repo.create_conversation(organization_id, contact.id)
            self.db.flush()
            logger.info(
                "Opened new conversation",
                extra={"organization_id": str(organization_id), "contact_id": str(contact.id)},
            )
            return conversation, True

        if conversation.status in REOPEN_STATUSES:
            logger.info(
                f"Re-opening {conversation.status} conversation",
                extra={"organization_id": str(organization_id), "conversation_id": str(conversation.id)},
            )
            conversation.status = ConversationStatus.OPEN.value
            conversation.resolved_at = None
        return conversation, False

    def _apply_detection(
        self,
        contact: Contact,
        conversation: Conversation,
        detection: DetectionResult,
    ) -> str | None:
        if detection.is_optout:
            contact.opted_out_at = datetime.utcnow()
            return "opted_out"

        if detection.is_optin:
            contact.opted_out_at = None
            return "opted_in"

        if detection.intent == Intent.TALK_TO_HUMAN:
            conversation.priority = ConversationPriority.HIGH.value
            conversation.status = ConversationStatus.PENDING.value
            return "human_requested"

        if detection.intent:
            return f"intent_{detection.intent.value}"
        return None

    def _create_auto_reply(
        self,
        organization: Organization,
        conversation: Conversation,
        contact: Contact,
        automation: AutomationEngine,
        reply_type: AutoReplyType,
        message: InboundMessagePayload,
    ) -> OutboundMessagePayload:
        reply = automation.get_auto_reply(reply_type, {"business_name": organization.name})
        _, payload = self.messages.create_outbound(
            organization.id,
            conversation,
            contact,
            reply.text,
            sender_type=SenderType.SYSTEM,
            reply_to_message_id=message.message_id,
        )
        return payload

    def handle_delivery_status(self, organization_id: UUID, status: DeliveryStatusPayload) -> dict[str, Any]:
        """Apply a provider delivery status to the stored outbound message."""
        set_tenant_context(self.db, organization_id)

        message = self.repo.get_message_by_whatsapp_id(status.provider_message_id)
        if not message or message.organization_id != organization_id:
            logger.debug(f"No message found for provider ID: {status.provider_message_id}")
            return {"status": "skipped", "reason": "message_not_found"}

        new_status = status.status.value
        if not should_apply_status(message.status, new_status):
            logger.debug(
                f"Ignoring {new_status} for message in status {message.status}",
                extra={"message_id": str(message.id)},
            )
            return {"status": "skipped", "reason": "stale_status", "current_status": message.status}

        message.status = new_status
        if status.status == DeliveryState.DELIVERED:
            message.delivered_at = status.timestamp
        elif status.status == DeliveryState.READ:
            message.read_at = status.timestamp
            message.delivered_at = message.delivered_at or status.timestamp
        elif status.status == DeliveryState.FAILED:
            message.error_code = status.error_code
            message.error_message = status.error_message
            logger.warning(
                f"Delivery failed for message {message.id}: {status.error_message}",
                extra={"organization_id": str(organization_id), "error_code": status.error_code},
            )

        self.db.commit()
        return {"status": "updated", "message_id": str(message.id), "new_status": new_status}
