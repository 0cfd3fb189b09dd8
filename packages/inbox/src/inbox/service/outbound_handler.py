"""
Outbound Message Handler

Processes events from the outbound stream:
1. Loads the pending message row
2. Enforces the plan's monthly message limit
3. Loads the organization's decrypted credentials
4. Sends through the provider
5. Marks the message sent, or leaves it for retry, or dead-letters it
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

from inbox.billing.plans import PLANS
from inbox.contracts.envelope import InboxEnvelope
from inbox.contracts.payloads import OutboundMessagePayload
from inbox.persistence.models import Message, MessageStatus, Organization
from inbox.persistence.repo import InboxRepository
from inbox.providers import get_provider
from inbox.providers.base import MessageType, ProviderResponse, WhatsAppProvider
from inbox.routing.organization_resolver import OrganizationResolver, SendingCredentials
from inbox.streams.producer import InboxStreamProducer
from inboxcore.db import set_tenant_context

logger = logging.getLogger(__name__)

# Attempts before an event goes to the DLQ
MAX_RETRIES = 3


def monthly_limit_reached(organization: Organization) -> bool:
    plan = PLANS.get(organization.subscription_tier)
    if plan is None or plan.message_limit is None:
        return False
    return (organization.messages_sent_this_month or 0) >= plan.message_limit


class OutboundHandler:
    """Sends queued outbound messages."""

    def __init__(
        self,
        db: Session,
        producer: InboxStreamProducer,
        provider: WhatsAppProvider | None = None,
        resolver: OrganizationResolver | None = None,
    ):
        self.db = db
        self.repo = InboxRepository(db)
        self.producer = producer
        self.provider = provider or get_provider()
        self.resolver = resolver or OrganizationResolver(db)

    async def handle_envelope(self, envelope: InboxEnvelope) -> dict[str, Any]:
        """
        Process an outbound envelope.

        A result with will_retry=True must be left un-acknowledged so the
        worker reclaims it; every other result can be acknowledged.
        """
        payload = OutboundMessagePayload.model_validate(envelope.payload)
        organization_id = envelope.organization_id
        set_tenant_context(self.db, organization_id)

        message = self.repo.get_message(organization_id, payload.message_id)
        if not message:
            logger.warning(f"Outbound message {payload.message_id} not found, dropping")
            return {"status": "skipped", "reason": "message_not_found"}
        if message.status != MessageStatus.PENDING.value:
            return {"status": "skipped", "reason": "already_sent", "message_id": str(message.id)}

        organization = self.repo.get_organization(organization_id)
        if not organization or not organization.is_active:
            return self._fail(message, "ORGANIZATION_INACTIVE", "Organization is inactive")

        if monthly_limit_reached(organization):
            logger.warning(
                "Monthly message limit reached",
                extra={
                    "organization_id": str(organization_id),
                    "tier": organization.subscription_tier,
                    "sent": organization.messages_sent_this_month,
                },
            )
            return self._fail(message, "MONTHLY_LIMIT_REACHED", "Monthly message limit reached for plan")

        credentials = self.resolver.get_sending_credentials(organization_id)
        if not credentials:
            return self._fail(message, "NO_CREDENTIALS", "WhatsApp is not connected for this organization")

        response = await self._send(credentials, payload)

        if response.success:
            message.whatsapp_message_id = response.message_id
            message.status = MessageStatus.SENT.value
            message.error_code = None
            message.error_message = None
            organization.messages_sent_this_month = (organization.messages_sent_this_month or 0) + 1
            self.db.commit()

            logger.info(
                "Message sent",
                extra={
                    "organization_id": str(organization_id),
                    "message_id": str(message.id),
                    "provider_message_id": response.message_id,
                },
            )
            return {
                "status": "sent",
                "message_id": str(message.id),
                "provider_message_id": response.message_id,
            }

        attempts = envelope.retry_count + 1
        if response.retryable and attempts < MAX_RETRIES:
            message.error_code = response.error_code
            message.error_message = response.error_message
            self.db.commit()
            logger.warning(
                "Message send failed, will retry",
                extra={
                    "event_id": str(envelope.event_id),
                    "attempt": attempts,
                    "error": response.error_message,
                },
            )
            return {"status": "failed", "will_retry": True, "error": response.error_message}

        result = self._fail(message, response.error_code or "SEND_FAILED", response.error_message or "Send failed")
        self.producer.publish_to_dlq(envelope, error=response.error_message or "Send failed", retry_count=attempts)
        return {**result, "sent_to_dlq": True}

    def _fail(self, message: Message, code: str, error: str) -> dict[str, Any]:
        message.status = MessageStatus.FAILED.value
        message.error_code = code
        message.error_message = error
        self.db.commit()
        logger.warning(f"Outbound message {message.id} failed: {error}", extra={"error_code": code})
        return {"status": "failed", "message_id": str(message.id), "error": error, "error_code": code}

    async def _send(self, credentials: SendingCredentials, payload: OutboundMessagePayload) -> ProviderResponse:
        common = {
            "phone_number_id": credentials.phone_number_id,
            "access_token": credentials.access_token,
            "to": payload.to_phone,
        }

        if payload.message_type == MessageType.TEMPLATE and payload.template_name:
            components = None
            if payload.template_variables:
                components = [
                    {
                        "type": "body",
                        "parameters": [
                            {"type": "text", "text": value} for value in payload.template_variables.values()
                        ],
                    }
                ]
            return await self.provider.send_template(
                template_name=payload.template_name,
                language_code=payload.template_language,
                components=components,
                **common,
            )

        if payload.buttons:
            return await self.provider.send_interactive(
                body_text=payload.text or "",
                buttons=payload.buttons,
                reply_to=payload.reply_to_message_id,
                **common,
            )

        return await self.provider.send_text(
            text=payload.text or "",
            reply_to=payload.reply_to_message_id,
            **common,
        )
