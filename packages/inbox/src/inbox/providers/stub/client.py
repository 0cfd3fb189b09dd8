"""
Stub WhatsApp Provider

Development provider that records sends instead of calling the Cloud API.
Selected with WHATSAPP_PROVIDER=stub.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from inbox.providers.base import (
    DeliveryStatus,
    InboundMessage,
    MessageType,
    ProviderResponse,
    WhatsAppProvider,
)
from inbox.providers.meta_cloud.webhook import parse_webhook_payload

logger = logging.getLogger(__name__)


class StubWhatsAppProvider(WhatsAppProvider):
    """
    Stub provider for development and testing.

    - Records every outbound message in sent_messages
    - Accepts any webhook signature
    - Generates synthetic message IDs
    - Can be told to fail the next sends (fail_next)
    """

    def __init__(self):
        self.sent_messages: list[dict[str, Any]] = []
        self.fail_next = 0

    def _record(self, kind: str, prefix: str, **data: Any) -> ProviderResponse:
        message_id = f"stub_{prefix}_{uuid4().hex[:16]}"
        self.sent_messages.append(
            {"type": kind, "message_id": message_id, "timestamp": datetime.utcnow().isoformat(), **data}
        )
        logger.info(f"[STUB] Sending {kind} message", extra={"to": data.get("to"), "message_id": message_id})

        if self.fail_next > 0:
            self.fail_next -= 1
            return ProviderResponse(
                success=False,
                error_code="STUB_SIMULATED_FAILURE",
                error_message="Simulated failure for testing",
                retryable=True,
            )

        return ProviderResponse(
            success=True,
            message_id=message_id,
            raw_response={"stub": True, "message_id": message_id},
        )

    async def send_text(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        text: str,
        reply_to: str | None = None,
        preview_url: bool = False,
    ) -> ProviderResponse:
        return self._record(
            "text", "msg", phone_number_id=phone_number_id, to=to, text=text, reply_to=reply_to
        )

    async def send_template(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        template_name: str,
        language_code: str,
        components: list[dict[str, Any]] | None = None,
    ) -> ProviderResponse:
        return self._record(
            "template",
            "tmpl",
            phone_number_id=phone_number_id,
            to=to,
            template_name=template_name,
            language_code=language_code,
            components=components,
        )

    async def send_interactive(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        body_text: str,
        buttons: list[dict[str, str]],
        header_text: str | None = None,
        footer_text: str | None = None,
        reply_to: str | None = None,
    ) -> ProviderResponse:
        return self._record(
            "interactive",
            "btn",
            phone_number_id=phone_number_id,
            to=to,
            body_text=body_text,
            buttons=buttons,
            reply_to=reply_to,
        )

    async def mark_as_read(self, phone_number_id: str, access_token: str, message_id: str) -> bool:
        logger.debug(f"[STUB] Marking message as read: {message_id}")
        return True

    async def get_media_url(self, media_id: str, access_token: str) -> str | None:
        return f"https://stub.whatsapp.local/media/{media_id}"

    def validate_webhook_signature(self, payload: bytes, signature: str, app_secret: str) -> bool:
        logger.debug("[STUB] Accepting webhook signature (stub mode)")
        return True

    def parse_webhook(
        self,
        payload: dict[str, Any],
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """
        Parse a webhook payload.

        Accepts a simplified format for local testing:
        {"from": "15551234567", "text": "Hello", "phone_number_id": "..."}

        or the full Cloud API format.
        """
        if "from" in payload and "text" in payload:
            msg = InboundMessage(
                message_id=payload.get("message_id", f"stub_in_{uuid4().hex[:16]}"),
                from_phone=payload["from"],
                to_phone=payload.get("to", ""),
                phone_number_id=payload.get("phone_number_id", "stub_phone_id"),
                waba_id=payload.get("waba_id", "stub_waba_id"),
                message_type=MessageType.TEXT,
                timestamp=datetime.utcnow(),
                text=payload.get("text"),
                contact_name=payload.get("name"),
                raw_payload=payload,
            )
            return [msg], []

        return parse_webhook_payload(payload)

    def verify_webhook_challenge(
        self,
        mode: str,
        token: str,
        challenge: str,
        verify_token: str,
    ) -> str | None:
        if mode == "subscribe":
            logger.info("[STUB] Accepting webhook verification challenge")
            return challenge
        return None
