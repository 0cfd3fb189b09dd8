"""
Meta Cloud API WhatsApp Provider

Production provider for the WhatsApp Business Cloud API (Graph API).
"""

import logging
from typing import Any

import httpx

from inbox.providers.base import (
    DeliveryStatus,
    InboundMessage,
    ProviderError,
    ProviderResponse,
    WhatsAppProvider,
)
from inbox.providers.meta_cloud.webhook import parse_webhook_payload, validate_signature

logger = logging.getLogger(__name__)

GRAPH_API_VERSION = "v18.0"
GRAPH_API_BASE_URL = f"https://graph.facebook.com/{GRAPH_API_VERSION}"

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20


class MetaCloudWhatsAppProvider(WhatsAppProvider):
    """Meta Cloud API provider for WhatsApp Business."""

    def __init__(self, timeout: float = 30.0, base_url: str = GRAPH_API_BASE_URL):
        self.timeout = timeout
        self.base_url = base_url
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated Graph API request; raises ProviderError."""
        client = await self._get_client()
        url = f"{self.base_url}/{path}"
        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            response = await client.request(method, url, headers=headers, json=json_data)
        except httpx.RequestError as e:
            logger.error(f"Graph API request failed: {e}")
            raise ProviderError(f"HTTP request failed: {e}", code="HTTP_ERROR", retryable=True) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = data.get("error") or {}
            raise ProviderError(
                message=error.get("message", f"Graph API returned {response.status_code}"),
                code=str(error.get("code", response.status_code)),
                details=error,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        return data

    async def _send(
        self,
        phone_number_id: str,
        access_token: str,
        payload: dict[str, Any],
        reply_to: str | None = None,
    ) -> ProviderResponse:
        body = {"messaging_product": "whatsapp", "recipient_type": "individual", **payload}
        if reply_to:
            body["context"] = {"message_id": reply_to}

        try:
            data = await self._request("POST", f"{phone_number_id}/messages", access_token, body)
        except ProviderError as e:
            logger.error(
                f"Failed to send {payload.get('type')} message: {e}",
                extra={"to": payload.get("to"), "code": e.code, "retryable": e.retryable},
            )
            return ProviderResponse(
                success=False,
                error_code=e.code,
                error_message=str(e),
                retryable=e.retryable,
                raw_response=e.details,
            )

        message_id = (data.get("messages") or [{}])[0].get("id")
        logger.info(
            f"Sent {payload.get('type')} message via Meta API",
            extra={"to": payload.get("to"), "message_id": message_id},
        )
        return ProviderResponse(success=True, message_id=message_id, raw_response=data)

    async def send_text(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        text: str,
        reply_to: str | None = None,
        preview_url: bool = False,
    ) -> ProviderResponse:
        payload = {"to": to, "type": "text", "text": {"preview_url": preview_url, "body": text}}
        return await self._send(phone_number_id, access_token, payload, reply_to)

    async def send_template(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        template_name: str,
        language_code: str,
        components: list[dict[str, Any]] | None = None,
    ) -> ProviderResponse:
        template: dict[str, Any] = {"name": template_name, "language": {"code": language_code}}
        if components:
            template["components"] = components
        return await self._send(
            phone_number_id, access_token, {"to": to, "type": "template", "template": template}
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
        if not buttons or len(buttons) > MAX_BUTTONS:
            return ProviderResponse(
                success=False,
                error_code="INVALID_BUTTONS",
                error_message=f"Interactive messages need 1 to {MAX_BUTTONS} buttons",
            )

        interactive: dict[str, Any] = {
            "type": "button",
            "body": {"text": body_text},
            "action": {
                "buttons": [
                    {
                        "type": "reply",
                        "reply": {
                            "id": btn.get("id", f"btn_{i}"),
                            "title": btn.get("title", f"Option {i + 1}")[:MAX_BUTTON_TITLE],
                        },
                    }
                    for i, btn in enumerate(buttons)
                ]
            },
        }
        if header_text:
            interactive["header"] = {"type": "text", "text": header_text}
        if footer_text:
            interactive["footer"] = {"text": footer_text}

        return await self._send(
            phone_number_id,
            access_token,
            {"to": to, "type": "interactive", "interactive": interactive},
            reply_to,
        )

    async def mark_as_read(self, phone_number_id: str, access_token: str, message_id: str) -> bool:
        payload = {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
        try:
            await self._request("POST", f"{phone_number_id}/messages", access_token, payload)
            return True
        except ProviderError as e:
            logger.warning(f"Failed to mark message as read: {e}")
            return False

    async def get_media_url(self, media_id: str, access_token: str) -> str | None:
        try:
            data = await self._request("GET", media_id, access_token)
            return data.get("url")
        except ProviderError as e:
            logger.warning(f"Failed to get media URL: {e}")
            return None

    def validate_webhook_signature(self, payload: bytes, signature: str, app_secret: str) -> bool:
        is_valid = validate_signature(payload, signature, app_secret)
        if not is_valid:
            logger.warning("Webhook signature validation failed")
        return is_valid

    def parse_webhook(
        self,
        payload: dict[str, Any],
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        return parse_webhook_payload(payload)

    def verify_webhook_challenge(
        self,
        mode: str,
        token: str,
        challenge: str,
        verify_token: str,
    ) -> str | None:
        if mode == "subscribe" and verify_token and token == verify_token:
            logger.info("Webhook verification successful")
            return challenge

        logger.warning(f"Webhook verification failed: mode={mode}, token mismatch")
        return None
