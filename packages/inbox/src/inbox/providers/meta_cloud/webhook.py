"""
Meta Webhook Utilities

Signature validation, routing helpers and payload parsing for Cloud API webhooks.

Webhook format:
{
    "object": "whatsapp_business_account",
    "entry": [{
        "id": "WABA_ID",
        "changes": [{
            "field": "messages",
            "value": {
                "metadata": {"display_phone_number": "...", "phone_number_id": "..."},
                "contacts": [...],
                "messages": [...],
                "statuses": [...]
            }
        }]
    }]
}
"""

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Iterator

from inbox.providers.base import (
    MEDIA_TYPES,
    DeliveryStatus,
    InboundMessage,
    MessageType,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def validate_signature(payload: bytes, signature_header: str | None, app_secret: str) -> bool:
    """
    Validate the X-Hub-Signature-256 header of a webhook.

    Args:
        payload: Raw request body bytes
        signature_header: Header value, "sha256=<hex digest>"
        app_secret: Meta App Secret

    Returns:
        True if the HMAC-SHA256 of the body matches
    """
    if not signature_header:
        logger.warning("Missing signature header")
        return False

    if not signature_header.startswith(SIGNATURE_PREFIX):
        logger.warning("Invalid signature format")
        return False

    expected = signature_header[len(SIGNATURE_PREFIX):]
    computed = hmac.new(app_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    return hmac.compare_digest(computed, expected)


def _values(payload: dict[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield (waba_id, change value) for each messages change."""
    if not isinstance(payload, dict):
        return
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field", "messages") != "messages":
                continue
            yield entry.get("id", ""), change.get("value") or {}


def extract_phone_number_id(payload: dict[str, Any]) -> str | None:
    """Extract phone_number_id for organization resolution before full parsing."""
    for _, value in _values(payload):
        phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
        if phone_number_id:
            return phone_number_id
    return None


def is_message_webhook(payload: dict[str, Any]) -> bool:
    """Check if this webhook contains messages."""
    return any(value.get("messages") for _, value in _values(payload))


def is_status_webhook(payload: dict[str, Any]) -> bool:
    """Check if this webhook contains status updates."""
    return any(value.get("statuses") for _, value in _values(payload))


def parse_webhook_payload(
    payload: dict[str, Any],
) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
    """Parse a Cloud API webhook into inbound messages and delivery statuses."""
    messages: list[InboundMessage] = []
    statuses: list[DeliveryStatus] = []

    if payload.get("object") != "whatsapp_business_account":
        logger.debug(f"Ignoring non-WhatsApp webhook: {payload.get('object')}")
        return messages, statuses

    for waba_id, value in _values(payload):
        metadata = value.get("metadata") or {}
        contacts = value.get("contacts") or []

        for msg_data in value.get("messages") or []:
            msg = parse_message(waba_id, metadata, contacts, msg_data)
            if msg:
                messages.append(msg)

        for status_data in value.get("statuses") or []:
            status = parse_status(metadata, status_data)
            if status:
                statuses.append(status)

    return messages, statuses


def _timestamp(value: str | None) -> datetime:
    if value:
        try:
            return datetime.utcfromtimestamp(int(value))
        except (TypeError, ValueError):
            logger.warning(f"Invalid webhook timestamp: {value}")
    return datetime.utcnow()


def map_message_type(type_str: str | None) -> MessageType:
    """Map a Cloud API message type string to MessageType."""
    try:
        return MessageType(type_str)
    except ValueError:
        return MessageType.UNKNOWN


def parse_message(
    waba_id: str,
    metadata: dict[str, Any],
    contacts: list[dict[str, Any]],
    msg_data: dict[str, Any],
) -> InboundMessage | None:
    """Parse a single message; None when it has no id or sender."""
    message_id = msg_data.get("id")
    from_phone = msg_data.get("from")
    if not message_id or not from_phone:
        logger.warning("Skipping webhook message without id or sender")
        return None

    type_str = msg_data.get("type", "unknown")
    msg_type = map_message_type(type_str)

    contact = next((c for c in contacts if c.get("wa_id") == from_phone), contacts[0] if contacts else {})

    msg = InboundMessage(
        message_id=message_id,
        from_phone=from_phone,
        to_phone=metadata.get("display_phone_number", ""),
        phone_number_id=metadata.get("phone_number_id", ""),
        waba_id=waba_id,
        message_type=msg_type,
        timestamp=_timestamp(msg_data.get("timestamp")),
        contact_name=(contact.get("profile") or {}).get("name"),
        context_message_id=(msg_data.get("context") or {}).get("id"),
        raw_payload=msg_data,
    )

    if msg_type == MessageType.TEXT:
        msg.text = (msg_data.get("text") or {}).get("body")

    elif msg_type in MEDIA_TYPES:
        media = msg_data.get(type_str) or {}
        msg.media_id = media.get("id")
        msg.media_mime_type = media.get("mime_type")
        msg.caption = media.get("caption")

    elif msg_type == MessageType.INTERACTIVE:
        interactive = msg_data.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        msg.button_payload = reply.get("id")
        msg.button_text = reply.get("title")

    elif msg_type == MessageType.BUTTON:
        button = msg_data.get("button") or {}
        msg.button_payload = button.get("payload")
        msg.button_text = button.get("text")

    elif msg_type == MessageType.LOCATION:
        location = msg_data.get("location") or {}
        msg.text = location.get("name") or location.get("address")

    return msg


def parse_status(metadata: dict[str, Any], status_data: dict[str, Any]) -> DeliveryStatus | None:
    """Parse a single status update."""
    message_id = status_data.get("id")
    if not message_id:
        return None

    error_code = None
    error_message = None
    errors = status_data.get("errors") or []
    if errors:
        error_code = str(errors[0].get("code", ""))
        error_message = errors[0].get("message") or errors[0].get("title")

    return DeliveryStatus(
        message_id=message_id,
        recipient_phone=status_data.get("recipient_id", ""),
        status=status_data.get("status", ""),
        timestamp=_timestamp(status_data.get("timestamp")),
        phone_number_id=metadata.get("phone_number_id", ""),
        error_code=error_code,
        error_message=error_message,
        raw_payload=status_data,
    )
