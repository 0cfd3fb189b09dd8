"""Meta Cloud API WhatsApp provider."""

from inbox.providers.meta_cloud.client import MetaCloudWhatsAppProvider
from inbox.providers.meta_cloud.webhook import (
    extract_phone_number_id,
    is_message_webhook,
    is_status_webhook,
    parse_webhook_payload,
    validate_signature,
)

__all__ = [
    "MetaCloudWhatsAppProvider",
    "extract_phone_number_id",
    "is_message_webhook",
    "is_status_webhook",
    "parse_webhook_payload",
    "validate_signature",
]
