"""
WhatsApp Providers

Meta Cloud API (production) and Stub (development).
"""

import functools

from inbox.providers.base import (
    DeliveryState,
    DeliveryStatus,
    InboundMessage,
    MessageType,
    ProviderError,
    ProviderResponse,
    WhatsAppProvider,
)
from inboxcore.settings import get_settings


@functools.lru_cache()
def get_provider() -> WhatsAppProvider:
    """Provider selected by WHATSAPP_PROVIDER ("meta" or "stub")."""
    if get_settings().WHATSAPP_PROVIDER == "stub":
        from inbox.providers.stub import StubWhatsAppProvider

        return StubWhatsAppProvider()

    from inbox.providers.meta_cloud import MetaCloudWhatsAppProvider

    return MetaCloudWhatsAppProvider()


__all__ = [
    "DeliveryState",
    "DeliveryStatus",
    "InboundMessage",
    "MessageType",
    "ProviderError",
    "ProviderResponse",
    "WhatsAppProvider",
    "get_provider",
]
