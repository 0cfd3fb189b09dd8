"""
WhatsApp Provider Base

Abstract interface for WhatsApp API providers.
Implementations: Meta Cloud API (production), Stub (development).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ProviderError(Exception):
    """Error from WhatsApp provider."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


class MessageType(str, Enum):
    """Message types reported by the Cloud API."""

    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    TEMPLATE = "template"
    INTERACTIVE = "interactive"
    BUTTON = "button"
    LOCATION = "location"
    CONTACTS = "contacts"
    STICKER = "sticker"
    REACTION = "reaction"
    UNKNOWN = "unknown"


MEDIA_TYPES = {
    MessageType.IMAGE,
    MessageType.VIDEO,
    MessageType.AUDIO,
    MessageType.DOCUMENT,
    MessageType.STICKER,
}


class DeliveryState(str, Enum):
    """Outbound delivery states, in the order they progress."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


@dataclass
class InboundMessage:
    """Provider-agnostic representation of an incoming WhatsApp message."""

    message_id: str
    from_phone: str
    to_phone: str
    phone_number_id: str
    waba_id: str
    message_type: MessageType
    timestamp: datetime
    text: str | None = None
    caption: str | None = None
    media_id: str | None = None
    media_mime_type: str | None = None
    context_message_id: str | None = None
    contact_name: str | None = None
    button_payload: str | None = None
    button_text: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryStatus:
    """Parsed delivery status update from webhook."""

    message_id: str
    recipient_phone: str
    status: str  # sent, delivered, read, failed
    timestamp: datetime
    phone_number_id: str = ""
    error_code: str | None = None
    error_message: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    """Response from provider after sending a message."""

    success: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False
    raw_response: dict[str, Any] = field(default_factory=dict)


class WhatsAppProvider(ABC):
    """
    Abstract interface for WhatsApp API providers.

    Send methods never raise on API failures; they return a ProviderResponse
    with success=False and the retryable flag set for transient errors.
    """

    @abstractmethod
    async def send_text(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        text: str,
        reply_to: str | None = None,
        preview_url: bool = False,
    ) -> ProviderResponse:
        ...

    @abstractmethod
    async def send_template(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        template_name: str,
        language_code: str,
        components: list[dict[str, Any]] | None = None,
    ) -> ProviderResponse:
        """
        Send an approved template message.

        Args:
            template_name: Approved template name
            language_code: Template language code (e.g., "en_US")
            components: Template components (header, body, buttons variables)
        """
        ...

    @abstractmethod
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
        """
        Send an interactive message with reply buttons.

        Args:
            buttons: List of buttons [{id, title}] (max 3, titles max 20 chars)
        """
        ...

    @abstractmethod
    async def mark_as_read(self, phone_number_id: str, access_token: str, message_id: str) -> bool:
        ...

    @abstractmethod
    async def get_media_url(self, media_id: str, access_token: str) -> str | None:
        ...

    @abstractmethod
    def validate_webhook_signature(self, payload: bytes, signature: str, app_secret: str) -> bool:
        """
        Validate webhook signature.

        Args:
            payload: Raw request body
            signature: X-Hub-Signature-256 header value
            app_secret: Meta App Secret
        """
        ...

    @abstractmethod
    def parse_webhook(
        self,
        payload: dict[str, Any],
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        ...

    @abstractmethod
    def verify_webhook_challenge(
        self,
        mode: str,
        token: str,
        challenge: str,
        verify_token: str,
    ) -> str | None:
        """Return the challenge if mode and token match, None otherwise."""
        ...
