"""
Inbox Payload Models

Pydantic models for stream payloads. Envelopes carry them as plain dicts
(model_dump(mode="json")) and handlers validate them back on consumption.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from inbox.providers.base import DeliveryState, MessageType


class InboundMessagePayload(BaseModel):
    """A message received from a contact."""

    from_phone: str = Field(..., description="Contact phone number (digits)")
    phone_number_id: str = Field(..., description="Business phone number ID that received it")
    message_id: str = Field(..., description="Provider message ID")
    message_type: MessageType = Field(..., description="Type of message")
    text: str | None = Field(None, description="Text content or media caption")
    media_id: str | None = Field(None, description="Provider media ID")
    media_mime_type: str | None = Field(None, description="Media MIME type")
    button_payload: str | None = Field(None, description="Button or list reply ID")
    contact_name: str | None = Field(None, description="Profile name from WhatsApp")
    timestamp: datetime = Field(..., description="Message timestamp from provider")
    context_message_id: str | None = Field(None, description="Replied-to message ID")
    raw_payload: dict[str, Any] = Field(default_factory=dict, description="Raw provider payload")


class DeliveryStatusPayload(BaseModel):
    """A delivery status update for an outbound message."""

    provider_message_id: str = Field(..., description="Provider message ID")
    status: DeliveryState = Field(..., description="Delivery status")
    timestamp: datetime = Field(..., description="Status timestamp")
    recipient_phone: str = Field(..., description="Recipient phone number")
    error_code: str | None = Field(None, description="Error code (if failed)")
    error_message: str | None = Field(None, description="Error message (if failed)")


class OutboundMessagePayload(BaseModel):
    """A stored outbound message waiting to be sent."""

    message_id: UUID = Field(..., description="Our message row ID")
    conversation_id: UUID = Field(..., description="Conversation ID")
    to_phone: str = Field(..., description="Recipient phone number (digits)")
    message_type: MessageType = Field(default=MessageType.TEXT)

    text: str | None = Field(None, description="Text content")

    # Meta approved templates
    template_name: str | None = Field(None, description="Approved template name")
    template_language: str = Field(default="en", description="Template language code")
    template_variables: dict[str, str] = Field(default_factory=dict)

    buttons: list[dict[str, str]] | None = Field(None, description="Interactive buttons")
    reply_to_message_id: str | None = Field(None, description="Provider message ID to reply to")
