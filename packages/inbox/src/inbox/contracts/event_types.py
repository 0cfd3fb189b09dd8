"""
Inbox Event Types

Events carried on the WhatsApp Redis Streams.
"""

from enum import Enum


class InboxEventType(str, Enum):
    """
    Event types for the inbox streams.

    Inbound stream (published by the webhook):
    - MESSAGE_RECEIVED: Contact sent a message
    - STATUS_RECEIVED: Provider reported a delivery status

    Outbound stream (published by the API and automation):
    - OUTBOUND_QUEUED: A stored pending message must be sent

    Dead letter stream:
    - DELIVERY_FAILED: Outbound message exhausted its retries
    """

    MESSAGE_RECEIVED = "whatsapp_message_received"
    STATUS_RECEIVED = "whatsapp_status_received"
    OUTBOUND_QUEUED = "whatsapp_outbound_queued"
    DELIVERY_FAILED = "whatsapp_delivery_failed"

    def __str__(self) -> str:
        return self.value
