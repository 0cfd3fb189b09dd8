"""
Inbox Contracts

Event types, payloads, and envelope definitions for the WhatsApp streams.
"""

from inbox.contracts.envelope import InboxEnvelope
from inbox.contracts.event_types import InboxEventType
from inbox.contracts.payloads import (
    DeliveryStatusPayload,
    InboundMessagePayload,
    OutboundMessagePayload,
)

__all__ = [
    "InboxEventType",
    "InboxEnvelope",
    "InboundMessagePayload",
    "OutboundMessagePayload",
    "DeliveryStatusPayload",
]
