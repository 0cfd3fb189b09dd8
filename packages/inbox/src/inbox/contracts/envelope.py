"""
Inbox Event Envelope

Standard wrapper for events on the inbox Redis Streams.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4


@dataclass
class InboxEnvelope:
    """
    Event envelope for the inbox streams.

    Used by the webhook to publish inbound events, by the API to queue
    outbound messages, and by the worker to consume both.

    Attributes:
        event_id: Unique identifier for this event instance
        event_type: InboxEventType value
        organization_id: Tenant the event belongs to
        occurred_at: When the event occurred (UTC)
        payload: Event-specific data
        version: Event contract version
        correlation_id: Optional correlation ID for tracing
        metadata: Additional metadata (retry count, stream id, etc.)
    """

    event_id: UUID
    event_type: str
    organization_id: UUID
    occurred_at: datetime
    payload: dict[str, Any]
    version: int = 1
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        organization_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "InboxEnvelope":
        """Create a new envelope with auto-generated event_id and timestamp."""
        return cls(
            event_id=uuid4(),
            event_type=str(event_type),
            organization_id=organization_id,
            occurred_at=datetime.utcnow(),
            payload=payload,
            correlation_id=correlation_id,
            metadata=metadata or {},
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "InboxEnvelope":
        """Parse a Redis Stream message into an envelope."""
        payload = json.loads(data.get("payload") or "{}")
        metadata = json.loads(data.get("metadata") or "{}")
        metadata["stream_msg_id"] = msg_id

        return cls(
            event_id=UUID(data["event_id"]),
            event_type=data["event_type"],
            organization_id=UUID(data["organization_id"]),
            occurred_at=(
                datetime.fromisoformat(data["occurred_at"])
                if data.get("occurred_at")
                else datetime.utcnow()
            ),
            version=int(data.get("version", "1")),
            payload=payload,
            correlation_id=data.get("correlation_id") or None,
            metadata=metadata,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InboxEnvelope":
        """Rebuild an envelope from to_dict() output (DLQ entries)."""
        return cls(
            event_id=UUID(data["event_id"]),
            event_type=data["event_type"],
            organization_id=UUID(data["organization_id"]),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            version=int(data.get("version", 1)),
            payload=data.get("payload") or {},
            correlation_id=data.get("correlation_id"),
            metadata=dict(data.get("metadata") or {}),
        )

    @property
    def retry_count(self) -> int:
        return int(self.metadata.get("retry_count", 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "organization_id": str(self.organization_id),
            "occurred_at": self.occurred_at.isoformat(),
            "version": self.version,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "metadata": self.metadata,
        }

    def to_stream_data(self) -> dict[str, str]:
        """Convert to a flat dict of strings for XADD."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "organization_id": str(self.organization_id),
            "occurred_at": self.occurred_at.isoformat(),
            "version": str(self.version),
            "payload": json.dumps(self.payload, default=str),
            "correlation_id": self.correlation_id or "",
            "metadata": json.dumps(self.metadata, default=str),
        }
