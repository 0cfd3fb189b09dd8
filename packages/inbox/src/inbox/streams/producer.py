"""
Inbox Stream Producer

Publishes inbox events to Redis Streams.
"""

import logging
from typing import Any
from uuid import UUID

import redis

from inbox.contracts.envelope import InboxEnvelope
from inbox.contracts.event_types import InboxEventType
from inbox.streams.groups import DLQ_STREAM, INBOUND_STREAM, OUTBOUND_STREAM

logger = logging.getLogger(__name__)


class InboxStreamProducer:
    """Producer for publishing inbox events to Redis Streams."""

    def __init__(self, redis_client: redis.Redis, max_len: int = 100000):
        self.redis = redis_client
        self.max_len = max_len

    def publish_inbound(
        self,
        organization_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """Publish a received message. Called by the WhatsApp webhook."""
        envelope = InboxEnvelope.create(
            event_type=InboxEventType.MESSAGE_RECEIVED.value,
            organization_id=organization_id,
            payload=payload,
            correlation_id=correlation_id,
        )
        return self._publish(INBOUND_STREAM, envelope)

    def publish_status(
        self,
        organization_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """Publish a delivery status update. Statuses share the inbound stream."""
        envelope = InboxEnvelope.create(
            event_type=InboxEventType.STATUS_RECEIVED.value,
            organization_id=organization_id,
            payload=payload,
            correlation_id=correlation_id,
        )
        return self._publish(INBOUND_STREAM, envelope)

    def publish_outbound(
        self,
        organization_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """Queue a stored outbound message for sending."""
        envelope = InboxEnvelope.create(
            event_type=InboxEventType.OUTBOUND_QUEUED.value,
            organization_id=organization_id,
            payload=payload,
            correlation_id=correlation_id,
        )
        return self._publish(OUTBOUND_STREAM, envelope)

    def publish_to_dlq(self, original_envelope: InboxEnvelope, error: str, retry_count: int) -> str:
        """Move a failed event to the dead letter stream."""
        dlq_envelope = InboxEnvelope.create(
            event_type=InboxEventType.DELIVERY_FAILED.value,
            organization_id=original_envelope.organization_id,
            payload={
                "original_event": original_envelope.to_dict(),
                "error": error,
                "retry_count": retry_count,
            },
            correlation_id=original_envelope.correlation_id,
        )
        logger.warning(
            f"Moving event {original_envelope.event_id} to DLQ: {error}",
            extra={"organization_id": str(original_envelope.organization_id), "retry_count": retry_count},
        )
        return self._publish(DLQ_STREAM, dlq_envelope)

    def republish(self, stream_name: str, envelope: InboxEnvelope) -> str:
        """Publish an existing envelope again (DLQ replay), resetting its retry count."""
        envelope.metadata.pop("stream_msg_id", None)
        envelope.metadata["retry_count"] = 0
        return self._publish(stream_name, envelope)

    def _publish(self, stream_name: str, envelope: InboxEnvelope) -> str:
        msg_id = self.redis.xadd(
            stream_name,
            envelope.to_stream_data(),
            maxlen=self.max_len,
            approximate=True,
        )

        logger.debug(
            f"Published to {stream_name}",
            extra={
                "stream": stream_name,
                "event_type": envelope.event_type,
                "event_id": str(envelope.event_id),
                "msg_id": msg_id,
            },
        )
        return msg_id
