"""
Inbox Stream Consumer

Consumes inbox events from Redis Streams using XREADGROUP.
"""

import logging
from typing import Any

import redis

from inbox.contracts.envelope import InboxEnvelope
from inbox.streams.groups import WORKER_GROUP

logger = logging.getLogger(__name__)


class InboxStreamConsumer:
    """
    Consumer group reader for the inbox streams.

    Unacknowledged entries stay pending and are reclaimed after min_idle_ms;
    the envelope's metadata["retry_count"] reflects previous deliveries.
    """

    def __init__(self, redis_client: redis.Redis, consumer_name: str, group_name: str = WORKER_GROUP):
        self.redis = redis_client
        self.consumer_name = consumer_name
        self.group_name = group_name

    def _parse(self, stream_name: str, msg_id: str, data: dict[str, str]) -> InboxEnvelope | None:
        try:
            return InboxEnvelope.from_stream_message(msg_id, data)
        except (KeyError, ValueError) as e:
            logger.error(f"Failed to parse message {msg_id} from {stream_name}: {e}")
            # ACK invalid messages so they don't block the group
            self.ack(stream_name, msg_id)
            return None

    def read_messages(
        self,
        streams: list[str],
        count: int = 10,
        block_ms: int = 5000,
    ) -> list[tuple[str, str, InboxEnvelope]]:
        """
        Read new messages from one or more streams.

        Returns:
            List of (stream_name, message_id, envelope) tuples
        """
        try:
            result = self.redis.xreadgroup(
                self.group_name,
                self.consumer_name,
                {stream: ">" for stream in streams},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                logger.error(f"Consumer group {self.group_name} does not exist for {streams}")
            raise

        messages = []
        for stream_name, entries in result or []:
            for msg_id, data in entries:
                envelope = self._parse(stream_name, msg_id, data)
                if envelope:
                    messages.append((stream_name, msg_id, envelope))
        return messages

    def ack(self, stream_name: str, message_id: str) -> int:
        return self.redis.xack(stream_name, self.group_name, message_id)

    def get_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[dict[str, Any]]:
        """Pending entries idle for at least min_idle_ms."""
        try:
            pending_range = self.redis.xpending_range(
                stream_name,
                self.group_name,
                min="-",
                max="+",
                count=count,
            )
        except redis.ResponseError:
            return []

        return [
            {
                "message_id": entry["message_id"],
                "consumer": entry["consumer"],
                "idle_ms": entry["time_since_delivered"],
                "delivery_count": entry["times_delivered"],
            }
            for entry in pending_range
            if entry.get("time_since_delivered", 0) >= min_idle_ms
        ]

    def claim_messages(
        self,
        stream_name: str,
        message_ids: list[str],
        min_idle_ms: int = 60000,
    ) -> list[tuple[str, InboxEnvelope]]:
        """Claim idle pending entries for this consumer."""
        if not message_ids:
            return []

        try:
            result = self.redis.xclaim(
                stream_name,
                self.group_name,
                self.consumer_name,
                min_idle_ms,
                message_ids,
            )
        except redis.ResponseError as e:
            logger.error(f"Failed to claim messages: {e}")
            return []

        messages = []
        for msg_id, data in result:
            # Entries trimmed from the stream come back without data
            if not data:
                self.ack(stream_name, msg_id)
                continue
            envelope = self._parse(stream_name, msg_id, data)
            if envelope:
                messages.append((msg_id, envelope))
        return messages

    def reclaim_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[tuple[str, InboxEnvelope]]:
        """Claim idle pending entries and tag them with their delivery count."""
        pending = self.get_pending(stream_name, min_idle_ms, count)
        if not pending:
            return []

        deliveries = {p["message_id"]: p["delivery_count"] for p in pending}
        claimed = self.claim_messages(stream_name, list(deliveries), min_idle_ms)

        for msg_id, envelope in claimed:
            envelope.metadata["retry_count"] = deliveries.get(msg_id, 1)

        if claimed:
            logger.info(f"Reclaimed {len(claimed)} pending messages from {stream_name}")
        return claimed
