"""
Tests for stream envelopes, producer, consumer and the Redis rate limiter.

Redis is replaced with MagicMock; these tests check the commands issued and
how their replies are interpreted.
"""

import json
from datetime import datetime
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from inbox.contracts.envelope import InboxEnvelope
from inbox.contracts.event_types import InboxEventType
from inbox.security.ratelimit import RateLimiter
from inbox.streams.consumer import InboxStreamConsumer
from inbox.streams.groups import DLQ_STREAM, INBOUND_STREAM, OUTBOUND_STREAM, WORKER_GROUP
from inbox.streams.producer import InboxStreamProducer


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.xadd.return_value = "1700000000000-0"
    return client


@pytest.fixture
def envelope(organization_id):
    return InboxEnvelope.create(
        event_type=InboxEventType.OUTBOUND_QUEUED.value,
        organization_id=organization_id,
        payload={"message_id": str(uuid4()), "text": "hello"},
        correlation_id="corr-1",
    )


class TestEnvelope:
    def test_stream_data_is_flat_strings(self, envelope):
        data = envelope.to_stream_data()
        assert all(isinstance(value, str) for value in data.values())
        assert json.loads(data["payload"]) == envelope.payload

    def test_from_stream_message(self, envelope):
        parsed = InboxEnvelope.from_stream_message("1-0", envelope.to_stream_data())
        assert parsed.event_id == envelope.event_id
        assert parsed.organization_id == envelope.organization_id
        assert parsed.occurred_at == envelope.occurred_at
        assert parsed.payload == envelope.payload
        assert parsed.correlation_id == "corr-1"
        assert parsed.metadata["stream_msg_id"] == "1-0"

    def test_retry_count_defaults_to_zero(self, envelope):
        assert envelope.retry_count == 0
        envelope.metadata["retry_count"] = "2"
        assert envelope.retry_count == 2

    def test_from_dict(self, envelope):
        assert InboxEnvelope.from_dict(envelope.to_dict()) == envelope

    def test_event_type_string(self):
        assert str(InboxEventType.MESSAGE_RECEIVED) == "whatsapp_message_received"


class TestProducer:
    def test_publish_inbound(self, redis_client, organization_id):
        msg_id = InboxStreamProducer(redis_client).publish_inbound(organization_id, {"text": "hi"})

        assert msg_id == "1700000000000-0"
        stream, data = redis_client.xadd.call_args.args
        assert stream == INBOUND_STREAM
        assert data["event_type"] == InboxEventType.MESSAGE_RECEIVED.value
        assert redis_client.xadd.call_args.kwargs == {"maxlen": 100000, "approximate": True}

    def test_status_shares_inbound_stream(self, redis_client, organization_id):
        InboxStreamProducer(redis_client).publish_status(organization_id, {"status": "read"})
        stream, data = redis_client.xadd.call_args.args
        assert stream == INBOUND_STREAM
        assert data["event_type"] == InboxEventType.STATUS_RECEIVED.value

    def test_publish_outbound(self, redis_client, organization_id):
        InboxStreamProducer(redis_client).publish_outbound(organization_id, {"text": "hi"})
        assert redis_client.xadd.call_args.args[0] == OUTBOUND_STREAM

    def test_publish_to_dlq_wraps_original(self, redis_client, envelope):
        InboxStreamProducer(redis_client).publish_to_dlq(envelope, "boom", retry_count=3)

        stream, data = redis_client.xadd.call_args.args
        assert stream == DLQ_STREAM
        assert data["event_type"] == InboxEventType.DELIVERY_FAILED.value
        payload = json.loads(data["payload"])
        assert payload["error"] == "boom"
        assert payload["retry_count"] == 3
        assert payload["original_event"]["event_id"] == str(envelope.event_id)

    def test_republish_resets_retry_count(self, redis_client, envelope):
        envelope.metadata.update({"retry_count": 3, "stream_msg_id": "9-0"})
        InboxStreamProducer(redis_client).republish(OUTBOUND_STREAM, envelope)

        metadata = json.loads(redis_client.xadd.call_args.args[1]["metadata"])
        assert metadata == {"retry_count": 0}


class TestConsumer:
    def test_read_messages(self, redis_client, envelope):
        redis_client.xreadgroup.return_value = [
            (OUTBOUND_STREAM, [("1-0", envelope.to_stream_data())]),
        ]
        consumer = InboxStreamConsumer(redis_client, "worker-1")

        messages = consumer.read_messages([INBOUND_STREAM, OUTBOUND_STREAM], count=5, block_ms=10)

        assert len(messages) == 1
        stream, msg_id, parsed = messages[0]
        assert (stream, msg_id) == (OUTBOUND_STREAM, "1-0")
        assert parsed.event_id == envelope.event_id
        redis_client.xreadgroup.assert_called_once_with(
            WORKER_GROUP,
            "worker-1",
            {INBOUND_STREAM: ">", OUTBOUND_STREAM: ">"},
            count=5,
            block=10,
        )

    def test_invalid_entries_are_acked_and_skipped(self, redis_client):
        redis_client.xreadgroup.return_value = [(INBOUND_STREAM, [("2-0", {"garbage": "x"})])]
        consumer = InboxStreamConsumer(redis_client, "worker-1")

        assert consumer.read_messages([INBOUND_STREAM]) == []
        redis_client.xack.assert_called_once_with(INBOUND_STREAM, WORKER_GROUP, "2-0")

    def test_reclaim_sets_delivery_count(self, redis_client, envelope):
        redis_client.xpending_range.return_value = [
            {"message_id": "1-0", "consumer": "dead", "time_since_delivered": 120000, "times_delivered": 2},
            {"message_id": "3-0", "consumer": "busy", "time_since_delivered": 10, "times_delivered": 1},
        ]
        redis_client.xclaim.return_value = [("1-0", envelope.to_stream_data())]
        consumer = InboxStreamConsumer(redis_client, "worker-1")

        claimed = consumer.reclaim_pending(OUTBOUND_STREAM, min_idle_ms=60000)

        assert [msg_id for msg_id, _ in claimed] == ["1-0"]
        assert claimed[0][1].retry_count == 2
        assert redis_client.xclaim.call_args.args[4] == ["1-0"]

    def test_trimmed_entries_are_acked(self, redis_client):
        redis_client.xclaim.return_value = [("1-0", None)]
        consumer = InboxStreamConsumer(redis_client, "worker-1")

        assert consumer.claim_messages(OUTBOUND_STREAM, ["1-0"]) == []
        redis_client.xack.assert_called_once_with(OUTBOUND_STREAM, WORKER_GROUP, "1-0")

    def test_nothing_pending(self, redis_client):
        redis_client.xpending_range.return_value = []
        consumer = InboxStreamConsumer(redis_client, "worker-1")
        assert consumer.reclaim_pending(INBOUND_STREAM) == []
        redis_client.xclaim.assert_not_called()


class TestRateLimiter:
    NOW = datetime(2024, 1, 1, 10, 30, 0)

    @staticmethod
    def counts(redis_client, hour, day):
        redis_client.pipeline.return_value.execute.return_value = [hour, True, day, True]

    def test_allows_and_counts(self, redis_client):
        self.counts(redis_client, 1, 1)
        limiter = RateLimiter(redis_client, hourly_limit=5, daily_limit=50)

        assert limiter.check_rate_limit("user-1", "send_message", now=self.NOW) == (True, None)
        pipe = redis_client.pipeline.return_value
        pipe.incr.assert_any_call("ratelimit:hour:user-1:send_message:2024010110")
        pipe.incr.assert_any_call("ratelimit:day:user-1:send_message:20240101")
        pipe.execute.assert_called_once()
        redis_client.get.assert_not_called()

    def test_last_request_in_window_allowed(self, redis_client):
        self.counts(redis_client, 5, 50)
        limiter = RateLimiter(redis_client, hourly_limit=5, daily_limit=50)
        assert limiter.check_rate_limit("user-1", "send_message", now=self.NOW) == (True, None)

    def test_hourly_limit(self, redis_client):
        self.counts(redis_client, 6, 6)
        limiter = RateLimiter(redis_client, hourly_limit=5, daily_limit=50)

        allowed, retry_after = limiter.check_rate_limit("user-1", "send_message", now=self.NOW)
        assert allowed is False
        assert retry_after == 30 * 60

    def test_daily_limit(self, redis_client):
        self.counts(redis_client, 2, 51)
        limiter = RateLimiter(redis_client, hourly_limit=5, daily_limit=50)

        allowed, retry_after = limiter.check_rate_limit("user-1", "send_message", now=self.NOW)
        assert allowed is False
        assert retry_after == 13 * 3600 + 30 * 60

    def test_concurrent_requests_share_one_count(self, redis_client):
        """Decisions come from the INCR results, so the sixth caller is refused."""
        redis_client.pipeline.return_value.execute.side_effect = [[n, True, n, True] for n in range(1, 7)]
        limiter = RateLimiter(redis_client, hourly_limit=5, daily_limit=50)

        results = [limiter.check_rate_limit("user-1", "send_message", now=self.NOW)[0] for _ in range(6)]

        assert results == [True] * 5 + [False]

    def test_usage(self, redis_client):
        redis_client.get.side_effect = [b"2", b"7"]
        usage = RateLimiter(redis_client, hourly_limit=5, daily_limit=50).get_usage("user-1", "x", now=self.NOW)
        assert usage["hourly"] == {"used": 2, "limit": 5, "remaining": 3}
        assert usage["daily"] == {"used": 7, "limit": 50, "remaining": 43}
