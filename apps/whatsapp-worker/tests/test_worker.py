"""
Tests for the worker's acknowledgement, retry and dead letter decisions.

Handlers are replaced with mocks; the consumer and producer are mocks too.
"""

from unittest.mock import MagicMock
from uuid import UUID

import pytest

from inbox.contracts.envelope import InboxEnvelope
from inbox.contracts.event_types import InboxEventType
from inbox.streams.groups import INBOUND_STREAM
from whatsapp_worker import main as worker

ORGANIZATION_ID = UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture
def consumer():
    return MagicMock()


@pytest.fixture
def producer():
    return MagicMock()


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def handler(monkeypatch):
    handler_class = MagicMock()
    monkeypatch.setattr(worker, "InboundHandler", handler_class)
    return handler_class.return_value


def inbound_envelope(retry_count=0):
    return InboxEnvelope.create(
        event_type=InboxEventType.MESSAGE_RECEIVED.value,
        organization_id=ORGANIZATION_ID,
        payload={"from_phone": "15557654321", "message_id": "wamid.IN1", "text": "Hello"},
        metadata={"retry_count": retry_count},
    )


class TestProcessInbound:
    def test_success_is_acked(self, db, consumer, producer, handler):
        handler.handle_envelope.return_value = {"status": "processed"}

        acked = worker.process_inbound(db, consumer, producer, "1-0", inbound_envelope())

        assert acked is True
        consumer.ack.assert_called_once_with(INBOUND_STREAM, "1-0")

    def test_failure_left_pending(self, db, consumer, producer, handler):
        """A transient database error must not lose the message."""
        handler.handle_envelope.side_effect = RuntimeError("database is down")

        acked = worker.process_inbound(db, consumer, producer, "1-0", inbound_envelope())

        assert acked is False
        consumer.ack.assert_not_called()
        producer.publish_to_dlq.assert_not_called()
        db.rollback.assert_called_once()

    def test_last_attempt_goes_to_dlq(self, db, consumer, producer, handler):
        handler.handle_envelope.side_effect = RuntimeError("database is down")
        envelope = inbound_envelope(retry_count=worker.MAX_RETRIES - 1)

        acked = worker.process_inbound(db, consumer, producer, "1-0", envelope)

        assert acked is True
        producer.publish_to_dlq.assert_called_once_with(envelope, "database is down", worker.MAX_RETRIES)
        consumer.ack.assert_called_once_with(INBOUND_STREAM, "1-0")
