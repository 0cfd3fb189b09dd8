"""
Inbox Redis Streams

Producer and consumer for the WhatsApp inbound, outbound and dead letter streams.
"""

from inbox.streams.consumer import InboxStreamConsumer
from inbox.streams.groups import (
    DLQ_STREAM,
    INBOUND_STREAM,
    OUTBOUND_STREAM,
    WORKER_GROUP,
    ensure_streams,
    get_stream_info,
)
from inbox.streams.producer import InboxStreamProducer

__all__ = [
    "InboxStreamProducer",
    "InboxStreamConsumer",
    "ensure_streams",
    "get_stream_info",
    "INBOUND_STREAM",
    "OUTBOUND_STREAM",
    "DLQ_STREAM",
    "WORKER_GROUP",
]
