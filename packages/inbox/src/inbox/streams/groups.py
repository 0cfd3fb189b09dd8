"""
Redis Stream Configuration

Stream names, consumer groups, and setup utilities.
"""

import logging
from dataclasses import dataclass
from typing import Any

import redis

from inboxcore.redis import ensure_stream_group

logger = logging.getLogger(__name__)

INBOUND_STREAM = "inbox:whatsapp:inbound"
OUTBOUND_STREAM = "inbox:whatsapp:outbound"
DLQ_STREAM = "inbox:whatsapp:dlq"

WORKER_GROUP = "inbox-worker"


@dataclass
class StreamConfig:
    """A stream and its consumer group."""

    stream_name: str
    group_name: str
    max_len: int = 100000
    start_id: str = "0"  # "0" = all history, "$" = new only


STREAM_CONFIGS = [
    StreamConfig(INBOUND_STREAM, WORKER_GROUP),
    StreamConfig(OUTBOUND_STREAM, WORKER_GROUP),
    StreamConfig(DLQ_STREAM, WORKER_GROUP),
]


def ensure_streams(client: redis.Redis) -> None:
    """
    Ensure all inbox streams and consumer groups exist.

    Called on startup by the API and the worker.
    """
    for config in STREAM_CONFIGS:
        ensure_stream_group(client, config.stream_name, config.group_name, config.start_id)


def get_stream_info(client: redis.Redis, stream_name: str, group_name: str = WORKER_GROUP) -> dict[str, Any]:
    """Length and pending count of a stream."""
    try:
        info = client.xinfo_stream(stream_name)
    except redis.ResponseError:
        return {"stream": stream_name, "length": 0, "pending": 0, "exists": False}

    return {
        "stream": stream_name,
        "length": info.get("length", 0),
        "pending": get_pending_count(client, stream_name, group_name),
        "first_entry": (info.get("first-entry") or [None])[0],
        "last_entry": (info.get("last-entry") or [None])[0],
        "exists": True,
    }


def get_pending_count(client: redis.Redis, stream_name: str, group_name: str = WORKER_GROUP) -> int:
    """Count of pending (unacknowledged) messages in a group."""
    try:
        info = client.xpending(stream_name, group_name)
        return info.get("pending", 0) if info else 0
    except redis.ResponseError:
        return 0
