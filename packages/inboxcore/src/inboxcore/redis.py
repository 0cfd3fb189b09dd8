"""
Shared Redis client.

One client per process, created on first use from REDIS_URL. The API, the
worker and the CLI all go through get_redis_client().
"""

import functools
import logging

import redis

from inboxcore.settings import get_settings

logger = logging.getLogger(__name__)


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """Return the process-wide client; nothing connects until the first command."""
    return redis.from_url(get_settings().REDIS_URL, decode_responses=True)


def close_redis() -> None:
    """Close the shared client's connection pool and forget it."""
    if get_redis_client.cache_info().currsize:
        get_redis_client().close()
        get_redis_client.cache_clear()


def ensure_stream_group(
    client: redis.Redis,
    stream_name: str,
    group_name: str,
    start_id: str = "0",
) -> bool:
    """
    Create a consumer group, creating the stream with it when missing.

    Returns:
        True when the group was created, False when it was already there
    """
    try:
        client.xgroup_create(stream_name, group_name, id=start_id, mkstream=True)
    except redis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise
        logger.debug(f"Group {group_name} already exists on {stream_name}")
        return False

    logger.info(f"Created consumer group {group_name} on {stream_name}", extra={"stream": stream_name})
    return True
