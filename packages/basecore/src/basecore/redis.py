"""
Redis client utilities for basecore.

Provides lazy-initialized Redis client to avoid import-time connections.
"""

import functools
from typing import Any

import redis

from basecore.settings import get_settings


@functools.lru_cache()
def get_redis_client() -> redis.Redis | None:
    """
    Get Redis client (cached).

    Returns None when REDIS_URL is not configured.
    """
    url = get_settings().REDIS_URL
    if not url:
        return None
    return redis.from_url(url, decode_responses=True)


def publish_to_stream(
    client: redis.Redis,
    stream_name: str,
    data: dict[str, Any],
    max_len: int | None = 10000,
) -> str:
    """
    Publish a message to a Redis stream.

    Args:
        client: Redis client
        stream_name: Name of the Redis stream
        data: Dictionary of field-value pairs to publish
        max_len: Maximum stream length (approximate trim)

    Returns:
        Message ID assigned by Redis
    """
    string_data = {k: str(v) if not isinstance(v, str) else v for k, v in data.items()}

    if max_len:
        return client.xadd(stream_name, string_data, maxlen=max_len, approximate=True)
    return client.xadd(stream_name, string_data)
