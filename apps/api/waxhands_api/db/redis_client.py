"""Redis client configuration for the real-time notifier."""

import os
import redis
from urllib.parse import urlparse


def build_redis_client(redis_url: str) -> redis.Redis:
    """
    Build a Redis client for the given URL.

    - redis_url: redis://host:6379/0 or rediss://...
    - REDIS_PASSWORD: Applied only if URL has no password

    The connection is established lazily on first command, so building a
    client never blocks application startup.

    Returns:
        redis.Redis: Redis client
    """
    redis_password = os.getenv("REDIS_PASSWORD")

    # Parse URL to check if password is already present
    parsed = urlparse(redis_url)

    kwargs = {
        "decode_responses": True,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "health_check_interval": 30,
    }

    if not parsed.password and redis_password:
        kwargs["password"] = redis_password

    return redis.from_url(redis_url, **kwargs)
