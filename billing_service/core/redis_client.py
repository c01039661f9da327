# billing_service/core/redis_client.py
# Shared Redis connection for idempotency keys, compensation tasks,
# the plan cache and event publishing.

from functools import lru_cache

import redis as redis_lib

from billing_service.core.config import settings


@lru_cache
def get_redis() -> redis_lib.Redis:
    """
    Process-wide Redis client (connection pooled by redis-py).
    decode_responses=True so every caller gets str, not bytes.
    """
    return redis_lib.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )


def ping_redis() -> bool:
    """Used by startup and /health. Returns False instead of raising."""
    try:
        return bool(get_redis().ping())
    except redis_lib.RedisError:
        return False
