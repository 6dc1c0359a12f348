"""Redis client helper with connection pooling."""

from __future__ import annotations

import redis.asyncio as redis

DEFAULT_REDIS_MAX_CONNECTIONS = 20
DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_HEALTH_CHECK_SECONDS = 30


def create_async_redis(url: str) -> redis.Redis:
    pool = redis.ConnectionPool.from_url(
        url,
        max_connections=DEFAULT_REDIS_MAX_CONNECTIONS,
        socket_connect_timeout=DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS,
        socket_timeout=DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS,
        health_check_interval=DEFAULT_REDIS_HEALTH_CHECK_SECONDS,
        retry_on_timeout=True,
    )
    return redis.Redis(connection_pool=pool)
