"""Redis client helpers with connection pooling."""

from __future__ import annotations

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

REDIS_DISABLED_URL = "memory://"
DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_HEALTH_CHECK_SECONDS = 30


def create_async_redis_client(url: str, max_connections: int = 20) -> redis.Redis:
    """Build an asyncio Redis client backed by its own connection pool."""
    pool = redis.ConnectionPool.from_url(
        url,
        max_connections=max_connections,
        socket_connect_timeout=DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS,
        socket_timeout=DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS,
        health_check_interval=DEFAULT_REDIS_HEALTH_CHECK_SECONDS,
        retry_on_timeout=True,
        decode_responses=True,
    )
    logger.info(f"Redis pool created (max_connections={max_connections})")
    return redis.Redis(connection_pool=pool)
