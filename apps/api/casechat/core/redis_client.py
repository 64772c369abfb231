"""Redis client helper for the websocket backplane."""

from __future__ import annotations

import os

from casechat.core.config import settings

REDIS_DISABLED_URL = "memory://"
REDIS_MAX_CONNECTIONS = 20
REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
REDIS_HEALTH_CHECK_SECONDS = 30

_async_client = None


def get_redis_url() -> str | None:
    """REDIS_URL from the environment (or settings); None disables Redis."""
    url = os.getenv("REDIS_URL") or settings.REDIS_URL
    if not url or url.strip().lower() == REDIS_DISABLED_URL:
        return None
    return url.strip()


def get_async_redis_client():
    url = get_redis_url()
    if not url:
        return None

    global _async_client
    if _async_client is None:
        import redis.asyncio as redis

        # No socket read timeout: the pub/sub listener blocks on reads
        pool = redis.ConnectionPool.from_url(
            url,
            max_connections=REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
            health_check_interval=REDIS_HEALTH_CHECK_SECONDS,
            retry_on_timeout=True,
        )
        _async_client = redis.Redis(connection_pool=pool)
    return _async_client


async def close_async_redis_client() -> None:
    global _async_client
    if _async_client is not None:
        await _async_client.aclose()
        _async_client = None
