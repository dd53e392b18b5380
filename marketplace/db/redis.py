"""Redis client for the "my courses" listing cache.

Built at import time when REDIS_URL is set, None otherwise (the cache then
lives in process memory).  Redis only holds derived data here: losing it
costs a cache miss, never an enrollment, so an unreachable server at
startup is logged and the app starts anyway.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from marketplace.core.config import SETTINGS

logger = logging.getLogger(__name__)

# Cache reads sit on the listing hot path; a slow Redis should look like a
# miss, not stall the request.
SOCKET_TIMEOUT_SECONDS = 0.5

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
        socket_timeout=SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    if redis_pool is None:
        logger.info("No REDIS_URL configured; listing cache is in-memory")
        yield
        return

    kwargs = redis_pool.connection_pool.connection_kwargs
    try:
        await redis_pool.ping()  # type: ignore[misc]
        logger.info("Redis connected: %s:%s", kwargs.get("host"), kwargs.get("port"))
    except (RedisError, OSError):
        logger.warning("Redis unreachable on startup; listings served from storage")

    try:
        yield
    finally:
        await redis_pool.aclose()
        logger.info("Redis connection pool closed")
