"""Liveness and readiness.

  /health  liveness.  Always 200 while the process can answer; the body
           reports per-dependency status ("ok" / "degraded").
  /ready   readiness.  503 only when a configured database is unreachable.
           Redis is optional here (listings fall back to the database),
           and the payment provider is not probed at all: checkout failures
           already surface per request as 503 + Retry-After.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from redis.exceptions import RedisError

from marketplace.db.engine import engine, ping_database
from marketplace.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _redis_status() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except (RedisError, OSError):
        logger.warning("Redis ping failed", exc_info=True)
        return "degraded"
    return "ok"


async def _database_status() -> str:
    if engine is None:
        return "not_configured"
    return "ok" if await ping_database() else "degraded"


@router.get("/health")
async def health() -> dict:
    checks = {
        "redis": await _redis_status(),
        "database": await _database_status(),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    if engine is not None and not await ping_database():
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
