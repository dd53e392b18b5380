from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.api.enrollments import router as enrollments_router
from marketplace.api.errors import register_error_handlers
from marketplace.api.health import router as health_router
from marketplace.api.metrics_endpoint import router as metrics_router
from marketplace.api.webhooks import router as webhooks_router
from marketplace.core.config import SETTINGS
from marketplace.core.logging import setup_logging
from marketplace.db.engine import lifespan_db
from marketplace.db.redis import lifespan_redis
from marketplace.middleware.metrics import MetricsMiddleware
from marketplace.middleware.request_context import RequestContextMiddleware

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Nested so teardown runs in reverse order
    async with lifespan_db():
        async with lifespan_redis():
            yield


app = FastAPI(
    title="course-marketplace",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[SETTINGS.frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    # Lets the frontend quote the id in support requests
    expose_headers=["X-Request-ID"],
)

# Middleware execution order: last-added runs first (outermost layer).
# RequestContext (outermost) → Metrics → CORS → route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

register_error_handlers(app)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(enrollments_router)
app.include_router(webhooks_router)

logger.info(
    "course-marketplace started  env=%s log_level=%s port=%d gateway=%s docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "stripe" if SETTINGS.stripe_secret_key else "in-memory",
    "on" if SETTINGS.is_dev else "off",
)
