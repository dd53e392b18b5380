"""FastAPI dependencies: bearer auth and enrollment-service wiring.

Storage is chosen once at import time, like the engine and Redis pool:

  DATABASE_URL set   -> Pg repos over a request-scoped session (one
                        transaction per request)
  DATABASE_URL unset -> process-wide in-memory repos (dev, tests)

The payment gateway follows STRIPE_SECRET_KEY the same way.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from marketplace.core.config import SETTINGS
from marketplace.db.engine import async_session_factory, session_scope
from marketplace.models.principal import Principal
from marketplace.repos.course_repo import InMemoryCourseRepo
from marketplace.repos.enrollment_repo import InMemoryEnrollmentRepo
from marketplace.repos.pg_course_repo import PgCourseRepo
from marketplace.repos.pg_enrollment_repo import PgEnrollmentRepo
from marketplace.repos.pg_user_projection_repo import PgUserProjectionRepo
from marketplace.repos.user_projection_repo import InMemoryUserProjectionRepo
from marketplace.services import token_service
from marketplace.services.cache import cache_service
from marketplace.services.enrollment_service import EnrollmentService
from marketplace.services.payment_gateway import (
    InMemoryPaymentGateway,
    PaymentGateway,
    StripePaymentGateway,
)

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def require_user(
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(bearer_scheme)
    ],
) -> Principal:
    """Extract and validate the JWT bearer token. Returns a Principal."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = token_service.decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    principal = Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
    )
    logger.debug("Token validated for user=%s", principal.user_id)
    return principal


# ---------------------------------------------------------------------------
# Module-level singletons
# ---------------------------------------------------------------------------

course_repo = InMemoryCourseRepo()
enrollment_repo = InMemoryEnrollmentRepo()
user_projection_repo = InMemoryUserProjectionRepo()

if SETTINGS.stripe_secret_key:
    payment_gateway: PaymentGateway = StripePaymentGateway(
        SETTINGS.stripe_secret_key,
        webhook_secret=SETTINGS.stripe_webhook_secret,
        timeout_seconds=SETTINGS.gateway_timeout_seconds,
    )
else:
    payment_gateway = InMemoryPaymentGateway()


def get_payment_gateway() -> PaymentGateway:
    return payment_gateway


async def _pg_enrollment_service() -> AsyncGenerator[EnrollmentService, None]:
    """Service over one request transaction.

    Listing cache keys touched by the request are dropped after the commit,
    so a concurrent read cannot re-cache rows the commit is about to change.
    """
    async with session_scope() as session:
        service = EnrollmentService(
            courses=PgCourseRepo(session),
            enrollments=PgEnrollmentRepo(session),
            users=PgUserProjectionRepo(session),
            gateway=payment_gateway,
            cache=cache_service,
            settings=SETTINGS,
            defer_cache_invalidation=True,
        )
        yield service
    await service.flush_cache_invalidations()


def _memory_enrollment_service() -> EnrollmentService:
    return EnrollmentService(
        courses=course_repo,
        enrollments=enrollment_repo,
        users=user_projection_repo,
        gateway=payment_gateway,
        cache=cache_service,
        settings=SETTINGS,
    )


get_enrollment_service = (
    _pg_enrollment_service
    if async_session_factory is not None
    else _memory_enrollment_service
)
