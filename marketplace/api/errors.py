"""HTTP mapping for MarketplaceError.

Routes raise domain errors and let them bubble; this handler is the only
place that decides status codes.  Body shape:

    {"detail": {"code": "already_enrolled", "message": "..."}}

Retriable errors (gateway or storage outage) add a Retry-After header so
clients back off instead of hammering a dependency that is already down.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from marketplace.core.errors import (
    AlreadyEnrolledError,
    CourseNotFoundError,
    DuplicateKeyError,
    EnrollmentNotFoundError,
    GatewayUnavailableError,
    InvalidCourseError,
    InvalidWebhookError,
    LessonOutOfRangeError,
    MarketplaceError,
    PaymentGatewayError,
    PaymentNotCompletedError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 5

# Order matters: first isinstance match wins, so subclasses go first.
_STATUS_BY_ERROR: list[tuple[type[MarketplaceError], int]] = [
    (AlreadyEnrolledError, status.HTTP_409_CONFLICT),
    (DuplicateKeyError, status.HTTP_409_CONFLICT),
    (CourseNotFoundError, status.HTTP_404_NOT_FOUND),
    (EnrollmentNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidCourseError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (LessonOutOfRangeError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PaymentNotCompletedError, status.HTTP_402_PAYMENT_REQUIRED),
    (GatewayUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PaymentGatewayError, status.HTTP_502_BAD_GATEWAY),
    (InvalidWebhookError, status.HTTP_400_BAD_REQUEST),
]


def status_for(exc: MarketplaceError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def marketplace_error_handler(
    request: Request, exc: MarketplaceError
) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.warning("Request failed: %s", exc)
    else:
        logger.info("Request rejected: %s", exc)

    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retriable else None
    return JSONResponse(
        status_code=code,
        content={"detail": {"code": exc.code, "message": exc.message}},
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
