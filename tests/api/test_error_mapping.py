"""Domain error -> HTTP status mapping."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi import Request

from marketplace.api.errors import (
    RETRY_AFTER_SECONDS,
    marketplace_error_handler,
    status_for,
)
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


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (AlreadyEnrolledError("x"), 409),
        (DuplicateKeyError("x"), 409),
        (CourseNotFoundError("x"), 404),
        (EnrollmentNotFoundError("x"), 404),
        (InvalidCourseError("x"), 422),
        (LessonOutOfRangeError("x"), 422),
        (PaymentNotCompletedError("x"), 402),
        (GatewayUnavailableError("x"), 503),
        (StorageUnavailableError("x"), 503),
        (PaymentGatewayError("x"), 502),
        (InvalidWebhookError("x"), 400),
        (MarketplaceError("x"), 500),
    ],
)
def test_status_for(exc: MarketplaceError, expected: int) -> None:
    assert status_for(exc) == expected


def test_unavailable_gateway_wins_over_generic_gateway_error() -> None:
    # GatewayUnavailableError is a PaymentGatewayError; the more specific
    # mapping must be consulted first.
    assert isinstance(GatewayUnavailableError("x"), PaymentGatewayError)
    assert status_for(GatewayUnavailableError("x")) == 503


def test_handler_renders_code_message_and_retry_after() -> None:
    resp = asyncio.run(
        marketplace_error_handler(
            Request({"type": "http", "method": "GET", "path": "/", "headers": []}),
            StorageUnavailableError("storage unavailable"),
        )
    )
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == str(RETRY_AFTER_SECONDS)
    assert json.loads(resp.body) == {
        "detail": {"code": "storage_unavailable", "message": "storage unavailable"}
    }
