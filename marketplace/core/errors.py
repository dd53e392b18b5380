"""Typed failures of the enrollment core.

Every failure path in the service raises one of these instead of a bare
string or a generic exception.  The HTTP layer maps them to status codes in
one place (marketplace.api.errors).

`retriable` tells the caller whether repeating the same request may succeed:
validation-class errors are terminal, gateway and storage outages are not.
"""

from __future__ import annotations

from typing import Any


class MarketplaceError(Exception):
    """Base class for all enrollment-core errors."""

    code = "marketplace_error"
    retriable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class AlreadyEnrolledError(MarketplaceError):
    code = "already_enrolled"


class CourseNotFoundError(MarketplaceError):
    code = "course_not_found"


class InvalidCourseError(MarketplaceError):
    """Course exists but cannot be enrolled in (no lessons, or retired)."""

    code = "invalid_course"


class EnrollmentNotFoundError(MarketplaceError):
    code = "enrollment_not_found"


class LessonOutOfRangeError(MarketplaceError):
    """Lesson index outside 0..total_lessons-1 of the enrollment snapshot."""

    code = "lesson_out_of_range"


class PaymentNotCompletedError(MarketplaceError):
    code = "payment_not_completed"


class PaymentGatewayError(MarketplaceError):
    """The payment provider rejected the request outright."""

    code = "payment_gateway_error"


class GatewayUnavailableError(PaymentGatewayError):
    """The payment provider timed out or could not be reached."""

    code = "gateway_unavailable"
    retriable = True


class InvalidWebhookError(MarketplaceError):
    code = "invalid_webhook"


class DuplicateKeyError(MarketplaceError):
    """Storage-level uniqueness violation.

    Raised by repositories only; the enrollment service turns it into
    AlreadyEnrolledError before it can reach a caller.
    """

    code = "duplicate_key"


class StorageUnavailableError(MarketplaceError):
    code = "storage_unavailable"
    retriable = True
