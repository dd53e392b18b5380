from __future__ import annotations

import datetime
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import StrEnum
from uuid import UUID, uuid4

from marketplace.models.course import CourseSummary


class PaymentMethod(StrEnum):
    FREE = "free"
    STRIPE = "stripe"  # hosted checkout
    MANUAL = "manual"  # settled outside the gateway, completes immediately

    @property
    def is_gateway_backed(self) -> bool:
        return self is PaymentMethod.STRIPE


class PaymentStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LessonProgress:
    total_lessons: int
    completed_lessons: tuple[int, ...] = ()
    completion_percentage: float = 0.0
    last_accessed_lesson: int = 0

    @staticmethod
    def start(total_lessons: int) -> LessonProgress:
        if total_lessons < 1:
            raise ValueError("total_lessons must be at least 1")
        return LessonProgress(total_lessons=total_lessons)

    def record_access(self, lesson_index: int) -> LessonProgress:
        """Mark a lesson as completed (once) and remember it as the resume point."""
        if not 0 <= lesson_index < self.total_lessons:
            raise ValueError(
                f"lesson_index must be in 0..{self.total_lessons - 1} (got {lesson_index})"
            )
        if lesson_index in self.completed_lessons:
            return replace(self, last_accessed_lesson=lesson_index)

        completed = (*self.completed_lessons, lesson_index)
        return replace(
            self,
            completed_lessons=completed,
            completion_percentage=_percentage(len(completed), self.total_lessons),
            last_accessed_lesson=lesson_index,
        )


def _percentage(done: int, total: int) -> float:
    return round(100.0 * done / total, 2)


@dataclass(frozen=True, slots=True)
class PaymentDetails:
    amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: str | None = None  # checkout session id for gateway methods


@dataclass(frozen=True, slots=True)
class Enrollment:
    id: UUID
    user_id: str
    course_id: UUID
    enrolled_at: int
    progress: LessonProgress
    payment: PaymentDetails
    certificate_issued: bool = False
    certificate_url: str | None = None
    is_active: bool = True

    @staticmethod
    def new(
        *,
        user_id: str,
        course_id: UUID,
        total_lessons: int,
        amount: Decimal,
        method: PaymentMethod,
        status: PaymentStatus,
        transaction_id: str | None = None,
        enrollment_id: UUID | None = None,
    ) -> Enrollment:
        return Enrollment(
            id=enrollment_id or uuid4(),
            user_id=user_id,
            course_id=course_id,
            enrolled_at=int(datetime.datetime.now(datetime.UTC).timestamp() * 1000),
            progress=LessonProgress.start(total_lessons),
            payment=PaymentDetails(
                amount=amount,
                method=method,
                status=status,
                transaction_id=transaction_id,
            ),
        )

    @property
    def is_paid(self) -> bool:
        return self.payment.status is PaymentStatus.COMPLETED


@dataclass(frozen=True, slots=True)
class EnrollmentWithCourse:
    """Read model for "my courses": a completed enrollment plus its course."""

    enrollment: Enrollment
    course: CourseSummary
