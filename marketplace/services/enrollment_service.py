"""Enrollment state machine.

    initiate ──free/manual──────────────────────────> completed
        │
        └──stripe──> pending ──verify (paid)──────────> completed
                        │
                        └──webhook (expired/failed)──> failed, inactive

Rules this module holds to:

  - Status only moves forward out of `pending`.  Both transitions are
    conditional writes in the repository, so a replayed verify or webhook
    matches nothing and becomes a no-op.
  - Course counter and user projection are touched only by the call that
    performed the pending -> completed flip (or by a direct completion),
    which is what keeps the counter at +1 per enrollment under retries.
  - The enrollment row is written before the aggregates, and the counter
    (the one non-idempotent write) before the set-add projection.  With
    Postgres all of it commits together in the request transaction;
    without it, a failure after the counter leaves a completed record that
    a repeated set-add can reconcile, never a count with no record.
  - Listing cache entries are dropped only once the writes are visible.
    Under a request transaction the keys are queued and flushed by the
    session dependency after commit (flush_cache_invalidations).
  - The active-pair unique index is the real duplicate guard.  The
    find_active() check up front is only a fast path, and a
    DuplicateKeyError from the insert means the same thing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from marketplace.core.config import Settings
from marketplace.core.errors import (
    AlreadyEnrolledError,
    CourseNotFoundError,
    DuplicateKeyError,
    EnrollmentNotFoundError,
    InvalidCourseError,
    LessonOutOfRangeError,
    PaymentGatewayError,
    PaymentNotCompletedError,
    StorageUnavailableError,
)
from marketplace.core.metrics import ENROLLMENT_VERIFICATIONS, ENROLLMENTS_CREATED
from marketplace.models.course import Course, CourseSummary
from marketplace.models.enrollment import (
    Enrollment,
    EnrollmentWithCourse,
    LessonProgress,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
)
from marketplace.repos.course_repo import CourseRepo
from marketplace.repos.enrollment_repo import EnrollmentRepo
from marketplace.repos.user_projection_repo import UserProjectionRepo
from marketplace.services.cache import CacheService
from marketplace.services.payment_gateway import CheckoutRequest, PaymentGateway

logger = logging.getLogger(__name__)

# Long enough to absorb dashboard refreshes; explicit invalidation covers
# the writes we know about.
LISTING_CACHE_TTL = 300


def listing_cache_key(user_id: str) -> str:
    return f"enrollments:{user_id}"


@dataclass(frozen=True, slots=True)
class EnrollmentOutcome:
    enrollment: Enrollment
    redirect_url: str | None = None  # set only for a pending checkout

    @property
    def session_id(self) -> str | None:
        return self.enrollment.payment.transaction_id


@dataclass(frozen=True, slots=True)
class VerificationOutcome:
    enrollment: Enrollment | None
    newly_completed: bool


class EnrollmentService:
    def __init__(
        self,
        *,
        courses: CourseRepo,
        enrollments: EnrollmentRepo,
        users: UserProjectionRepo,
        gateway: PaymentGateway,
        cache: CacheService,
        settings: Settings,
        defer_cache_invalidation: bool = False,
    ) -> None:
        self._courses = courses
        self._enrollments = enrollments
        self._users = users
        self._gateway = gateway
        self._cache = cache
        self._settings = settings
        self._defer_invalidation = defer_cache_invalidation
        self._stale_keys: set[str] = set()

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------

    async def initiate_enrollment(
        self, user_id: str, course_id: UUID, payment_method: PaymentMethod
    ) -> EnrollmentOutcome:
        ctx = {"user_id": user_id, "course_id": str(course_id)}

        if await self._enrollments.find_active(user_id, course_id) is not None:
            logger.info("Duplicate enrollment rejected", extra=ctx)
            raise AlreadyEnrolledError("already enrolled in this course", ctx)

        course = await self._courses.get_by_id(course_id)
        if course is None:
            raise CourseNotFoundError("course not found", ctx)
        if not course.is_active:
            raise InvalidCourseError("course is not open for enrollment", ctx)
        if course.lesson_count < 1:
            raise InvalidCourseError("course has no lessons", ctx)

        if payment_method.is_gateway_backed:
            return await self._start_checkout(user_id, course, payment_method)
        return await self._enroll_directly(user_id, course, payment_method)

    async def _enroll_directly(
        self, user_id: str, course: Course, method: PaymentMethod
    ) -> EnrollmentOutcome:
        enrollment = Enrollment.new(
            user_id=user_id,
            course_id=course.id,
            total_lessons=course.lesson_count,
            amount=course.price,
            method=method,
            status=PaymentStatus.COMPLETED,
        )
        await self._insert(enrollment)

        try:
            await self._courses.increment_enrollment_count(course.id)
        except Exception:
            # No aggregate has moved yet, so the record may go.  Under
            # Postgres the request rollback discards the insert as well.
            logger.warning(
                "Course counter update failed, removing enrollment",
                extra={"enrollment_id": str(enrollment.id)},
            )
            await self._enrollments.delete(enrollment.id)
            raise
        # The counter now includes this row; it stays even if the set-add fails
        await self._apply_projection(enrollment)

        ENROLLMENTS_CREATED.labels(payment_method=method.value, status="completed").inc()
        logger.info(
            "Enrollment created method=%s status=completed",
            method.value,
            extra={"enrollment_id": str(enrollment.id), "course_id": str(course.id)},
        )
        return EnrollmentOutcome(enrollment=enrollment)

    async def _start_checkout(
        self, user_id: str, course: Course, method: PaymentMethod
    ) -> EnrollmentOutcome:
        # The id is fixed before the provider call so it can double as the
        # idempotency key.  It is fresh per call, so it only collapses the
        # SDK's own network retries of this one create request.
        enrollment_id = uuid4()
        frontend = self._settings.frontend_url
        request = CheckoutRequest(
            amount=course.price,
            currency=self._settings.checkout_currency,
            description=course.title,
            success_url=(
                f"{frontend}/course-success"
                f"?session_id={{CHECKOUT_SESSION_ID}}&courseId={course.id}"
            ),
            cancel_url=f"{frontend}/course/{course.id}",
            metadata={
                "user_id": user_id,
                "course_id": str(course.id),
                "enrollment_id": str(enrollment_id),
            },
            idempotency_key=f"enrollment-{enrollment_id}",
            image_url=course.thumbnail,
        )
        session = await self._gateway.create_checkout_session(request)

        enrollment = Enrollment.new(
            user_id=user_id,
            course_id=course.id,
            total_lessons=course.lesson_count,
            amount=course.price,
            method=method,
            status=PaymentStatus.PENDING,
            transaction_id=session.session_id,
            enrollment_id=enrollment_id,
        )
        try:
            await self._insert(enrollment)
        except (AlreadyEnrolledError, StorageUnavailableError):
            # No enrollment row points at this session, so nobody may pay it
            await self._abandon_session(session.session_id)
            raise

        ENROLLMENTS_CREATED.labels(payment_method=method.value, status="pending").inc()
        logger.info(
            "Enrollment created method=%s status=pending",
            method.value,
            extra={
                "enrollment_id": str(enrollment.id),
                "course_id": str(course.id),
                "session_id": session.session_id,
            },
        )
        return EnrollmentOutcome(enrollment=enrollment, redirect_url=session.redirect_url)

    async def _insert(self, enrollment: Enrollment) -> None:
        try:
            await self._enrollments.insert(enrollment)
        except DuplicateKeyError:
            logger.info(
                "Duplicate enrollment rejected by storage",
                extra={"user_id": enrollment.user_id, "course_id": str(enrollment.course_id)},
            )
            raise AlreadyEnrolledError(
                "already enrolled in this course",
                {"user_id": enrollment.user_id, "course_id": str(enrollment.course_id)},
            ) from None

    async def _abandon_session(self, session_id: str) -> None:
        try:
            await self._gateway.expire_session(session_id)
        except PaymentGatewayError:
            # Unpaid sessions also lapse on the provider side after 24h
            logger.warning(
                "Could not expire orphaned checkout session",
                extra={"session_id": session_id},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # verify / fail
    # ------------------------------------------------------------------

    async def verify_enrollment(self, session_id: str) -> VerificationOutcome:
        """Finalize a paid checkout.  Safe to call any number of times."""
        status = await self._gateway.get_session_status(session_id)
        if not status.paid:
            ENROLLMENT_VERIFICATIONS.labels(result="not_paid").inc()
            logger.info("Verification: not paid", extra={"session_id": session_id})
            raise PaymentNotCompletedError(
                "payment not completed",
                {"session_id": session_id, "expired": status.expired},
            )

        enrollment = await self._enrollments.complete_pending(session_id)
        if enrollment is None:
            existing = await self._enrollments.find_by_transaction_id(session_id)
            if existing is not None and existing.is_paid:
                # Set-add: re-asserting the projection repairs a completion
                # whose aggregate writes never landed.  The counter is not
                # idempotent and is left alone.
                await self._users.add_enrolled_course(existing.user_id, existing.course_id)
            ENROLLMENT_VERIFICATIONS.labels(result="already_completed").inc()
            logger.info(
                "Verification: nothing pending",
                extra={"session_id": session_id},
            )
            return VerificationOutcome(enrollment=existing, newly_completed=False)

        await self._apply_completion(enrollment)
        ENROLLMENT_VERIFICATIONS.labels(result="completed").inc()
        logger.info(
            "Verification: enrollment completed",
            extra={"session_id": session_id, "enrollment_id": str(enrollment.id)},
        )
        return VerificationOutcome(enrollment=enrollment, newly_completed=True)

    async def fail_enrollment(self, session_id: str) -> Enrollment | None:
        """pending -> failed for an expired or declined checkout.

        The enrollment is deactivated so the user may start over.  Aggregates
        are never touched: they were never incremented for a pending row.
        """
        enrollment = await self._enrollments.fail_pending(session_id)
        if enrollment is None:
            logger.info("Fail: nothing pending", extra={"session_id": session_id})
            return None
        ENROLLMENT_VERIFICATIONS.labels(result="failed").inc()
        logger.info(
            "Enrollment failed",
            extra={"session_id": session_id, "enrollment_id": str(enrollment.id)},
        )
        return enrollment

    async def _apply_completion(self, enrollment: Enrollment) -> None:
        await self._courses.increment_enrollment_count(enrollment.course_id)
        await self._apply_projection(enrollment)

    async def _apply_projection(self, enrollment: Enrollment) -> None:
        await self._users.add_enrolled_course(enrollment.user_id, enrollment.course_id)
        await self._invalidate_listing(enrollment.user_id)

    # ------------------------------------------------------------------
    # cache invalidation
    # ------------------------------------------------------------------

    async def _invalidate_listing(self, user_id: str) -> None:
        key = listing_cache_key(user_id)
        if self._defer_invalidation:
            self._stale_keys.add(key)
        else:
            await self._cache.delete(key)

    async def flush_cache_invalidations(self) -> None:
        """Drop the listing entries queued while the transaction was open.

        Call only after commit: a listing read that races the commit would
        otherwise repopulate the entry from pre-commit rows for a full TTL.
        """
        while self._stale_keys:
            await self._cache.delete(self._stale_keys.pop())

    # ------------------------------------------------------------------
    # progress
    # ------------------------------------------------------------------

    async def record_lesson_access(
        self, user_id: str, course_id: UUID, lesson_index: int
    ) -> LessonProgress:
        ctx = {"user_id": user_id, "course_id": str(course_id)}
        enrollment = await self._enrollments.find_active_for_update(user_id, course_id)
        if enrollment is None:
            raise EnrollmentNotFoundError("enrollment not found", ctx)

        total = enrollment.progress.total_lessons
        if not 0 <= lesson_index < total:
            raise LessonOutOfRangeError(
                f"lesson_index must be between 0 and {total - 1}",
                {**ctx, "lesson_index": lesson_index},
            )

        progress = enrollment.progress.record_access(lesson_index)
        if progress == enrollment.progress:
            return progress

        updated = await self._enrollments.update_progress(enrollment.id, progress)
        if updated is None:
            raise EnrollmentNotFoundError(
                "enrollment not found", {"enrollment_id": str(enrollment.id)}
            )
        await self._invalidate_listing(user_id)
        return updated.progress

    # ------------------------------------------------------------------
    # listing
    # ------------------------------------------------------------------

    async def list_completed_enrollments(self, user_id: str) -> list[EnrollmentWithCourse]:
        key = listing_cache_key(user_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return [_decode_item(item) for item in json.loads(cached)]

        enrollments = await self._enrollments.list_by_user_and_status(
            user_id, PaymentStatus.COMPLETED
        )
        items: list[EnrollmentWithCourse] = []
        for e in enrollments:
            course = await self._courses.get_by_id(e.course_id)
            if course is None:
                logger.warning(
                    "Completed enrollment references a missing course",
                    extra={"enrollment_id": str(e.id), "course_id": str(e.course_id)},
                )
                continue
            items.append(EnrollmentWithCourse(enrollment=e, course=CourseSummary.of(course)))

        await self._cache.set(
            key, json.dumps([_encode_item(i) for i in items]), LISTING_CACHE_TTL
        )
        return items


# ---------------------------------------------------------------------------
# cache (de)serialization
# ---------------------------------------------------------------------------


def _encode_item(item: EnrollmentWithCourse) -> dict[str, Any]:
    e, c = item.enrollment, item.course
    return {
        "enrollment": {
            "id": str(e.id),
            "user_id": e.user_id,
            "course_id": str(e.course_id),
            "enrolled_at": e.enrolled_at,
            "progress": {
                "total_lessons": e.progress.total_lessons,
                "completed_lessons": list(e.progress.completed_lessons),
                "completion_percentage": e.progress.completion_percentage,
                "last_accessed_lesson": e.progress.last_accessed_lesson,
            },
            "payment": {
                "amount": str(e.payment.amount),
                "method": e.payment.method.value,
                "status": e.payment.status.value,
                "transaction_id": e.payment.transaction_id,
            },
            "certificate_issued": e.certificate_issued,
            "certificate_url": e.certificate_url,
            "is_active": e.is_active,
        },
        "course": {
            "id": str(c.id),
            "title": c.title,
            "short_description": c.short_description,
            "thumbnail": c.thumbnail,
            "lesson_count": c.lesson_count,
        },
    }


def _decode_item(raw: dict[str, Any]) -> EnrollmentWithCourse:
    e, c, p, pay = (
        raw["enrollment"],
        raw["course"],
        raw["enrollment"]["progress"],
        raw["enrollment"]["payment"],
    )
    return EnrollmentWithCourse(
        enrollment=Enrollment(
            id=UUID(e["id"]),
            user_id=e["user_id"],
            course_id=UUID(e["course_id"]),
            enrolled_at=e["enrolled_at"],
            progress=LessonProgress(
                total_lessons=p["total_lessons"],
                completed_lessons=tuple(p["completed_lessons"]),
                completion_percentage=p["completion_percentage"],
                last_accessed_lesson=p["last_accessed_lesson"],
            ),
            payment=PaymentDetails(
                amount=Decimal(pay["amount"]),
                method=PaymentMethod(pay["method"]),
                status=PaymentStatus(pay["status"]),
                transaction_id=pay["transaction_id"],
            ),
            certificate_issued=e["certificate_issued"],
            certificate_url=e["certificate_url"],
            is_active=e["is_active"],
        ),
        course=CourseSummary(
            id=UUID(c["id"]),
            title=c["title"],
            short_description=c["short_description"],
            thumbnail=c["thumbnail"],
            lesson_count=c["lesson_count"],
        ),
    )
