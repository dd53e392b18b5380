"""Enrollment state machine, driven directly against in-memory collaborators."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest

from marketplace.core.config import Settings
from marketplace.core.errors import (
    AlreadyEnrolledError,
    CourseNotFoundError,
    EnrollmentNotFoundError,
    GatewayUnavailableError,
    InvalidCourseError,
    LessonOutOfRangeError,
    PaymentNotCompletedError,
    StorageUnavailableError,
)
from marketplace.models.course import Course
from marketplace.models.enrollment import PaymentMethod, PaymentStatus
from marketplace.repos.course_repo import InMemoryCourseRepo
from marketplace.repos.enrollment_repo import InMemoryEnrollmentRepo
from marketplace.repos.user_projection_repo import InMemoryUserProjectionRepo
from marketplace.services.cache import InMemoryCacheService
from marketplace.services.enrollment_service import (
    EnrollmentService,
    listing_cache_key,
)
from marketplace.services.payment_gateway import InMemoryPaymentGateway
from tests.conftest import make_course

SETTINGS = Settings(
    app_env="test",
    log_level="info",
    log_json=False,
    port=8000,
    database_url=None,
    redis_url=None,
    frontend_url="https://learn.example.com",
)

USER = "user-1"


class _RacingEnrollmentRepo(InMemoryEnrollmentRepo):
    """Never sees the existing row up front, as when two requests race."""

    async def find_active(self, user_id, course_id):
        return None


class _BrokenCounterCourseRepo(InMemoryCourseRepo):
    async def increment_enrollment_count(self, course_id):
        raise StorageUnavailableError("storage unavailable")


class _BrokenProjectionRepo(InMemoryUserProjectionRepo):
    async def add_enrolled_course(self, user_id, course_id):
        raise StorageUnavailableError("storage unavailable")


class Harness:
    def __init__(
        self, *, enrollments=None, courses=None, users=None, defer_cache=False
    ) -> None:
        self.courses = courses or InMemoryCourseRepo()
        self.enrollments = enrollments or InMemoryEnrollmentRepo()
        self.users = users or InMemoryUserProjectionRepo()
        self.gateway = InMemoryPaymentGateway()
        self.cache = InMemoryCacheService()
        self.service = EnrollmentService(
            courses=self.courses,
            enrollments=self.enrollments,
            users=self.users,
            gateway=self.gateway,
            cache=self.cache,
            settings=SETTINGS,
            defer_cache_invalidation=defer_cache,
        )

    def add_course(self, **kwargs) -> Course:
        course = make_course(**kwargs)
        asyncio.run(self.courses.add(course))
        return course

    def students(self, course: Course) -> int:
        return asyncio.run(self.courses.get_by_id(course.id)).students_enrolled

    def projection(self, user_id: str = USER) -> list:
        return asyncio.run(self.users.list_enrolled_courses(user_id))

    def enroll(self, course: Course, method: PaymentMethod, user_id: str = USER):
        return asyncio.run(self.service.initiate_enrollment(user_id, course.id, method))


@pytest.fixture
def h() -> Harness:
    return Harness()


# ---- initiate: free / manual ----


def test_free_enrollment_completes_immediately(h: Harness) -> None:
    course = h.add_course(price="50.00")

    outcome = h.enroll(course, PaymentMethod.FREE)

    assert outcome.redirect_url is None
    assert outcome.enrollment.payment.status is PaymentStatus.COMPLETED
    assert outcome.enrollment.payment.amount == Decimal("50.00")
    assert h.students(course) == 1
    assert h.projection() == [course.id]


def test_manual_enrollment_completes_without_gateway(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.MANUAL)
    assert outcome.enrollment.payment.status is PaymentStatus.COMPLETED
    assert outcome.enrollment.payment.transaction_id is None
    assert h.students(course) == 1


def test_free_path_removes_enrollment_when_aggregates_fail() -> None:
    h = Harness(courses=_BrokenCounterCourseRepo())
    course = h.add_course()

    with pytest.raises(StorageUnavailableError):
        h.enroll(course, PaymentMethod.FREE)

    assert asyncio.run(h.enrollments.find_active(USER, course.id)) is None


def test_free_path_keeps_counted_enrollment_when_projection_fails() -> None:
    h = Harness(users=_BrokenProjectionRepo())
    course = h.add_course()

    with pytest.raises(StorageUnavailableError):
        h.enroll(course, PaymentMethod.FREE)

    # The counter already includes it, so the record must survive
    e = asyncio.run(h.enrollments.find_active(USER, course.id))
    assert e is not None
    assert e.payment.status is PaymentStatus.COMPLETED
    assert h.students(course) == 1


# ---- initiate: hosted checkout ----


def test_checkout_enrollment_is_pending_with_redirect(h: Harness) -> None:
    course = h.add_course(price="50.00")

    outcome = h.enroll(course, PaymentMethod.STRIPE)

    assert outcome.redirect_url is not None
    assert outcome.session_id is not None
    assert outcome.session_id.startswith("cs_test_")
    assert outcome.enrollment.payment.status is PaymentStatus.PENDING
    assert outcome.enrollment.payment.transaction_id == outcome.session_id
    # aggregates wait for confirmed payment
    assert h.students(course) == 0
    assert h.projection() == []


def test_checkout_request_carries_price_metadata_and_redirects(h: Harness) -> None:
    course = h.add_course(price="19.99")

    outcome = h.enroll(course, PaymentMethod.STRIPE)
    req = h.gateway.get_request(outcome.session_id)

    assert req.amount == Decimal("19.99")
    assert req.currency == "usd"
    assert req.description == course.title
    assert req.metadata == {
        "user_id": USER,
        "course_id": str(course.id),
        "enrollment_id": str(outcome.enrollment.id),
    }
    assert req.idempotency_key == f"enrollment-{outcome.enrollment.id}"
    assert req.success_url == (
        "https://learn.example.com/course-success"
        f"?session_id={{CHECKOUT_SESSION_ID}}&courseId={course.id}"
    )
    assert req.cancel_url == f"https://learn.example.com/course/{course.id}"


def test_gateway_failure_leaves_no_enrollment(h: Harness) -> None:
    course = h.add_course()
    h.gateway.fail_next(GatewayUnavailableError("payment provider timed out"))

    with pytest.raises(GatewayUnavailableError):
        h.enroll(course, PaymentMethod.STRIPE)

    assert asyncio.run(h.enrollments.find_active(USER, course.id)) is None


# ---- initiate: validation ----


def test_unknown_course_is_rejected(h: Harness) -> None:
    with pytest.raises(CourseNotFoundError):
        asyncio.run(h.service.initiate_enrollment(USER, uuid4(), PaymentMethod.FREE))


def test_zero_lesson_course_is_rejected(h: Harness) -> None:
    course = h.add_course(lesson_count=0)
    with pytest.raises(InvalidCourseError, match="no lessons"):
        h.enroll(course, PaymentMethod.FREE)


def test_inactive_course_is_rejected(h: Harness) -> None:
    course = h.add_course(is_active=False)
    with pytest.raises(InvalidCourseError):
        h.enroll(course, PaymentMethod.STRIPE)
    assert h.gateway.expired_sessions == []


# ---- duplicates ----


def test_second_enrollment_for_pair_is_rejected(h: Harness) -> None:
    course = h.add_course()
    h.enroll(course, PaymentMethod.FREE)

    with pytest.raises(AlreadyEnrolledError):
        h.enroll(course, PaymentMethod.FREE)

    completed = asyncio.run(
        h.enrollments.list_by_user_and_status(USER, PaymentStatus.COMPLETED)
    )
    assert len(completed) == 1
    assert h.students(course) == 1


def test_pending_enrollment_blocks_a_second_checkout(h: Harness) -> None:
    course = h.add_course()
    h.enroll(course, PaymentMethod.STRIPE)
    with pytest.raises(AlreadyEnrolledError):
        h.enroll(course, PaymentMethod.STRIPE)


def test_storage_duplicate_maps_to_already_enrolled() -> None:
    h = Harness(enrollments=_RacingEnrollmentRepo())
    course = h.add_course()
    h.enroll(course, PaymentMethod.FREE)

    with pytest.raises(AlreadyEnrolledError):
        h.enroll(course, PaymentMethod.FREE)

    assert h.students(course) == 1


def test_storage_duplicate_expires_orphaned_checkout_session() -> None:
    h = Harness(enrollments=_RacingEnrollmentRepo())
    course = h.add_course()
    first = h.enroll(course, PaymentMethod.STRIPE)

    with pytest.raises(AlreadyEnrolledError):
        h.enroll(course, PaymentMethod.STRIPE)

    assert len(h.gateway.expired_sessions) == 1
    assert h.gateway.expired_sessions[0] != first.session_id


def test_concurrent_initiations_yield_exactly_one_success() -> None:
    h = Harness(enrollments=_RacingEnrollmentRepo())
    course = h.add_course()

    async def race():
        return await asyncio.gather(
            *(
                h.service.initiate_enrollment(USER, course.id, PaymentMethod.FREE)
                for _ in range(5)
            ),
            return_exceptions=True,
        )

    results = asyncio.run(race())
    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]

    assert len(successes) == 1
    assert all(isinstance(f, AlreadyEnrolledError) for f in failures)
    assert h.students(course) == 1


def test_other_users_are_independent(h: Harness) -> None:
    course = h.add_course()
    h.enroll(course, PaymentMethod.FREE, user_id="alice")
    h.enroll(course, PaymentMethod.FREE, user_id="bob")
    assert h.students(course) == 2


# ---- verify ----


def test_verify_completes_paid_checkout(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    h.gateway.mark_paid(outcome.session_id)

    result = asyncio.run(h.service.verify_enrollment(outcome.session_id))

    assert result.newly_completed is True
    assert result.enrollment.payment.status is PaymentStatus.COMPLETED
    assert h.students(course) == 1
    assert h.projection() == [course.id]


def test_verify_is_idempotent(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    h.gateway.mark_paid(outcome.session_id)

    results = [
        asyncio.run(h.service.verify_enrollment(outcome.session_id)) for _ in range(5)
    ]

    assert [r.newly_completed for r in results] == [True, False, False, False, False]
    assert all(r.enrollment.is_paid for r in results)
    assert h.students(course) == 1
    assert h.projection() == [course.id]


def test_concurrent_verifications_increment_once(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    h.gateway.mark_paid(outcome.session_id)

    async def burst():
        return await asyncio.gather(
            *(h.service.verify_enrollment(outcome.session_id) for _ in range(4))
        )

    results = asyncio.run(burst())
    assert sum(r.newly_completed for r in results) == 1
    assert h.students(course) == 1


def test_verify_unpaid_session_writes_nothing(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)

    with pytest.raises(PaymentNotCompletedError):
        asyncio.run(h.service.verify_enrollment(outcome.session_id))

    e = asyncio.run(h.enrollments.find_by_transaction_id(outcome.session_id))
    assert e.payment.status is PaymentStatus.PENDING
    assert h.students(course) == 0


def test_verify_replay_repairs_missing_projection(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    h.gateway.mark_paid(outcome.session_id)
    asyncio.run(h.service.verify_enrollment(outcome.session_id))
    h.users._enrolled.clear()  # simulate a lost projection write

    asyncio.run(h.service.verify_enrollment(outcome.session_id))

    assert h.projection() == [course.id]
    assert h.students(course) == 1


def test_verify_after_price_change_keeps_snapshot(h: Harness) -> None:
    course = h.add_course(price="50.00")
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    h.courses._by_id[course.id] = replace(course, price=Decimal("99.00"))
    h.gateway.mark_paid(outcome.session_id)

    result = asyncio.run(h.service.verify_enrollment(outcome.session_id))

    assert result.enrollment.payment.amount == Decimal("50.00")


# ---- fail ----


def test_fail_marks_pending_failed_and_frees_the_pair(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)

    failed = asyncio.run(h.service.fail_enrollment(outcome.session_id))

    assert failed.payment.status is PaymentStatus.FAILED
    assert not failed.is_active
    assert h.students(course) == 0
    retry = h.enroll(course, PaymentMethod.STRIPE)
    assert retry.session_id != outcome.session_id


def test_fail_never_regresses_completed(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    h.gateway.mark_paid(outcome.session_id)
    asyncio.run(h.service.verify_enrollment(outcome.session_id))

    assert asyncio.run(h.service.fail_enrollment(outcome.session_id)) is None
    e = asyncio.run(h.enrollments.find_by_transaction_id(outcome.session_id))
    assert e.payment.status is PaymentStatus.COMPLETED


# ---- progress ----


def test_repeated_lesson_access_counts_once(h: Harness) -> None:
    course = h.add_course(lesson_count=4)
    h.enroll(course, PaymentMethod.FREE)

    asyncio.run(h.service.record_lesson_access(USER, course.id, 2))
    progress = asyncio.run(h.service.record_lesson_access(USER, course.id, 2))

    assert progress.completed_lessons == (2,)
    assert progress.completion_percentage == 25.0
    assert progress.last_accessed_lesson == 2


def test_progress_is_persisted(h: Harness) -> None:
    course = h.add_course(lesson_count=4)
    h.enroll(course, PaymentMethod.FREE)
    asyncio.run(h.service.record_lesson_access(USER, course.id, 0))
    asyncio.run(h.service.record_lesson_access(USER, course.id, 3))

    e = asyncio.run(h.enrollments.find_active(USER, course.id))
    assert e.progress.completed_lessons == (0, 3)
    assert e.progress.completion_percentage == 50.0
    assert e.progress.last_accessed_lesson == 3


def test_progress_without_enrollment_is_rejected(h: Harness) -> None:
    course = h.add_course()
    with pytest.raises(EnrollmentNotFoundError):
        asyncio.run(h.service.record_lesson_access(USER, course.id, 0))


@pytest.mark.parametrize("idx", [-1, 4, 104])
def test_progress_rejects_lesson_outside_course(h: Harness, idx: int) -> None:
    course = h.add_course(lesson_count=4)
    h.enroll(course, PaymentMethod.FREE)

    with pytest.raises(LessonOutOfRangeError):
        asyncio.run(h.service.record_lesson_access(USER, course.id, idx))

    e = asyncio.run(h.enrollments.find_active(USER, course.id))
    assert e.progress.completed_lessons == ()
    assert e.progress.completion_percentage == 0.0


# ---- listing ----


def test_listing_only_shows_completed(h: Harness) -> None:
    free_course = h.add_course(title="Free one")
    pending_course = h.add_course(title="Pending one")
    failed_course = h.add_course(title="Failed one")
    h.enroll(free_course, PaymentMethod.FREE)
    h.enroll(pending_course, PaymentMethod.STRIPE)
    failed = h.enroll(failed_course, PaymentMethod.STRIPE)
    asyncio.run(h.service.fail_enrollment(failed.session_id))

    items = asyncio.run(h.service.list_completed_enrollments(USER))

    assert [i.course.title for i in items] == ["Free one"]
    assert all(i.enrollment.payment.status is PaymentStatus.COMPLETED for i in items)


def test_listing_is_served_from_cache(h: Harness) -> None:
    course = h.add_course()
    h.enroll(course, PaymentMethod.FREE)

    first = asyncio.run(h.service.list_completed_enrollments(USER))
    assert listing_cache_key(USER) in h.cache._store

    # Drop the source row; a cache hit must still answer
    h.enrollments._by_id.clear()
    second = asyncio.run(h.service.list_completed_enrollments(USER))

    assert second == first


def test_cached_listing_round_trips_every_field(h: Harness) -> None:
    course = h.add_course(price="12.50")
    h.enroll(course, PaymentMethod.FREE)
    fresh = asyncio.run(h.service.list_completed_enrollments(USER))
    cached = json.loads(h.cache._store[listing_cache_key(USER)])

    assert cached[0]["enrollment"]["payment"]["amount"] == "12.50"
    assert asyncio.run(h.service.list_completed_enrollments(USER)) == fresh


def test_completion_invalidates_cached_listing(h: Harness) -> None:
    course = h.add_course()
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    assert asyncio.run(h.service.list_completed_enrollments(USER)) == []

    h.gateway.mark_paid(outcome.session_id)
    asyncio.run(h.service.verify_enrollment(outcome.session_id))

    items = asyncio.run(h.service.list_completed_enrollments(USER))
    assert [i.course.id for i in items] == [course.id]


def test_progress_invalidates_cached_listing(h: Harness) -> None:
    course = h.add_course(lesson_count=2)
    h.enroll(course, PaymentMethod.FREE)
    asyncio.run(h.service.list_completed_enrollments(USER))

    asyncio.run(h.service.record_lesson_access(USER, course.id, 1))

    items = asyncio.run(h.service.list_completed_enrollments(USER))
    assert items[0].enrollment.progress.completion_percentage == 50.0


def test_deferred_invalidation_waits_for_flush() -> None:
    h = Harness(defer_cache=True)
    course = h.add_course(lesson_count=2)
    outcome = h.enroll(course, PaymentMethod.STRIPE)
    asyncio.run(h.service.list_completed_enrollments(USER))
    key = listing_cache_key(USER)

    h.gateway.mark_paid(outcome.session_id)
    asyncio.run(h.service.verify_enrollment(outcome.session_id))
    asyncio.run(h.service.record_lesson_access(USER, course.id, 1))

    # Transaction still open: the stale entry must outlive the writes
    assert key in h.cache._store

    asyncio.run(h.service.flush_cache_invalidations())
    assert key not in h.cache._store
    items = asyncio.run(h.service.list_completed_enrollments(USER))
    assert [i.course.id for i in items] == [course.id]


def test_flush_without_writes_is_a_no_op() -> None:
    h = Harness(defer_cache=True)
    course = h.add_course()
    h.enroll(course, PaymentMethod.STRIPE)
    asyncio.run(h.service.list_completed_enrollments(USER))

    asyncio.run(h.service.flush_cache_invalidations())

    assert listing_cache_key(USER) in h.cache._store
