"""Enrollment endpoints.

  POST /v1/enrollments                       start an enrollment
    free/manual -> 201 {status: completed, enrollment}
    stripe      -> 202 {status: pending, redirect_url, session_id}
  POST /v1/enrollments/verify                finalize a paid checkout
  POST /v1/enrollments/{course_id}/progress  record a lesson access
  GET  /v1/enrollments                       "my courses" (completed only)

The user id always comes from the bearer token, never from the body.
Domain errors propagate to the handler in marketplace.api.errors.
"""

from __future__ import annotations

from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from marketplace.api.dependencies import get_enrollment_service, require_user
from marketplace.models.enrollment import (
    Enrollment,
    EnrollmentWithCourse,
    LessonProgress,
    PaymentMethod,
)
from marketplace.models.principal import Principal
from marketplace.services.enrollment_service import EnrollmentService

router = APIRouter(prefix="/v1/enrollments", tags=["enrollments"])


class EnrollIn(BaseModel):
    course_id: UUID
    payment_method: PaymentMethod = PaymentMethod.STRIPE


class VerifyIn(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)


class LessonAccessIn(BaseModel):
    lesson_index: int = Field(ge=0)


class ProgressOut(BaseModel):
    total_lessons: int
    completed_lessons: list[int]
    completion_percentage: float
    last_accessed_lesson: int

    @staticmethod
    def of(p: LessonProgress) -> ProgressOut:
        return ProgressOut(
            total_lessons=p.total_lessons,
            completed_lessons=list(p.completed_lessons),
            completion_percentage=p.completion_percentage,
            last_accessed_lesson=p.last_accessed_lesson,
        )


class EnrollmentOut(BaseModel):
    id: str
    course_id: str
    enrolled_at: int
    amount: str
    payment_method: str
    payment_status: str
    progress: ProgressOut
    certificate_issued: bool
    certificate_url: str | None
    is_active: bool

    @staticmethod
    def of(e: Enrollment) -> EnrollmentOut:
        return EnrollmentOut(
            id=str(e.id),
            course_id=str(e.course_id),
            enrolled_at=e.enrolled_at,
            amount=str(e.payment.amount),
            payment_method=e.payment.method.value,
            payment_status=e.payment.status.value,
            progress=ProgressOut.of(e.progress),
            certificate_issued=e.certificate_issued,
            certificate_url=e.certificate_url,
            is_active=e.is_active,
        )


class EnrollOut(BaseModel):
    status: Literal["completed", "pending"]
    enrollment: EnrollmentOut | None = None
    redirect_url: str | None = None
    session_id: str | None = None


class VerifyOut(BaseModel):
    status: str
    newly_completed: bool
    enrollment: EnrollmentOut | None = None


class CourseSummaryOut(BaseModel):
    id: str
    title: str
    short_description: str
    thumbnail: str | None
    lesson_count: int


class EnrolledCourseOut(BaseModel):
    enrollment: EnrollmentOut
    course: CourseSummaryOut

    @staticmethod
    def of(item: EnrollmentWithCourse) -> EnrolledCourseOut:
        c = item.course
        return EnrolledCourseOut(
            enrollment=EnrollmentOut.of(item.enrollment),
            course=CourseSummaryOut(
                id=str(c.id),
                title=c.title,
                short_description=c.short_description,
                thumbnail=c.thumbnail,
                lesson_count=c.lesson_count,
            ),
        )


@router.post(
    "",
    response_model=EnrollOut,
    status_code=status.HTTP_201_CREATED,
    responses={202: {"model": EnrollOut, "description": "Checkout pending"}},
)
async def enroll(
    body: EnrollIn,
    response: Response,
    principal: Annotated[Principal, Depends(require_user)],
    service: Annotated[EnrollmentService, Depends(get_enrollment_service)],
) -> EnrollOut:
    outcome = await service.initiate_enrollment(
        principal.user_id, body.course_id, body.payment_method
    )
    if outcome.redirect_url is not None:
        response.status_code = status.HTTP_202_ACCEPTED
        return EnrollOut(
            status="pending",
            redirect_url=outcome.redirect_url,
            session_id=outcome.session_id,
        )
    return EnrollOut(status="completed", enrollment=EnrollmentOut.of(outcome.enrollment))


@router.post("/verify", response_model=VerifyOut)
async def verify(
    body: VerifyIn,
    principal: Annotated[Principal, Depends(require_user)],
    service: Annotated[EnrollmentService, Depends(get_enrollment_service)],
) -> VerifyOut:
    outcome = await service.verify_enrollment(body.session_id)
    e = outcome.enrollment
    # Finalizing someone else's paid session is harmless; echoing it back is not.
    if e is not None and e.user_id != principal.user_id:
        e = None
    return VerifyOut(
        status=e.payment.status.value if e is not None else "completed",
        newly_completed=outcome.newly_completed,
        enrollment=EnrollmentOut.of(e) if e is not None else None,
    )


@router.post("/{course_id}/progress", response_model=ProgressOut)
async def record_progress(
    course_id: UUID,
    body: LessonAccessIn,
    principal: Annotated[Principal, Depends(require_user)],
    service: Annotated[EnrollmentService, Depends(get_enrollment_service)],
) -> ProgressOut:
    progress = await service.record_lesson_access(
        principal.user_id, course_id, body.lesson_index
    )
    return ProgressOut.of(progress)


@router.get("", response_model=list[EnrolledCourseOut])
async def list_my_enrollments(
    principal: Annotated[Principal, Depends(require_user)],
    service: Annotated[EnrollmentService, Depends(get_enrollment_service)],
) -> list[EnrolledCourseOut]:
    items = await service.list_completed_enrollments(principal.user_id)
    return [EnrolledCourseOut.of(i) for i in items]
