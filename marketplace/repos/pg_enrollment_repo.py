"""PostgreSQL implementation of EnrollmentRepo.

State transitions are conditional UPDATEs (WHERE payment_status = 'pending')
so two concurrent verifications of the same checkout cannot both observe
the pending row: exactly one UPDATE reports a changed row.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.db.errors import storage_errors
from marketplace.db.tables import EnrollmentRow
from marketplace.models.enrollment import (
    Enrollment,
    LessonProgress,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
)


class PgEnrollmentRepo:
    """Satisfies the EnrollmentRepo Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_active(self, user_id: str, course_id: UUID) -> Enrollment | None:
        stmt = select(EnrollmentRow).where(
            EnrollmentRow.user_id == user_id,
            EnrollmentRow.course_id == course_id,
            EnrollmentRow.is_active.is_(True),
        )
        return await self._one_or_none(stmt, "find_active")

    async def find_active_for_update(
        self, user_id: str, course_id: UUID
    ) -> Enrollment | None:
        stmt = (
            select(EnrollmentRow)
            .where(
                EnrollmentRow.user_id == user_id,
                EnrollmentRow.course_id == course_id,
                EnrollmentRow.is_active.is_(True),
            )
            .with_for_update()
        )
        return await self._one_or_none(stmt, "find_active_for_update")

    async def find_by_transaction_id(self, session_id: str) -> Enrollment | None:
        stmt = select(EnrollmentRow).where(EnrollmentRow.transaction_id == session_id)
        return await self._one_or_none(stmt, "find_by_transaction_id")

    async def insert(self, enrollment: Enrollment) -> None:
        row = _enrollment_to_row(enrollment)
        with storage_errors("insert_enrollment"):
            # SAVEPOINT: a unique violation rolls back only this insert,
            # leaving the request transaction usable.
            async with self._session.begin_nested():
                self._session.add(row)

    async def update_payment_status(
        self, enrollment_id: UUID, status: PaymentStatus
    ) -> Enrollment | None:
        stmt = (
            update(EnrollmentRow)
            .where(EnrollmentRow.id == enrollment_id)
            .values(payment_status=status.value)
            .returning(EnrollmentRow)
        )
        return await self._one_or_none(stmt, "update_payment_status")

    async def complete_pending(self, session_id: str) -> Enrollment | None:
        stmt = (
            update(EnrollmentRow)
            .where(
                EnrollmentRow.transaction_id == session_id,
                EnrollmentRow.payment_status == PaymentStatus.PENDING.value,
            )
            .values(payment_status=PaymentStatus.COMPLETED.value)
            .returning(EnrollmentRow)
        )
        return await self._one_or_none(stmt, "complete_pending")

    async def fail_pending(self, session_id: str) -> Enrollment | None:
        stmt = (
            update(EnrollmentRow)
            .where(
                EnrollmentRow.transaction_id == session_id,
                EnrollmentRow.payment_status == PaymentStatus.PENDING.value,
            )
            .values(payment_status=PaymentStatus.FAILED.value, is_active=False)
            .returning(EnrollmentRow)
        )
        return await self._one_or_none(stmt, "fail_pending")

    async def update_progress(
        self, enrollment_id: UUID, progress: LessonProgress
    ) -> Enrollment | None:
        stmt = (
            update(EnrollmentRow)
            .where(EnrollmentRow.id == enrollment_id)
            .values(
                completed_lessons=list(progress.completed_lessons),
                completion_percentage=progress.completion_percentage,
                last_accessed_lesson=progress.last_accessed_lesson,
            )
            .returning(EnrollmentRow)
        )
        return await self._one_or_none(stmt, "update_progress")

    async def delete(self, enrollment_id: UUID) -> bool:
        stmt = delete(EnrollmentRow).where(EnrollmentRow.id == enrollment_id)
        with storage_errors("delete_enrollment"):
            result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_by_user_and_status(
        self, user_id: str, status: PaymentStatus
    ) -> list[Enrollment]:
        stmt = (
            select(EnrollmentRow)
            .where(
                EnrollmentRow.user_id == user_id,
                EnrollmentRow.payment_status == status.value,
            )
            .order_by(EnrollmentRow.enrolled_at.desc())
        )
        with storage_errors("list_by_user_and_status"):
            rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_enrollment(r) for r in rows]

    async def _one_or_none(self, stmt, operation: str) -> Enrollment | None:
        with storage_errors(operation):
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_enrollment(row)


def _enrollment_to_row(e: Enrollment) -> EnrollmentRow:
    return EnrollmentRow(
        id=e.id,
        user_id=e.user_id,
        course_id=e.course_id,
        enrolled_at=e.enrolled_at,
        total_lessons=e.progress.total_lessons,
        completed_lessons=list(e.progress.completed_lessons),
        completion_percentage=e.progress.completion_percentage,
        last_accessed_lesson=e.progress.last_accessed_lesson,
        payment_amount=e.payment.amount,
        payment_method=e.payment.method.value,
        transaction_id=e.payment.transaction_id,
        payment_status=e.payment.status.value,
        certificate_issued=e.certificate_issued,
        certificate_url=e.certificate_url,
        is_active=e.is_active,
    )


def _row_to_enrollment(row: EnrollmentRow) -> Enrollment:
    return Enrollment(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        enrolled_at=row.enrolled_at,
        progress=LessonProgress(
            total_lessons=row.total_lessons,
            completed_lessons=tuple(row.completed_lessons or ()),
            completion_percentage=row.completion_percentage,
            last_accessed_lesson=row.last_accessed_lesson,
        ),
        payment=PaymentDetails(
            amount=row.payment_amount,
            method=PaymentMethod(row.payment_method),
            status=PaymentStatus(row.payment_status),
            transaction_id=row.transaction_id,
        ),
        certificate_issued=row.certificate_issued,
        certificate_url=row.certificate_url,
        is_active=row.is_active,
    )
