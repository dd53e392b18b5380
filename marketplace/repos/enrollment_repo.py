from __future__ import annotations

from dataclasses import replace
from typing import Protocol
from uuid import UUID

from marketplace.core.errors import DuplicateKeyError
from marketplace.models.enrollment import Enrollment, LessonProgress, PaymentStatus


class EnrollmentRepo(Protocol):
    async def find_active(self, user_id: str, course_id: UUID) -> Enrollment | None: ...
    async def find_active_for_update(
        self, user_id: str, course_id: UUID
    ) -> Enrollment | None: ...
    async def find_by_transaction_id(self, session_id: str) -> Enrollment | None: ...
    async def insert(self, enrollment: Enrollment) -> None: ...
    async def update_payment_status(
        self, enrollment_id: UUID, status: PaymentStatus
    ) -> Enrollment | None: ...
    async def complete_pending(self, session_id: str) -> Enrollment | None: ...
    async def fail_pending(self, session_id: str) -> Enrollment | None: ...
    async def update_progress(
        self, enrollment_id: UUID, progress: LessonProgress
    ) -> Enrollment | None: ...
    async def delete(self, enrollment_id: UUID) -> bool: ...
    async def list_by_user_and_status(
        self, user_id: str, status: PaymentStatus
    ) -> list[Enrollment]: ...


class InMemoryEnrollmentRepo:
    """Dict-backed EnrollmentRepo.

    Enforces the same constraints as the Postgres indexes: one active
    enrollment per (user, course) and one enrollment per transaction id.
    """

    def __init__(self) -> None:
        self._by_id: dict[UUID, Enrollment] = {}

    async def find_active(self, user_id: str, course_id: UUID) -> Enrollment | None:
        for e in self._by_id.values():
            if e.is_active and e.user_id == user_id and e.course_id == course_id:
                return e
        return None

    async def find_active_for_update(
        self, user_id: str, course_id: UUID
    ) -> Enrollment | None:
        return await self.find_active(user_id, course_id)

    async def find_by_transaction_id(self, session_id: str) -> Enrollment | None:
        for e in self._by_id.values():
            if e.payment.transaction_id == session_id:
                return e
        return None

    async def insert(self, enrollment: Enrollment) -> None:
        for e in self._by_id.values():
            if (
                enrollment.is_active
                and e.is_active
                and e.user_id == enrollment.user_id
                and e.course_id == enrollment.course_id
            ):
                raise DuplicateKeyError(
                    "active enrollment already exists",
                    {"user_id": enrollment.user_id, "course_id": str(e.course_id)},
                )
            tx = enrollment.payment.transaction_id
            if tx is not None and e.payment.transaction_id == tx:
                raise DuplicateKeyError(
                    "transaction id already used", {"transaction_id": tx}
                )
        self._by_id[enrollment.id] = enrollment

    async def update_payment_status(
        self, enrollment_id: UUID, status: PaymentStatus
    ) -> Enrollment | None:
        e = self._by_id.get(enrollment_id)
        if e is None:
            return None
        updated = replace(e, payment=replace(e.payment, status=status))
        self._by_id[enrollment_id] = updated
        return updated

    async def complete_pending(self, session_id: str) -> Enrollment | None:
        """Flip pending -> completed. Returns None unless this call made the flip."""
        e = await self.find_by_transaction_id(session_id)
        if e is None or e.payment.status is not PaymentStatus.PENDING:
            return None
        return await self.update_payment_status(e.id, PaymentStatus.COMPLETED)

    async def fail_pending(self, session_id: str) -> Enrollment | None:
        e = await self.find_by_transaction_id(session_id)
        if e is None or e.payment.status is not PaymentStatus.PENDING:
            return None
        updated = replace(
            e,
            payment=replace(e.payment, status=PaymentStatus.FAILED),
            is_active=False,
        )
        self._by_id[e.id] = updated
        return updated

    async def update_progress(
        self, enrollment_id: UUID, progress: LessonProgress
    ) -> Enrollment | None:
        e = self._by_id.get(enrollment_id)
        if e is None:
            return None
        updated = replace(e, progress=progress)
        self._by_id[enrollment_id] = updated
        return updated

    async def delete(self, enrollment_id: UUID) -> bool:
        return self._by_id.pop(enrollment_id, None) is not None

    async def list_by_user_and_status(
        self, user_id: str, status: PaymentStatus
    ) -> list[Enrollment]:
        found = [
            e
            for e in self._by_id.values()
            if e.user_id == user_id and e.payment.status is status
        ]
        return sorted(found, key=lambda e: e.enrolled_at, reverse=True)
