"""PostgreSQL implementation of CourseRepo."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.db.errors import storage_errors
from marketplace.db.tables import CourseRow
from marketplace.models.course import Course


class PgCourseRepo:
    """Satisfies the CourseRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, course_id: UUID) -> Course | None:
        stmt = select(CourseRow).where(CourseRow.id == course_id)
        with storage_errors("get_course"):
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_course(row)

    async def add(self, course: Course) -> None:
        row = CourseRow(
            id=course.id,
            title=course.title,
            short_description=course.short_description,
            thumbnail=course.thumbnail,
            price=course.price,
            lesson_count=course.lesson_count,
            students_enrolled=course.students_enrolled,
            is_active=course.is_active,
        )
        with storage_errors("add_course"):
            self._session.add(row)
            await self._session.flush()

    async def increment_enrollment_count(self, course_id: UUID) -> None:
        # Single UPDATE ... SET n = n + 1: no read-modify-write window
        stmt = (
            update(CourseRow)
            .where(CourseRow.id == course_id)
            .values(students_enrolled=CourseRow.students_enrolled + 1)
        )
        with storage_errors("increment_enrollment_count"):
            result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise KeyError("course not found")


def _row_to_course(row: CourseRow) -> Course:
    return Course(
        id=row.id,
        title=row.title,
        price=row.price,
        lesson_count=row.lesson_count,
        short_description=row.short_description or "",
        thumbnail=row.thumbnail,
        students_enrolled=row.students_enrolled,
        is_active=row.is_active,
    )
