from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4


@dataclass(frozen=True, slots=True)
class Course:
    """Catalog entry as seen by the enrollment core.

    Read-only here except for `students_enrolled`, which only ever grows
    when an enrollment reaches the completed state.
    """

    id: UUID
    title: str
    price: Decimal  # decimal dollars, no currency attached
    lesson_count: int
    short_description: str = ""
    thumbnail: str | None = None
    students_enrolled: int = 0
    is_active: bool = True

    @staticmethod
    def new(
        *,
        title: str,
        price: Decimal,
        lesson_count: int,
        short_description: str = "",
        thumbnail: str | None = None,
    ) -> Course:
        return Course(
            id=uuid4(),
            title=title,
            price=price,
            lesson_count=lesson_count,
            short_description=short_description,
            thumbnail=thumbnail,
        )


@dataclass(frozen=True, slots=True)
class CourseSummary:
    """The slice of a course shown next to an enrollment in "my courses"."""

    id: UUID
    title: str
    short_description: str
    thumbnail: str | None
    lesson_count: int

    @staticmethod
    def of(course: Course) -> CourseSummary:
        return CourseSummary(
            id=course.id,
            title=course.title,
            short_description=course.short_description,
            thumbnail=course.thumbnail,
            lesson_count=course.lesson_count,
        )
