from __future__ import annotations

from dataclasses import replace
from typing import Protocol
from uuid import UUID

from marketplace.models.course import Course


class CourseRepo(Protocol):
    async def get_by_id(self, course_id: UUID) -> Course | None: ...
    async def add(self, course: Course) -> None: ...
    async def increment_enrollment_count(self, course_id: UUID) -> None: ...


class InMemoryCourseRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, Course] = {}

    async def get_by_id(self, course_id: UUID) -> Course | None:
        return self._by_id.get(course_id)

    async def add(self, course: Course) -> None:
        if course.id in self._by_id:
            raise ValueError("course already exists")
        self._by_id[course.id] = course

    async def increment_enrollment_count(self, course_id: UUID) -> None:
        c = self._by_id.get(course_id)
        if c is None:
            raise KeyError("course not found")
        self._by_id[course_id] = replace(c, students_enrolled=c.students_enrolled + 1)
