"""The user's enrolled-course set.

A denormalized view of "which completed enrollments does this user have".
Writes are set-adds, so applying the same completion twice is harmless.
"""

from __future__ import annotations

from typing import Protocol
from uuid import UUID


class UserProjectionRepo(Protocol):
    async def add_enrolled_course(self, user_id: str, course_id: UUID) -> None: ...
    async def list_enrolled_courses(self, user_id: str) -> list[UUID]: ...


class InMemoryUserProjectionRepo:
    def __init__(self) -> None:
        # list keeps insertion order; membership check keeps set semantics
        self._enrolled: dict[str, list[UUID]] = {}

    async def add_enrolled_course(self, user_id: str, course_id: UUID) -> None:
        courses = self._enrolled.setdefault(user_id, [])
        if course_id not in courses:
            courses.append(course_id)

    async def list_enrolled_courses(self, user_id: str) -> list[UUID]:
        return list(self._enrolled.get(user_id, []))
