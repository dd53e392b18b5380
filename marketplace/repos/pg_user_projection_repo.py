"""PostgreSQL implementation of UserProjectionRepo."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.db.errors import storage_errors
from marketplace.db.tables import UserEnrollmentsRow


class PgUserProjectionRepo:
    """Satisfies the UserProjectionRepo Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_enrolled_course(self, user_id: str, course_id: UUID) -> None:
        """Upsert with set semantics: the array only grows by unseen ids."""
        stmt = pg_insert(UserEnrollmentsRow).values(
            user_id=user_id, enrolled_courses=[course_id]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserEnrollmentsRow.user_id],
            set_={
                "enrolled_courses": func.array_append(
                    UserEnrollmentsRow.enrolled_courses,
                    course_id,
                    type_=ARRAY(PG_UUID(as_uuid=True)),
                )
            },
            where=~UserEnrollmentsRow.enrolled_courses.any(course_id),
        )
        with storage_errors("add_enrolled_course"):
            await self._session.execute(stmt)

    async def list_enrolled_courses(self, user_id: str) -> list[UUID]:
        stmt = select(UserEnrollmentsRow.enrolled_courses).where(
            UserEnrollmentsRow.user_id == user_id
        )
        with storage_errors("list_enrolled_courses"):
            courses = (await self._session.execute(stmt)).scalar_one_or_none()
        return list(courses or [])
