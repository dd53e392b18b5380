"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in marketplace/models/.
Repos convert between SQLAlchemy rows and domain dataclasses.

The enrollment invariants that must hold under concurrency live here, as
indexes, not in application code:
  - one active enrollment per (user_id, course_id)
  - one enrollment per checkout session (transaction_id)
"""

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.db.engine import Base

ACTIVE_ENROLLMENT_INDEX = "uq_enrollments_active_user_course"
TRANSACTION_ID_INDEX = "uq_enrollments_transaction_id"


class CourseRow(Base):
    __tablename__ = "courses"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    short_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    thumbnail: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    lesson_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    students_enrolled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("students_enrolled >= 0", name="ck_courses_students_nonneg"),
    )


class UserEnrollmentsRow(Base):
    """Projection / read model: courses a user has completed enrollment for."""

    __tablename__ = "user_enrollments"

    # user ids are issued by the identity provider (JWT sub), not by us
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    enrolled_courses: Mapped[list[uuid.UUID]] = mapped_column(
        ARRAY(UUID(as_uuid=True)), nullable=False, default=[]
    )


class EnrollmentRow(Base):
    __tablename__ = "enrollments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    course_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("courses.id"), nullable=False
    )
    enrolled_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # --- progress ---
    total_lessons: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_lessons: Mapped[list[int]] = mapped_column(
        ARRAY(Integer), nullable=False, default=[]
    )
    completion_percentage: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )
    last_accessed_lesson: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    # --- payment ---
    payment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending"
    )  # pending|completed|failed

    certificate_issued: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    certificate_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('pending', 'completed', 'failed')",
            name="ck_enrollments_payment_status",
        ),
        CheckConstraint("total_lessons > 0", name="ck_enrollments_total_lessons"),
        Index(
            ACTIVE_ENROLLMENT_INDEX,
            "user_id",
            "course_id",
            unique=True,
            postgresql_where=text("is_active"),
        ),
        Index(TRANSACTION_ID_INDEX, "transaction_id", unique=True),
        Index("ix_enrollments_user_status", "user_id", "payment_status"),
    )
