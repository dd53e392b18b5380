"""create courses, enrollments and user_enrollments

Revision ID: 3b9d2c71e0a4
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b9d2c71e0a4"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("short_description", sa.Text(), nullable=False, server_default=""),
        sa.Column("thumbnail", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("lesson_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("students_enrolled", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("students_enrolled >= 0", name="ck_courses_students_nonneg"),
    )

    op.create_table(
        "user_enrollments",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column(
            "enrolled_courses",
            postgresql.ARRAY(postgresql.UUID(as_uuid=True)),
            nullable=False,
            server_default="{}",
        ),
    )

    op.create_table(
        "enrollments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column(
            "course_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("courses.id"),
            nullable=False,
        ),
        sa.Column("enrolled_at", sa.BigInteger(), nullable=False),
        sa.Column("total_lessons", sa.Integer(), nullable=False),
        sa.Column(
            "completed_lessons",
            postgresql.ARRAY(sa.Integer()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("completion_percentage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_accessed_lesson", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=True),
        sa.Column(
            "payment_status", sa.String(length=16), nullable=False, server_default="pending"
        ),
        sa.Column(
            "certificate_issued", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("certificate_url", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'completed', 'failed')",
            name="ck_enrollments_payment_status",
        ),
        sa.CheckConstraint("total_lessons > 0", name="ck_enrollments_total_lessons"),
    )
    op.create_index(
        "uq_enrollments_active_user_course",
        "enrollments",
        ["user_id", "course_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "uq_enrollments_transaction_id", "enrollments", ["transaction_id"], unique=True
    )
    op.create_index(
        "ix_enrollments_user_status", "enrollments", ["user_id", "payment_status"]
    )


def downgrade() -> None:
    op.drop_index("ix_enrollments_user_status", table_name="enrollments")
    op.drop_index("uq_enrollments_transaction_id", table_name="enrollments")
    op.drop_index("uq_enrollments_active_user_course", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_table("user_enrollments")
    op.drop_table("courses")
