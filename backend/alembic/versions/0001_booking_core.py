"""booking core schema

Revision ID: 0001_booking_core
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_booking_core"
down_revision = None
branch_labels = None
depends_on = None


BOOKING_STAGES = (
    "scheduled",
    "rescheduled",
    "cancelled",
    "no-show",
    "generating-report",
    "report-generated",
    "payment-received",
)

booking_status = postgresql.ENUM("active", "closed", "archived", name="booking_status", create_type=False)
booking_type = postgresql.ENUM("in-person", "telehealth", name="booking_type", create_type=False)
booking_progress_status = postgresql.ENUM(*BOOKING_STAGES, name="booking_progress_status", create_type=False)
document_section = postgresql.ENUM(
    "ime_documents", "supplementary_documents", name="document_section", create_type=False
)
document_category = postgresql.ENUM(
    "consent_form",
    "document_brief",
    "dictation",
    "draft_report",
    "final_report",
    name="document_category",
    create_type=False,
)

ENUMS = (booking_status, booking_type, booking_progress_status, document_section, document_category)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "referrers",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("organization_id", sa.String(length=64), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("user_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "examinees",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("referrer_id", sa.String(length=64), sa.ForeignKey("referrers.id"), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("date_of_birth", sa.Text(), nullable=False),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("phone_number", sa.Text(), nullable=True),
        sa.Column("condition", sa.Text(), nullable=False),
        sa.Column("case_type", sa.Text(), nullable=False),
        sa.Column("authorized_contact", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )

    op.create_table(
        "specialists",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("external_calendar_id", sa.String(length=64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("external_calendar_id"),
    )
    op.create_index("ix_specialists_external_calendar_id", "specialists", ["external_calendar_id"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("organization_id", sa.String(length=64), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("created_by_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("referrer_id", sa.String(length=64), sa.ForeignKey("referrers.id"), nullable=False),
        sa.Column("specialist_id", sa.String(length=64), sa.ForeignKey("specialists.id"), nullable=True),
        sa.Column("examinee_id", sa.String(length=64), sa.ForeignKey("examinees.id"), nullable=False),
        sa.Column("status", booking_status, nullable=False, server_default="active"),
        sa.Column("type", booking_type, nullable=False, server_default="in-person"),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("location", sa.Text(), nullable=False, server_default=""),
        sa.Column("date_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_appointment_id", sa.String(length=64), nullable=False),
        sa.Column("external_appointment_type_id", sa.String(length=64), nullable=True),
        sa.Column("external_calendar_id", sa.String(length=64), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("external_appointment_id"),
        sa.CheckConstraint(
            "cancelled_at IS NULL OR status IN ('closed', 'archived')",
            name="ck_bookings_cancelled_closed",
        ),
    )
    op.create_index("ix_bookings_external_appointment_id", "bookings", ["external_appointment_id"])
    op.create_index("bookings_organization_id_idx", "bookings", ["organization_id"])
    op.create_index("bookings_referrer_id_idx", "bookings", ["referrer_id"])
    op.create_index("bookings_specialist_id_idx", "bookings", ["specialist_id"])
    op.create_index("bookings_status_idx", "bookings", ["status"])

    op.create_table(
        "booking_progress",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id",
            sa.String(length=64),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_status", booking_progress_status, nullable=True),
        sa.Column("to_status", booking_progress_status, nullable=False),
        sa.Column("from_coarse_status", booking_status, nullable=True),
        sa.Column("to_coarse_status", booking_status, nullable=True),
        sa.Column("is_correction", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("changed_by", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("booking_progress_booking_id_idx", "booking_progress", ["booking_id"])
    op.create_index("booking_progress_changed_by_idx", "booking_progress", ["changed_by"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=64),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("uploaded_by", sa.String(length=64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("section", document_section, nullable=False),
        sa.Column("category", document_category, nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("storage_bucket", sa.String(length=200), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("mime_type", sa.String(length=120), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_documents_booking_id", "documents", ["booking_id"])
    op.create_index("ix_documents_deleted_at", "documents", ["deleted_at"])


def downgrade() -> None:
    op.drop_table("documents")
    op.drop_table("booking_progress")
    op.drop_table("bookings")
    op.drop_table("specialists")
    op.drop_table("examinees")
    op.drop_table("referrers")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_table("organizations")
    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
