"""initial allocation schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


user_role = postgresql.ENUM("growth_team", "product_manager", "consultant", name="user_role", create_type=False)
project_role = postgresql.ENUM("product_manager", "consultant", name="project_role", create_type=False)
approval_status = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "REJECTED",
    "DELETION_PENDING",
    "EXPIRED",
    "FORFEITED",
    name="approval_status",
    create_type=False,
)
planning_status = postgresql.ENUM(
    "PENDING", "APPROVED", "MODIFIED", "REJECTED", name="planning_status", create_type=False
)


def upgrade() -> None:
    user_role.create(op.get_bind(), checkfirst=True)
    project_role.create(op.get_bind(), checkfirst=True)
    approval_status.create(op.get_bind(), checkfirst=True)
    planning_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("microsoft_oid", sa.String(length=128), nullable=False, unique=True),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("role", user_role, nullable=False, server_default="consultant"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("budgeted_hours", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("budgeted_hours >= 0", name="ck_projects_budgeted_hours_non_negative"),
    )

    op.create_table(
        "project_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", project_role, nullable=False),
        sa.Column("allocated_hours", sa.Numeric(10, 2), nullable=True),
        sa.UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
        sa.CheckConstraint(
            "allocated_hours IS NULL OR allocated_hours >= 0",
            name="ck_project_members_allocated_hours_non_negative",
        ),
    )
    op.create_index("ix_project_members_user_id", "project_members", ["user_id"])

    op.create_table(
        "phases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.CheckConstraint("end_date >= start_date", name="ck_phases_dates_ordered"),
    )
    op.create_index("ix_phases_project_id", "phases", ["project_id"])

    op.create_table(
        "phase_allocations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("phase_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("phases.id"), nullable=False),
        sa.Column("consultant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("total_hours", sa.Numeric(10, 2), nullable=False),
        sa.Column("approval_status", approval_status, nullable=False, server_default="PENDING"),
        sa.Column("approved_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(length=2000), nullable=True),
        sa.Column(
            "deletion_requested_by",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=True,
        ),
        sa.Column("deletion_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_reallocation", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reallocated_from_phase_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reallocated_from_unplanned_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("is_composite", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("composition_metadata", postgresql.JSONB(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("phase_id", "consultant_id", name="uq_phase_allocations_phase_consultant"),
        sa.CheckConstraint("total_hours >= 0", name="ck_phase_allocations_total_hours_non_negative"),
        sa.CheckConstraint(
            "approval_status <> 'REJECTED' OR rejection_reason IS NOT NULL",
            name="ck_phase_allocations_rejection_reason_required",
        ),
    )
    op.create_index("ix_phase_allocations_consultant_id", "phase_allocations", ["consultant_id"])
    op.create_index("ix_phase_allocations_status", "phase_allocations", ["approval_status"])

    op.create_table(
        "weekly_allocations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "phase_allocation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("phase_allocations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("consultant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("week_start_date", sa.Date(), nullable=False),
        sa.Column("week_end_date", sa.Date(), nullable=False),
        sa.Column("week_number", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("proposed_hours", sa.Numeric(10, 2), nullable=False),
        sa.Column("approved_hours", sa.Numeric(10, 2), nullable=True),
        sa.Column("planning_status", planning_status, nullable=False, server_default="PENDING"),
        sa.Column("planned_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(length=2000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "phase_allocation_id",
            "year",
            "week_number",
            name="uq_weekly_allocations_allocation_week",
        ),
        sa.CheckConstraint("proposed_hours >= 0", name="ck_weekly_allocations_proposed_non_negative"),
        sa.CheckConstraint(
            "approved_hours IS NULL OR approved_hours >= 0",
            name="ck_weekly_allocations_approved_non_negative",
        ),
    )
    op.create_index(
        "ix_weekly_allocations_consultant_week",
        "weekly_allocations",
        ["consultant_id", "week_start_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_weekly_allocations_consultant_week", table_name="weekly_allocations")
    op.drop_table("weekly_allocations")

    op.drop_index("ix_phase_allocations_status", table_name="phase_allocations")
    op.drop_index("ix_phase_allocations_consultant_id", table_name="phase_allocations")
    op.drop_table("phase_allocations")

    op.drop_index("ix_phases_project_id", table_name="phases")
    op.drop_table("phases")

    op.drop_index("ix_project_members_user_id", table_name="project_members")
    op.drop_table("project_members")

    op.drop_table("projects")
    op.drop_table("users")

    planning_status.drop(op.get_bind(), checkfirst=True)
    approval_status.drop(op.get_bind(), checkfirst=True)
    project_role.drop(op.get_bind(), checkfirst=True)
    user_role.drop(op.get_bind(), checkfirst=True)
