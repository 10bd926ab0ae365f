"""unplanned hours ledger, reallocation proposals and notifications

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


unplanned_status = postgresql.ENUM(
    "EXPIRED", "FORFEITED", "REALLOCATED", name="unplanned_status", create_type=False
)
proposal_status = postgresql.ENUM(
    "PENDING", "MERGED", "REJECTED", "WITHDRAWN", name="proposal_status", create_type=False
)


def upgrade() -> None:
    unplanned_status.create(op.get_bind(), checkfirst=True)
    proposal_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "unplanned_expired_hours",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "phase_allocation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("phase_allocations.id"),
            nullable=False,
        ),
        sa.Column("unplanned_hours", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", unplanned_status, nullable=False, server_default="EXPIRED"),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("handled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("handled_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("reallocated_to_phase_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reallocated_to_allocation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reallocation_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.String(length=2000), nullable=True),
        sa.UniqueConstraint("phase_allocation_id", name="uq_unplanned_expired_hours_allocation"),
        sa.CheckConstraint("unplanned_hours > 0", name="ck_unplanned_expired_hours_positive"),
        sa.CheckConstraint(
            "status = 'REALLOCATED' OR (reallocated_to_phase_id IS NULL AND reallocated_to_allocation_id IS NULL)",
            name="ck_unplanned_expired_hours_pointers_only_when_reallocated",
        ),
    )
    op.create_index("ix_unplanned_expired_hours_status", "unplanned_expired_hours", ["status"])

    op.create_table(
        "reallocation_proposals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "destination_allocation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("phase_allocations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "destination_phase_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("phases.id"),
            nullable=False,
        ),
        sa.Column(
            "unplanned_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("unplanned_expired_hours.id"),
            nullable=False,
        ),
        sa.Column("source_phase_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("phases.id"), nullable=False),
        sa.Column("consultant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("hours", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", proposal_status, nullable=False, server_default="PENDING"),
        sa.Column("requested_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("decided_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(length=2000), nullable=True),
        sa.CheckConstraint("hours > 0", name="ck_reallocation_proposals_hours_positive"),
    )
    op.create_index(
        "ix_reallocation_proposals_destination",
        "reallocation_proposals",
        ["destination_allocation_id"],
    )
    op.create_index(
        "ix_reallocation_proposals_consultant_status",
        "reallocation_proposals",
        ["consultant_id", "status"],
    )

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.String(length=2000), nullable=False),
        sa.Column("action_url", sa.String(length=512), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "is_read"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_reallocation_proposals_consultant_status", table_name="reallocation_proposals")
    op.drop_index("ix_reallocation_proposals_destination", table_name="reallocation_proposals")
    op.drop_table("reallocation_proposals")

    op.drop_index("ix_unplanned_expired_hours_status", table_name="unplanned_expired_hours")
    op.drop_table("unplanned_expired_hours")

    proposal_status.drop(op.get_bind(), checkfirst=True)
    unplanned_status.drop(op.get_bind(), checkfirst=True)
