"""ORM entities for phase allocations, weekly plans and reallocation ledger."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_column(enum_cls: type[enum.Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class UserRole(str, enum.Enum):
    GROWTH_TEAM = "growth_team"
    PRODUCT_MANAGER = "product_manager"
    CONSULTANT = "consultant"


class ProjectRole(str, enum.Enum):
    PRODUCT_MANAGER = "product_manager"
    CONSULTANT = "consultant"


class ApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELETION_PENDING = "DELETION_PENDING"
    EXPIRED = "EXPIRED"
    FORFEITED = "FORFEITED"


class PlanningStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    MODIFIED = "MODIFIED"
    REJECTED = "REJECTED"


class UnplannedStatus(str, enum.Enum):
    EXPIRED = "EXPIRED"
    FORFEITED = "FORFEITED"
    REALLOCATED = "REALLOCATED"


class ProposalStatus(str, enum.Enum):
    PENDING = "PENDING"
    MERGED = "MERGED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    microsoft_oid: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"), nullable=False, default=UserRole.CONSULTANT
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (CheckConstraint("budgeted_hours >= 0", name="ck_projects_budgeted_hours_non_negative"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    budgeted_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)


class ProjectMember(Base):
    __tablename__ = "project_members"
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
        CheckConstraint(
            "allocated_hours IS NULL OR allocated_hours >= 0",
            name="ck_project_members_allocated_hours_non_negative",
        ),
        Index("ix_project_members_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    role: Mapped[ProjectRole] = mapped_column(_enum_column(ProjectRole, "project_role"), nullable=False)
    # Per-project hour ceiling for a consultant; NULL means no ceiling.
    allocated_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)


class Phase(Base):
    __tablename__ = "phases"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_phases_dates_ordered"),
        Index("ix_phases_project_id", "project_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    project: Mapped[Project] = relationship()


class PhaseAllocation(Base):
    __tablename__ = "phase_allocations"
    __table_args__ = (
        UniqueConstraint("phase_id", "consultant_id", name="uq_phase_allocations_phase_consultant"),
        CheckConstraint("total_hours >= 0", name="ck_phase_allocations_total_hours_non_negative"),
        CheckConstraint(
            "approval_status <> 'REJECTED' OR rejection_reason IS NOT NULL",
            name="ck_phase_allocations_rejection_reason_required",
        ),
        Index("ix_phase_allocations_consultant_id", "consultant_id"),
        Index("ix_phase_allocations_status", "approval_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phase_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("phases.id"), nullable=False)
    consultant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    total_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        _enum_column(ApprovalStatus, "approval_status"), nullable=False, default=ApprovalStatus.PENDING
    )
    approved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    deletion_requested_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    deletion_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_reallocation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reallocated_from_phase_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    reallocated_from_unplanned_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    is_composite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Ordered merge history; decimal values are stored as strings.
    composition_metadata: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    phase: Mapped[Phase] = relationship()
    weekly_allocations: Mapped[list[WeeklyAllocation]] = relationship(
        back_populates="phase_allocation",
        cascade="all, delete-orphan",
        order_by="WeeklyAllocation.week_start_date",
    )

    __mapper_args__ = {"version_id_col": version}


class WeeklyAllocation(Base):
    __tablename__ = "weekly_allocations"
    __table_args__ = (
        UniqueConstraint(
            "phase_allocation_id",
            "year",
            "week_number",
            name="uq_weekly_allocations_allocation_week",
        ),
        CheckConstraint("proposed_hours >= 0", name="ck_weekly_allocations_proposed_non_negative"),
        CheckConstraint(
            "approved_hours IS NULL OR approved_hours >= 0",
            name="ck_weekly_allocations_approved_non_negative",
        ),
        Index("ix_weekly_allocations_consultant_week", "consultant_id", "week_start_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phase_allocation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("phase_allocations.id", ondelete="CASCADE"), nullable=False
    )
    consultant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    proposed_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    approved_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    planning_status: Mapped[PlanningStatus] = mapped_column(
        _enum_column(PlanningStatus, "planning_status"), nullable=False, default=PlanningStatus.PENDING
    )
    planned_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    phase_allocation: Mapped[PhaseAllocation] = relationship(back_populates="weekly_allocations")


class UnplannedExpiredHours(Base):
    __tablename__ = "unplanned_expired_hours"
    __table_args__ = (
        UniqueConstraint("phase_allocation_id", name="uq_unplanned_expired_hours_allocation"),
        CheckConstraint("unplanned_hours > 0", name="ck_unplanned_expired_hours_positive"),
        CheckConstraint(
            "status = 'REALLOCATED' OR (reallocated_to_phase_id IS NULL AND reallocated_to_allocation_id IS NULL)",
            name="ck_unplanned_expired_hours_pointers_only_when_reallocated",
        ),
        Index("ix_unplanned_expired_hours_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phase_allocation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("phase_allocations.id"), nullable=False
    )
    unplanned_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[UnplannedStatus] = mapped_column(
        _enum_column(UnplannedStatus, "unplanned_status"), nullable=False, default=UnplannedStatus.EXPIRED
    )
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    handled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    handled_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    # Plain ids: destination rows may be deleted while the ledger keeps its history.
    reallocated_to_phase_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    reallocated_to_allocation_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    reallocation_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    phase_allocation: Mapped[PhaseAllocation] = relationship()


class ReallocationProposal(Base):
    """Hours in transit towards an already approved allocation."""

    __tablename__ = "reallocation_proposals"
    __table_args__ = (
        CheckConstraint("hours > 0", name="ck_reallocation_proposals_hours_positive"),
        Index("ix_reallocation_proposals_destination", "destination_allocation_id"),
        Index("ix_reallocation_proposals_consultant_status", "consultant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    destination_allocation_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("phase_allocations.id", ondelete="SET NULL"), nullable=True
    )
    destination_phase_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("phases.id"), nullable=False
    )
    unplanned_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("unplanned_expired_hours.id"), nullable=False
    )
    source_phase_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("phases.id"), nullable=False)
    consultant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(
        _enum_column(ProposalStatus, "proposal_status"), nullable=False, default=ProposalStatus.PENDING
    )
    requested_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    decided_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_user_read", "user_id", "is_read"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(String(2000), nullable=False)
    action_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
