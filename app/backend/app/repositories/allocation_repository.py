"""Repository helpers for phase allocations and the reallocation ledger."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app.models.entities import (
    ApprovalStatus,
    Phase,
    PhaseAllocation,
    Project,
    ProjectMember,
    ProjectRole,
    ProposalStatus,
    ReallocationProposal,
    UnplannedExpiredHours,
    UnplannedStatus,
    User,
    UserRole,
    WeeklyAllocation,
)

# Statuses whose hours still occupy a consultant's budget.
COMMITTED_STATUSES = (
    ApprovalStatus.PENDING,
    ApprovalStatus.APPROVED,
    ApprovalStatus.DELETION_PENDING,
)


class AllocationRepository:
    """Persistence operations used by allocation, reallocation and weekly services."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Users, projects, phases ----------
    def list_growth_team_ids(self) -> list[UUID]:
        return self.db.scalars(
            select(User.id).where(and_(User.role == UserRole.GROWTH_TEAM, User.status == "active"))
        ).all()

    def get_project(self, project_id: UUID) -> Project | None:
        return self.db.scalar(select(Project).where(Project.id == project_id))

    def get_phase(self, phase_id: UUID) -> Phase | None:
        return self.db.scalar(select(Phase).where(Phase.id == phase_id))

    def get_member(self, project_id: UUID, user_id: UUID) -> ProjectMember | None:
        return self.db.scalar(
            select(ProjectMember).where(
                and_(
                    ProjectMember.project_id == project_id,
                    ProjectMember.user_id == user_id,
                )
            )
        )

    def list_product_manager_ids(self, project_id: UUID) -> list[UUID]:
        return self.db.scalars(
            select(ProjectMember.user_id).where(
                and_(
                    ProjectMember.project_id == project_id,
                    ProjectMember.role == ProjectRole.PRODUCT_MANAGER,
                )
            )
        ).all()

    def list_stakeholder_ids(self, project_id: UUID, consultant_id: UUID) -> list[UUID]:
        """Project managers of the project followed by the consultant, without duplicates."""

        return list(dict.fromkeys([*self.list_product_manager_ids(project_id), consultant_id]))

    # ---------- Phase allocations ----------
    def get_allocation(self, allocation_id: UUID, *, for_update: bool = False) -> PhaseAllocation | None:
        statement = select(PhaseAllocation).where(PhaseAllocation.id == allocation_id)
        if for_update:
            statement = statement.with_for_update()
        return self.db.scalar(statement)

    def get_allocation_for_consultant(
        self,
        phase_id: UUID,
        consultant_id: UUID,
        *,
        for_update: bool = False,
    ) -> PhaseAllocation | None:
        statement = select(PhaseAllocation).where(
            and_(
                PhaseAllocation.phase_id == phase_id,
                PhaseAllocation.consultant_id == consultant_id,
            )
        )
        if for_update:
            statement = statement.with_for_update()
        return self.db.scalar(statement)

    def list_allocations(
        self,
        *,
        phase_id: UUID | None = None,
        consultant_id: UUID | None = None,
    ) -> list[PhaseAllocation]:
        conditions = []
        if phase_id is not None:
            conditions.append(PhaseAllocation.phase_id == phase_id)
        if consultant_id is not None:
            conditions.append(PhaseAllocation.consultant_id == consultant_id)

        return self.db.scalars(
            select(PhaseAllocation)
            .where(*conditions)
            .order_by(PhaseAllocation.created_at.asc(), PhaseAllocation.id.asc())
        ).all()

    def list_expirable_allocations(self, today: date) -> list[PhaseAllocation]:
        """Approved allocations of ended phases, skipping rows locked by a concurrent decision."""

        return self.db.scalars(
            select(PhaseAllocation)
            .join(Phase, Phase.id == PhaseAllocation.phase_id)
            .where(
                and_(
                    PhaseAllocation.approval_status == ApprovalStatus.APPROVED,
                    Phase.end_date < today,
                )
            )
            .order_by(Phase.end_date.asc(), PhaseAllocation.id.asc())
            .with_for_update(skip_locked=True, of=PhaseAllocation)
        ).all()

    def add_allocation(self, allocation: PhaseAllocation) -> PhaseAllocation:
        self.db.add(allocation)
        self.db.flush()
        return allocation

    def delete_allocation(self, allocation: PhaseAllocation) -> None:
        self.db.delete(allocation)
        self.db.flush()

    # ---------- Budget sums ----------
    def sum_consultant_committed_hours(
        self,
        *,
        project_id: UUID,
        consultant_id: UUID,
        excluding_phase_id: UUID | None = None,
    ) -> Decimal:
        conditions = [
            Phase.project_id == project_id,
            PhaseAllocation.consultant_id == consultant_id,
            PhaseAllocation.approval_status.in_(COMMITTED_STATUSES),
        ]
        if excluding_phase_id is not None:
            conditions.append(PhaseAllocation.phase_id != excluding_phase_id)

        allocated = self.db.scalar(
            select(func.coalesce(func.sum(PhaseAllocation.total_hours), Decimal("0.00")))
            .join(Phase, Phase.id == PhaseAllocation.phase_id)
            .where(and_(*conditions))
        )
        in_transit = self.db.scalar(
            select(func.coalesce(func.sum(ReallocationProposal.hours), Decimal("0.00")))
            .join(Phase, Phase.id == ReallocationProposal.destination_phase_id)
            .where(
                and_(
                    Phase.project_id == project_id,
                    ReallocationProposal.consultant_id == consultant_id,
                    ReallocationProposal.status == ProposalStatus.PENDING,
                )
            )
        )
        return Decimal(allocated or 0) + Decimal(in_transit or 0)

    def sum_project_committed_hours(
        self,
        *,
        project_id: UUID,
        excluding_allocation_id: UUID | None = None,
    ) -> Decimal:
        conditions = [
            Phase.project_id == project_id,
            PhaseAllocation.approval_status.in_(COMMITTED_STATUSES),
        ]
        if excluding_allocation_id is not None:
            conditions.append(PhaseAllocation.id != excluding_allocation_id)

        allocated = self.db.scalar(
            select(func.coalesce(func.sum(PhaseAllocation.total_hours), Decimal("0.00")))
            .join(Phase, Phase.id == PhaseAllocation.phase_id)
            .where(and_(*conditions))
        )
        in_transit = self.db.scalar(
            select(func.coalesce(func.sum(ReallocationProposal.hours), Decimal("0.00")))
            .join(Phase, Phase.id == ReallocationProposal.destination_phase_id)
            .where(
                and_(
                    Phase.project_id == project_id,
                    ReallocationProposal.status == ProposalStatus.PENDING,
                )
            )
        )
        return Decimal(allocated or 0) + Decimal(in_transit or 0)

    # ---------- Weekly allocations ----------
    def get_weekly(self, weekly_id: UUID, *, for_update: bool = False) -> WeeklyAllocation | None:
        statement = select(WeeklyAllocation).where(WeeklyAllocation.id == weekly_id)
        if for_update:
            statement = statement.with_for_update()
        return self.db.scalar(statement)

    def list_weekly(self, weekly_ids: list[UUID], *, for_update: bool = False) -> list[WeeklyAllocation]:
        statement = select(WeeklyAllocation).where(WeeklyAllocation.id.in_(weekly_ids))
        if for_update:
            statement = statement.with_for_update()
        return self.db.scalars(statement).all()

    # ---------- Unplanned expired hours ----------
    def get_unplanned(self, unplanned_id: UUID, *, for_update: bool = False) -> UnplannedExpiredHours | None:
        statement = select(UnplannedExpiredHours).where(UnplannedExpiredHours.id == unplanned_id)
        if for_update:
            statement = statement.with_for_update()
        return self.db.scalar(statement)

    def get_unplanned_for_allocation(self, allocation_id: UUID) -> UnplannedExpiredHours | None:
        return self.db.scalar(
            select(UnplannedExpiredHours).where(UnplannedExpiredHours.phase_allocation_id == allocation_id)
        )

    def list_unplanned_for_project(
        self,
        project_id: UUID,
        *,
        status: UnplannedStatus | None = None,
    ) -> list[UnplannedExpiredHours]:
        conditions = [Phase.project_id == project_id]
        if status is not None:
            conditions.append(UnplannedExpiredHours.status == status)

        return self.db.scalars(
            select(UnplannedExpiredHours)
            .join(PhaseAllocation, PhaseAllocation.id == UnplannedExpiredHours.phase_allocation_id)
            .join(Phase, Phase.id == PhaseAllocation.phase_id)
            .where(and_(*conditions))
            .order_by(UnplannedExpiredHours.detected_at.asc(), UnplannedExpiredHours.id.asc())
        ).all()

    def list_unapproved_unplanned_towards(
        self,
        allocation_id: UUID,
        *,
        for_update: bool = False,
    ) -> list[UnplannedExpiredHours]:
        """Unplanned rows reallocated towards ``allocation_id`` and still awaiting approval."""

        statement = (
            select(UnplannedExpiredHours)
            .where(
                and_(
                    UnplannedExpiredHours.reallocated_to_allocation_id == allocation_id,
                    UnplannedExpiredHours.status == UnplannedStatus.REALLOCATED,
                    UnplannedExpiredHours.reallocation_approved_at.is_(None),
                )
            )
            .order_by(UnplannedExpiredHours.handled_at.asc(), UnplannedExpiredHours.id.asc())
        )
        if for_update:
            statement = statement.with_for_update()
        return self.db.scalars(statement).all()

    def add_unplanned(self, unplanned: UnplannedExpiredHours) -> UnplannedExpiredHours:
        self.db.add(unplanned)
        self.db.flush()
        return unplanned

    # ---------- Reallocation proposals ----------
    def get_proposal(self, proposal_id: UUID, *, for_update: bool = False) -> ReallocationProposal | None:
        statement = select(ReallocationProposal).where(ReallocationProposal.id == proposal_id)
        if for_update:
            statement = statement.with_for_update()
        return self.db.scalar(statement)

    def list_proposals(self, *, status: ProposalStatus | None = None) -> list[ReallocationProposal]:
        conditions = []
        if status is not None:
            conditions.append(ReallocationProposal.status == status)

        return self.db.scalars(
            select(ReallocationProposal)
            .where(*conditions)
            .order_by(ReallocationProposal.requested_at.asc(), ReallocationProposal.id.asc())
        ).all()

    def list_pending_proposals_for_destination(self, allocation_id: UUID) -> list[ReallocationProposal]:
        return self.db.scalars(
            select(ReallocationProposal).where(
                and_(
                    ReallocationProposal.destination_allocation_id == allocation_id,
                    ReallocationProposal.status == ProposalStatus.PENDING,
                )
            )
        ).all()

    def pending_proposal_unplanned_ids(self, unplanned_ids: list[UUID]) -> set[UUID]:
        if not unplanned_ids:
            return set()
        return set(
            self.db.scalars(
                select(ReallocationProposal.unplanned_id).where(
                    and_(
                        ReallocationProposal.unplanned_id.in_(unplanned_ids),
                        ReallocationProposal.status == ProposalStatus.PENDING,
                    )
                )
            ).all()
        )

    def add_proposal(self, proposal: ReallocationProposal) -> ReallocationProposal:
        self.db.add(proposal)
        self.db.flush()
        return proposal
