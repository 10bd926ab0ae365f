"""Application service for the phase allocation approval lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.auth import RequestUserContext, has_project_role
from app.core.errors import Forbidden, NotFound, PreconditionFailed, StaleState, ValidationError
from app.models.entities import (
    ApprovalStatus,
    PhaseAllocation,
    ProjectRole,
    ReallocationProposal,
    UnplannedExpiredHours,
)
from app.repositories.allocation_repository import AllocationRepository
from app.services.allocation_states import assert_transition
from app.services.budget_validator import BudgetValidator, ProjectBudgetWarning
from app.services.notifications import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
    allocation_event,
    publish_events,
)
from app.services.reallocation_service import ReallocationRequestData, ReallocationService
from app.services.transactions import transaction
from app.services.weekly_distribution import WeeklyDistributionTracker, WeeklyPlanningService

Q2 = Decimal("0.01")

DECISION_ACTIONS = {"approve", "reject", "modify"}
DELETION_ACTIONS = {"delete": True, "reject-deletion": False}
LOCKED_FOR_EDIT = {ApprovalStatus.DELETION_PENDING, ApprovalStatus.EXPIRED, ApprovalStatus.FORFEITED}
ALREADY_DECIDED = {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}


def _q2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Q2)


@dataclass(slots=True)
class AllocationSubmitData:
    phase_id: UUID
    consultant_id: UUID
    total_hours: Decimal
    is_reallocation: bool = False
    reallocated_from_phase_id: UUID | None = None
    reallocated_from_unplanned_id: UUID | None = None
    notes: str | None = None


@dataclass(slots=True)
class AllocationDecisionData:
    action: str
    rejection_reason: str | None = None
    modified_hours: Decimal | None = None


@dataclass(slots=True)
class SubmitResult:
    allocation: PhaseAllocation | None
    proposal: ReallocationProposal | None = None
    warnings: list[ProjectBudgetWarning] = field(default_factory=list)


class AllocationService:
    """Submits, decides and deletes phase allocations."""

    def __init__(self, db: Session, publisher: NotificationPublisher) -> None:
        self.db = db
        self.repo = AllocationRepository(db)
        self.budget = BudgetValidator(db)
        self.tracker = WeeklyDistributionTracker()
        self.reallocations = ReallocationService(db, publisher)
        self.publisher = publisher

    def serialize_allocation(self, allocation: PhaseAllocation) -> dict[str, object]:
        return {
            "id": str(allocation.id),
            "phase_id": str(allocation.phase_id),
            "project_id": str(allocation.phase.project_id),
            "consultant_id": str(allocation.consultant_id),
            "total_hours": str(allocation.total_hours),
            "approval_status": allocation.approval_status.value,
            "approved_by": str(allocation.approved_by) if allocation.approved_by else None,
            "approved_at": allocation.approved_at.isoformat() if allocation.approved_at else None,
            "rejection_reason": allocation.rejection_reason,
            "deletion_requested_by": (
                str(allocation.deletion_requested_by) if allocation.deletion_requested_by else None
            ),
            "deletion_requested_at": (
                allocation.deletion_requested_at.isoformat() if allocation.deletion_requested_at else None
            ),
            "is_reallocation": allocation.is_reallocation,
            "reallocated_from_phase_id": (
                str(allocation.reallocated_from_phase_id) if allocation.reallocated_from_phase_id else None
            ),
            "reallocated_from_unplanned_id": (
                str(allocation.reallocated_from_unplanned_id) if allocation.reallocated_from_unplanned_id else None
            ),
            "is_composite": allocation.is_composite,
            "composition_metadata": allocation.composition_metadata,
            "planned_hours": str(self.tracker.planned_total(allocation)),
            "approved_weekly_hours": str(self.tracker.approved_total(allocation)),
            "version": allocation.version,
            "weekly_allocations": [
                WeeklyPlanningService.serialize_weekly(week) for week in allocation.weekly_allocations
            ],
        }

    def _ensure_project_manager(self, context: RequestUserContext, project_id: UUID) -> None:
        if not has_project_role(self.db, context, project_id=project_id, role=ProjectRole.PRODUCT_MANAGER):
            raise Forbidden("Only the phase's Product Manager can change allocations.")

    def _pending_merged_hours(self, allocation: PhaseAllocation) -> list[UnplannedExpiredHours]:
        """Unplanned rows merged into ``allocation`` and awaiting its decision."""

        linked = self.repo.list_unapproved_unplanned_towards(allocation.id, for_update=True)
        parked = self.repo.pending_proposal_unplanned_ids([unplanned.id for unplanned in linked])
        return [unplanned for unplanned in linked if unplanned.id not in parked]

    # ---------- Queries ----------
    def list_allocations(
        self,
        *,
        context: RequestUserContext,
        phase_id: UUID | None = None,
        consultant_id: UUID | None = None,
    ) -> list[PhaseAllocation]:
        if phase_id is None and consultant_id is None:
            raise ValidationError("Provide phase_id or consultant_id.")

        if not context.is_growth_team and consultant_id != context.user_id:
            phase = self.repo.get_phase(phase_id) if phase_id is not None else None
            if phase is None:
                raise Forbidden("Only your own allocations can be listed.")
            self._ensure_project_manager(context, phase.project_id)

        return self.repo.list_allocations(phase_id=phase_id, consultant_id=consultant_id)

    # ---------- Submit ----------
    def submit(
        self,
        *,
        context: RequestUserContext,
        data: AllocationSubmitData,
        today: date | None = None,
    ) -> SubmitResult:
        """Create or edit the allocation of a consultant on a phase."""

        if data.total_hours < 0:
            raise ValidationError("total_hours must be zero or positive.")
        if data.total_hours != _q2(data.total_hours):
            raise ValidationError("total_hours supports at most two decimal places.")
        if data.is_reallocation and data.reallocated_from_unplanned_id is None:
            raise ValidationError("reallocated_from_unplanned_id is required for a reallocation.")
        if data.is_reallocation and data.total_hours <= 0:
            raise ValidationError("Reallocated hours must be positive.")
        today = today or date.today()
        hours = _q2(data.total_hours)

        events: list[NotificationEvent] = []
        with transaction(self.db):
            phase = self.repo.get_phase(data.phase_id)
            if phase is None:
                raise NotFound("Phase not found.")
            self._ensure_project_manager(context, phase.project_id)
            if self.repo.get_member(phase.project_id, data.consultant_id) is None:
                raise PreconditionFailed("Consultant is not a member of this project.")
            if phase.end_date < today:
                raise PreconditionFailed(
                    "Phase has ended; allocations are locked.",
                    phaseEndDate=phase.end_date.isoformat(),
                )

            if data.is_reallocation:
                outcome = self.reallocations.request(
                    context=context,
                    data=ReallocationRequestData(
                        unplanned_id=data.reallocated_from_unplanned_id,
                        target_phase_id=phase.id,
                        consultant_id=data.consultant_id,
                        hours=hours,
                        source_phase_id=data.reallocated_from_phase_id,
                        notes=data.notes,
                    ),
                    today=today,
                )
                events.extend(outcome.events)
                result = SubmitResult(
                    allocation=outcome.allocation,
                    proposal=outcome.proposal,
                    warnings=outcome.warnings,
                )
            else:
                result = self._submit_hours(
                    context=context,
                    phase_id=phase.id,
                    project_id=phase.project_id,
                    consultant_id=data.consultant_id,
                    hours=hours,
                    events=events,
                )

        publish_events(self.publisher, events)
        return result

    def _submit_hours(
        self,
        *,
        context: RequestUserContext,
        phase_id: UUID,
        project_id: UUID,
        consultant_id: UUID,
        hours: Decimal,
        events: list[NotificationEvent],
    ) -> SubmitResult:
        allocation = self.repo.get_allocation_for_consultant(phase_id, consultant_id, for_update=True)
        now = datetime.utcnow()

        if allocation is not None:
            if allocation.approval_status in LOCKED_FOR_EDIT:
                raise PreconditionFailed(
                    f"Allocation in {allocation.approval_status.value} cannot be edited.",
                    currentStatus=allocation.approval_status.value,
                )
            if self.repo.list_unapproved_unplanned_towards(allocation.id):
                raise PreconditionFailed(
                    "Allocation carries reallocated hours pending approval and cannot be edited.",
                    currentStatus=allocation.approval_status.value,
                )

            hours_changed = allocation.total_hours != hours
            if not hours_changed and allocation.approval_status != ApprovalStatus.REJECTED:
                return SubmitResult(allocation=allocation)
            if hours_changed:
                self.tracker.ensure_can_reduce_to(allocation, hours)

        self.budget.check_consultant_budget(
            consultant_id=consultant_id,
            project_id=project_id,
            candidate_total=hours,
            excluding_phase_id=phase_id,
        )
        warning = self.budget.check_project_budget(
            project_id=project_id,
            candidate_total=hours,
            excluding_allocation_id=allocation.id if allocation is not None else None,
        )

        if allocation is None:
            allocation = self.repo.add_allocation(
                PhaseAllocation(
                    phase_id=phase_id,
                    consultant_id=consultant_id,
                    total_hours=hours,
                    approval_status=ApprovalStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )
            message = f"New allocation of {hours}h awaits approval."
        else:
            previous = allocation.total_hours
            if allocation.approval_status != ApprovalStatus.PENDING:
                assert_transition(allocation.approval_status, ApprovalStatus.PENDING)
            allocation.total_hours = hours
            allocation.approval_status = ApprovalStatus.PENDING
            allocation.approved_by = None
            allocation.approved_at = None
            allocation.rejection_reason = None
            allocation.updated_at = now
            self.db.flush()
            message = f"Allocation changed from {previous}h to {hours}h and awaits approval."

        events.append(
            allocation_event(
                allocation,
                type=NotificationType.PHASE_ALLOCATION_PENDING,
                actor_id=context.user_id,
                title="Allocation awaiting approval",
                message=message,
                recipients=self.repo.list_growth_team_ids(),
            )
        )
        return SubmitResult(allocation=allocation, warnings=[warning] if warning else [])

    # ---------- Decide ----------
    def decide(
        self,
        *,
        context: RequestUserContext,
        allocation_id: UUID,
        data: AllocationDecisionData,
    ) -> PhaseAllocation | None:
        """Apply a Growth Team decision; returns ``None`` when the allocation was removed."""

        if data.action in DELETION_ACTIONS:
            return self.decide_deletion(
                context=context,
                allocation_id=allocation_id,
                approve=DELETION_ACTIONS[data.action],
                reason=data.rejection_reason,
            )
        if not context.is_growth_team:
            raise Forbidden("Only the Growth Team can decide allocations.")
        if data.action not in DECISION_ACTIONS:
            raise ValidationError(f"Unsupported allocation decision '{data.action}'.")
        reason = (data.rejection_reason or "").strip()
        if data.action == "reject" and not reason:
            raise ValidationError("rejection_reason is required when rejecting.")
        if data.action == "modify" and (data.modified_hours is None or data.modified_hours <= 0):
            raise ValidationError("modified_hours must be positive when modifying.")

        events: list[NotificationEvent] = []
        removed = False
        with transaction(self.db):
            allocation = self.repo.get_allocation(allocation_id, for_update=True)
            if allocation is None:
                raise NotFound("Phase allocation not found.")
            if allocation.approval_status in ALREADY_DECIDED:
                raise StaleState(
                    f"Allocation was already {allocation.approval_status.value.lower()}.",
                    currentStatus=allocation.approval_status.value,
                )
            if allocation.approval_status != ApprovalStatus.PENDING:
                raise PreconditionFailed(
                    "Only pending allocations can be decided.",
                    currentStatus=allocation.approval_status.value,
                )

            linked = self._pending_merged_hours(allocation)
            if linked:
                if data.action == "modify":
                    raise ValidationError(
                        "Allocations carrying reallocated hours can only be approved or rejected as a whole."
                    )
                if data.action == "approve":
                    events.append(
                        self.reallocations.approve_linked(context=context, allocation=allocation, linked=linked)
                    )
                else:
                    removed = self.reallocations.removes_allocation_on_reject(allocation, linked)
                    events.append(
                        self.reallocations.reject_linked(
                            context=context,
                            allocation=allocation,
                            linked=linked,
                            reason=reason,
                        )
                    )
            else:
                events.append(self._apply_decision(context=context, allocation=allocation, data=data, reason=reason))

        publish_events(self.publisher, events)
        return None if removed else allocation

    def _apply_decision(
        self,
        *,
        context: RequestUserContext,
        allocation: PhaseAllocation,
        data: AllocationDecisionData,
        reason: str,
    ) -> NotificationEvent:
        now = datetime.utcnow()
        project_id = allocation.phase.project_id

        if data.action == "reject":
            assert_transition(allocation.approval_status, ApprovalStatus.REJECTED)
            allocation.approval_status = ApprovalStatus.REJECTED
            allocation.rejection_reason = reason
            allocation.approved_by = None
            allocation.approved_at = None
            notification_type = NotificationType.PHASE_ALLOCATION_REJECTED
            title = "Allocation rejected"
            message = f"Allocation of {allocation.total_hours}h was rejected: {reason}"
        else:
            if data.action == "modify":
                modified = _q2(data.modified_hours)
                self.tracker.ensure_can_reduce_to(allocation, modified)
                self.budget.check_consultant_budget(
                    consultant_id=allocation.consultant_id,
                    project_id=project_id,
                    candidate_total=modified,
                    excluding_phase_id=allocation.phase_id,
                )
                message = f"Allocation modified from {allocation.total_hours}h to {modified}h and approved."
                allocation.total_hours = modified
                notification_type = NotificationType.PHASE_ALLOCATION_MODIFIED
                title = "Allocation modified"
            else:
                message = f"Allocation of {allocation.total_hours}h was approved."
                notification_type = NotificationType.PHASE_ALLOCATION_APPROVED
                title = "Allocation approved"
            assert_transition(allocation.approval_status, ApprovalStatus.APPROVED)
            allocation.approval_status = ApprovalStatus.APPROVED
            allocation.approved_by = context.user_id
            allocation.approved_at = now
            allocation.rejection_reason = None

        allocation.updated_at = now
        self.db.flush()
        return allocation_event(
            allocation,
            type=notification_type,
            actor_id=context.user_id,
            title=title,
            message=message,
            recipients=self.repo.list_stakeholder_ids(project_id, allocation.consultant_id),
        )

    # ---------- Deletion ----------
    def request_deletion(
        self,
        *,
        context: RequestUserContext,
        allocation_id: UUID,
        reason: str | None = None,
    ) -> PhaseAllocation:
        events: list[NotificationEvent] = []
        with transaction(self.db):
            allocation = self.repo.get_allocation(allocation_id, for_update=True)
            if allocation is None:
                raise NotFound("Phase allocation not found.")
            self._ensure_project_manager(context, allocation.phase.project_id)
            if allocation.approval_status != ApprovalStatus.APPROVED:
                raise PreconditionFailed(
                    "Only approved allocations can be submitted for deletion.",
                    currentStatus=allocation.approval_status.value,
                )

            now = datetime.utcnow()
            assert_transition(allocation.approval_status, ApprovalStatus.DELETION_PENDING)
            allocation.approval_status = ApprovalStatus.DELETION_PENDING
            allocation.deletion_requested_by = context.user_id
            allocation.deletion_requested_at = now
            allocation.updated_at = now
            self.db.flush()
            events.append(
                allocation_event(
                    allocation,
                    type=NotificationType.PHASE_ALLOCATION_DELETION_PENDING,
                    actor_id=context.user_id,
                    title="Allocation deletion requested",
                    message=f"Deletion of an allocation of {allocation.total_hours}h awaits approval.",
                    recipients=self.repo.list_growth_team_ids(),
                    metadata={"reason": reason} if reason else None,
                )
            )

        publish_events(self.publisher, events)
        return allocation

    def decide_deletion(
        self,
        *,
        context: RequestUserContext,
        allocation_id: UUID,
        approve: bool,
        reason: str | None = None,
    ) -> PhaseAllocation | None:
        """Delete the allocation or restore it to APPROVED."""

        if not context.is_growth_team:
            raise Forbidden("Only the Growth Team can decide deletion requests.")

        events: list[NotificationEvent] = []
        with transaction(self.db):
            allocation = self.repo.get_allocation(allocation_id, for_update=True)
            if allocation is None:
                raise NotFound("Phase allocation not found.")
            if allocation.approval_status != ApprovalStatus.DELETION_PENDING:
                raise PreconditionFailed(
                    "Allocation has no pending deletion request.",
                    currentStatus=allocation.approval_status.value,
                )

            recipients = self.repo.list_stakeholder_ids(allocation.phase.project_id, allocation.consultant_id)
            if approve:
                events.append(
                    allocation_event(
                        allocation,
                        type=NotificationType.PHASE_ALLOCATION_DELETED,
                        actor_id=context.user_id,
                        title="Allocation deleted",
                        message=f"Allocation of {allocation.total_hours}h was deleted.",
                        recipients=recipients,
                        new_status="DELETED",
                    )
                )
                for proposal in self.repo.list_pending_proposals_for_destination(allocation.id):
                    proposal.destination_allocation_id = None
                self.repo.delete_allocation(allocation)
            else:
                now = datetime.utcnow()
                assert_transition(allocation.approval_status, ApprovalStatus.APPROVED)
                allocation.approval_status = ApprovalStatus.APPROVED
                allocation.rejection_reason = (reason or "").strip() or None
                allocation.deletion_requested_by = None
                allocation.deletion_requested_at = None
                allocation.updated_at = now
                self.db.flush()
                events.append(
                    allocation_event(
                        allocation,
                        type=NotificationType.PHASE_ALLOCATION_DELETION_REJECTED,
                        actor_id=context.user_id,
                        title="Deletion request rejected",
                        message="Deletion was rejected; the allocation stays approved.",
                        recipients=recipients,
                    )
                )

        publish_events(self.publisher, events)
        return None if approve else allocation
