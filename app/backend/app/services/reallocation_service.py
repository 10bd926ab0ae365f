"""Moving unplanned expired hours into another phase of the same project.

A reallocation never creates a second allocation for the same phase and
consultant. Depending on the destination it either creates a fresh pending
allocation, merges into a pending one (composite) or parks the hours in a
:class:`ReallocationProposal` until the Growth Team decides.

Every linked :class:`UnplannedExpiredHours` row is REALLOCATED while the move
is pending and finalised with ``reallocation_approved_at`` on approval. A
rejection reverts it to EXPIRED so the Product Manager can handle it again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.auth import RequestUserContext, has_project_role
from app.core.errors import (
    DataIntegrityError,
    Forbidden,
    InvalidDestinationState,
    NotFound,
    PreconditionFailed,
    StaleState,
    ValidationError,
)
from app.models.entities import (
    ApprovalStatus,
    PhaseAllocation,
    ProjectRole,
    ProposalStatus,
    ReallocationProposal,
    UnplannedExpiredHours,
    UnplannedStatus,
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
from app.services.transactions import transaction

Q2 = Decimal("0.01")
PROPOSAL_ACTIONS = {"approve", "reject"}
REVERT_NOTE = "Reallocation {outcome}; hours returned to the original phase awaiting handling."


def _q2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Q2)


@dataclass(slots=True)
class ReallocationRequestData:
    unplanned_id: UUID
    target_phase_id: UUID
    consultant_id: UUID
    hours: Decimal
    source_phase_id: UUID | None = None
    notes: str | None = None


@dataclass(slots=True)
class ReallocationOutcome:
    allocation: PhaseAllocation | None
    proposal: ReallocationProposal | None
    warnings: list[ProjectBudgetWarning] = field(default_factory=list)
    events: list[NotificationEvent] = field(default_factory=list)


class ReallocationService:
    """Reallocation requests, their decisions and forfeits.

    ``request``, ``approve_linked`` and ``reject_linked`` run inside the
    caller's transaction; the remaining public methods own theirs.
    """

    def __init__(self, db: Session, publisher: NotificationPublisher) -> None:
        self.db = db
        self.repo = AllocationRepository(db)
        self.budget = BudgetValidator(db)
        self.publisher = publisher

    # ---------- Serialization ----------
    @staticmethod
    def serialize_unplanned(unplanned: UnplannedExpiredHours) -> dict[str, object]:
        source = unplanned.phase_allocation
        return {
            "id": str(unplanned.id),
            "phase_allocation_id": str(unplanned.phase_allocation_id),
            "phase_id": str(source.phase_id),
            "consultant_id": str(source.consultant_id),
            "unplanned_hours": str(unplanned.unplanned_hours),
            "status": unplanned.status.value,
            "detected_at": unplanned.detected_at.isoformat(),
            "handled_at": unplanned.handled_at.isoformat() if unplanned.handled_at else None,
            "handled_by": str(unplanned.handled_by) if unplanned.handled_by else None,
            "reallocated_to_phase_id": (
                str(unplanned.reallocated_to_phase_id) if unplanned.reallocated_to_phase_id else None
            ),
            "reallocated_to_allocation_id": (
                str(unplanned.reallocated_to_allocation_id) if unplanned.reallocated_to_allocation_id else None
            ),
            "reallocation_approved_at": (
                unplanned.reallocation_approved_at.isoformat() if unplanned.reallocation_approved_at else None
            ),
            "notes": unplanned.notes,
        }

    @staticmethod
    def serialize_proposal(proposal: ReallocationProposal) -> dict[str, object]:
        return {
            "id": str(proposal.id),
            "destination_allocation_id": (
                str(proposal.destination_allocation_id) if proposal.destination_allocation_id else None
            ),
            "destination_phase_id": str(proposal.destination_phase_id),
            "unplanned_id": str(proposal.unplanned_id),
            "source_phase_id": str(proposal.source_phase_id),
            "consultant_id": str(proposal.consultant_id),
            "hours": str(proposal.hours),
            "status": proposal.status.value,
            "requested_by": str(proposal.requested_by),
            "requested_at": proposal.requested_at.isoformat(),
            "decided_by": str(proposal.decided_by) if proposal.decided_by else None,
            "decided_at": proposal.decided_at.isoformat() if proposal.decided_at else None,
            "rejection_reason": proposal.rejection_reason,
        }

    # ---------- Ledger helpers ----------
    def _ensure_project_manager(self, context: RequestUserContext, project_id: UUID) -> None:
        if not has_project_role(self.db, context, project_id=project_id, role=ProjectRole.PRODUCT_MANAGER):
            raise Forbidden("Only the project's Product Manager can handle unplanned hours.")

    @staticmethod
    def _ensure_in_flight(
        unplanned: UnplannedExpiredHours,
        *,
        expected_phase_id: UUID,
        expected_allocation_id: UUID | None = None,
    ) -> None:
        consistent = (
            unplanned.status == UnplannedStatus.REALLOCATED
            and unplanned.reallocation_approved_at is None
            and unplanned.reallocated_to_phase_id == expected_phase_id
            and (expected_allocation_id is None or unplanned.reallocated_to_allocation_id == expected_allocation_id)
        )
        if not consistent:
            raise DataIntegrityError(
                "Unplanned hours are not pending reallocation towards this destination.",
                unplannedId=unplanned.id,
                status=unplanned.status.value,
                reallocatedToPhaseId=unplanned.reallocated_to_phase_id,
                reallocatedToAllocationId=unplanned.reallocated_to_allocation_id,
            )

    @staticmethod
    def _trim_source(unplanned: UnplannedExpiredHours, now: datetime) -> PhaseAllocation:
        """Remove the unplanned hours from the allocation they expired on."""

        source = unplanned.phase_allocation
        source.total_hours = _q2(source.total_hours - unplanned.unplanned_hours)
        source.updated_at = now
        return source

    def _finalise(self, unplanned: UnplannedExpiredHours, now: datetime) -> None:
        unplanned.reallocation_approved_at = now
        self._trim_source(unplanned, now)

    def _revert(
        self,
        unplanned: UnplannedExpiredHours,
        *,
        expected_phase_id: UUID,
        expected_allocation_id: UUID | None,
        outcome: str,
    ) -> None:
        self._ensure_in_flight(
            unplanned,
            expected_phase_id=expected_phase_id,
            expected_allocation_id=expected_allocation_id,
        )
        unplanned.status = UnplannedStatus.EXPIRED
        unplanned.handled_at = None
        unplanned.handled_by = None
        unplanned.reallocated_to_phase_id = None
        unplanned.reallocated_to_allocation_id = None
        unplanned.reallocation_approved_at = None
        unplanned.notes = REVERT_NOTE.format(outcome=outcome)

    def _proposal_event(
        self,
        proposal: ReallocationProposal,
        *,
        project_id: UUID,
        type: NotificationType,
        actor_id: UUID,
        title: str,
        message: str,
        recipients: list[UUID],
    ) -> NotificationEvent:
        return NotificationEvent(
            type=type,
            allocation_id=proposal.destination_allocation_id,
            phase_id=proposal.destination_phase_id,
            project_id=project_id,
            consultant_id=proposal.consultant_id,
            new_status=proposal.status.value,
            actor_id=actor_id,
            title=title,
            message=message,
            recipients=recipients,
            action_url=f"/reallocation-proposals/{proposal.id}",
            metadata={
                "proposal_id": str(proposal.id),
                "unplanned_id": str(proposal.unplanned_id),
                "source_phase_id": str(proposal.source_phase_id),
                "hours": str(proposal.hours),
            },
        )

    # ---------- Request (caller's transaction) ----------
    def request(
        self,
        *,
        context: RequestUserContext,
        data: ReallocationRequestData,
        today: date,
    ) -> ReallocationOutcome:
        """Route unplanned hours to their destination in the target phase."""

        unplanned = self.repo.get_unplanned(data.unplanned_id, for_update=True)
        if unplanned is None:
            raise NotFound("Unplanned hours record not found.")

        source = unplanned.phase_allocation
        source_phase = source.phase
        self._ensure_project_manager(context, source_phase.project_id)

        if unplanned.status != UnplannedStatus.EXPIRED:
            raise PreconditionFailed(
                "Unplanned hours were already handled.",
                currentStatus=unplanned.status.value,
            )
        hours = _q2(data.hours)
        if hours != unplanned.unplanned_hours:
            raise ValidationError(
                "Reallocated hours must equal the unplanned hours.",
                unplannedHours=unplanned.unplanned_hours,
                requestedHours=hours,
            )
        if data.consultant_id != source.consultant_id:
            raise ValidationError("Unplanned hours can only be reallocated to the same consultant.")
        if data.source_phase_id is not None and data.source_phase_id != source.phase_id:
            raise ValidationError("reallocated_from_phase_id does not match the unplanned hours' phase.")

        target_phase = self.repo.get_phase(data.target_phase_id)
        if target_phase is None:
            raise NotFound("Target phase not found.")
        if target_phase.project_id != source_phase.project_id:
            raise ValidationError("Hours can only be reallocated within the same project.")
        if target_phase.id == source.phase_id:
            raise ValidationError("Hours must be reallocated to a different phase.")
        if target_phase.end_date < today:
            raise PreconditionFailed(
                "Target phase has ended; allocations are locked.",
                phaseEndDate=target_phase.end_date.isoformat(),
            )

        destination = self.repo.get_allocation_for_consultant(target_phase.id, source.consultant_id, for_update=True)
        if destination is not None and destination.approval_status not in (
            ApprovalStatus.PENDING,
            ApprovalStatus.APPROVED,
        ):
            raise InvalidDestinationState(
                "Destination allocation cannot receive reallocated hours in its current state.",
                currentStatus=destination.approval_status.value,
            )

        candidate_total = hours + (destination.total_hours if destination is not None else Decimal("0"))
        self.budget.check_consultant_budget(
            consultant_id=source.consultant_id,
            project_id=target_phase.project_id,
            candidate_total=candidate_total,
            excluding_phase_id=target_phase.id,
        )
        warning = self.budget.check_project_budget(
            project_id=target_phase.project_id,
            candidate_total=candidate_total,
            excluding_allocation_id=destination.id if destination is not None else None,
        )

        now = datetime.utcnow()
        growth_team = self.repo.list_growth_team_ids()
        outcome = ReallocationOutcome(allocation=None, proposal=None, warnings=[warning] if warning else [])

        if destination is None:
            destination = self.repo.add_allocation(
                PhaseAllocation(
                    phase_id=target_phase.id,
                    consultant_id=source.consultant_id,
                    total_hours=hours,
                    approval_status=ApprovalStatus.PENDING,
                    is_reallocation=True,
                    reallocated_from_phase_id=source.phase_id,
                    reallocated_from_unplanned_id=unplanned.id,
                    created_at=now,
                    updated_at=now,
                )
            )
            outcome.allocation = destination
            message = f"{hours}h reallocated from an expired phase as a new allocation."
        elif destination.approval_status == ApprovalStatus.PENDING:
            history = list(destination.composition_metadata or [])
            if not destination.is_composite:
                history = [{"original_hours": str(destination.total_hours), "timestamp": now.isoformat()}]
            history.append(
                {
                    "reallocated_hours": str(hours),
                    "source_phase_id": str(source.phase_id),
                    "source_unplanned_id": str(unplanned.id),
                    "timestamp": now.isoformat(),
                }
            )
            destination.composition_metadata = history
            destination.is_composite = True
            destination.total_hours = _q2(destination.total_hours + hours)
            destination.updated_at = now
            outcome.allocation = destination
            message = f"{hours}h merged into a pending allocation, now {destination.total_hours}h."
        else:
            outcome.proposal = self.repo.add_proposal(
                ReallocationProposal(
                    destination_allocation_id=destination.id,
                    destination_phase_id=target_phase.id,
                    unplanned_id=unplanned.id,
                    source_phase_id=source.phase_id,
                    consultant_id=source.consultant_id,
                    hours=hours,
                    status=ProposalStatus.PENDING,
                    requested_by=context.user_id,
                    requested_at=now,
                )
            )
            outcome.allocation = destination
            message = f"{hours}h proposed for an approved allocation of {destination.total_hours}h."

        unplanned.status = UnplannedStatus.REALLOCATED
        unplanned.handled_at = now
        unplanned.handled_by = context.user_id
        unplanned.reallocated_to_phase_id = target_phase.id
        unplanned.reallocated_to_allocation_id = destination.id
        unplanned.notes = data.notes
        self.db.flush()

        outcome.events.append(
            allocation_event(
                destination,
                type=NotificationType.REALLOCATION_PENDING,
                actor_id=context.user_id,
                title="Reallocation awaiting approval",
                message=message,
                recipients=growth_team,
                new_status=(
                    outcome.proposal.status.value if outcome.proposal is not None else destination.approval_status.value
                ),
                metadata={
                    "unplanned_id": str(unplanned.id),
                    "source_phase_id": str(source.phase_id),
                    "hours": str(hours),
                    **({"proposal_id": str(outcome.proposal.id)} if outcome.proposal is not None else {}),
                },
            )
        )
        return outcome

    # ---------- Allocation decisions carrying reallocated hours (caller's transaction) ----------
    def approve_linked(
        self,
        *,
        context: RequestUserContext,
        allocation: PhaseAllocation,
        linked: list[UnplannedExpiredHours],
    ) -> NotificationEvent:
        """Approve the allocation and every slice merged into it as one unit."""

        now = datetime.utcnow()
        for unplanned in linked:
            self._ensure_in_flight(
                unplanned,
                expected_phase_id=allocation.phase_id,
                expected_allocation_id=allocation.id,
            )
            self._finalise(unplanned, now)

        assert_transition(allocation.approval_status, ApprovalStatus.APPROVED)
        allocation.approval_status = ApprovalStatus.APPROVED
        allocation.approved_by = context.user_id
        allocation.approved_at = now
        allocation.rejection_reason = None
        # The merged slices are final; a later merge starts a new round from this total.
        allocation.is_composite = False
        allocation.composition_metadata = None
        allocation.updated_at = now
        self.db.flush()

        return allocation_event(
            allocation,
            type=NotificationType.PHASE_ALLOCATION_APPROVED,
            actor_id=context.user_id,
            title="Allocation approved",
            message=f"Allocation of {allocation.total_hours}h including reallocated hours was approved.",
            recipients=self.repo.list_stakeholder_ids(allocation.phase.project_id, allocation.consultant_id),
            metadata={"reallocated_slices": str(len(linked))},
        )

    @staticmethod
    def hours_before_merge(allocation: PhaseAllocation, linked: list[UnplannedExpiredHours]) -> Decimal:
        """Total the allocation had before the pending slices in ``linked`` were merged."""

        return _q2(allocation.total_hours - sum((unplanned.unplanned_hours for unplanned in linked), Decimal("0")))

    def removes_allocation_on_reject(self, allocation: PhaseAllocation, linked: list[UnplannedExpiredHours]) -> bool:
        """True when every hour of a reallocation-created allocation is still in flight."""

        return allocation.is_reallocation and self.hours_before_merge(allocation, linked) <= 0

    def reject_linked(
        self,
        *,
        context: RequestUserContext,
        allocation: PhaseAllocation,
        linked: list[UnplannedExpiredHours],
        reason: str,
    ) -> NotificationEvent:
        """Return every merged slice to its source and undo the merge.

        An allocation made only of pending reallocated hours is deleted;
        otherwise it keeps the hours it had before this round of merges and
        is rejected.
        """

        removed = self.removes_allocation_on_reject(allocation, linked)
        restored_hours = self.hours_before_merge(allocation, linked)
        if restored_hours < 0:
            raise DataIntegrityError(
                "Reallocated slices exceed the allocation total.",
                allocationId=allocation.id,
                totalHours=allocation.total_hours,
            )

        for unplanned in linked:
            self._revert(
                unplanned,
                expected_phase_id=allocation.phase_id,
                expected_allocation_id=allocation.id,
                outcome="rejected",
            )

        recipients = self.repo.list_stakeholder_ids(allocation.phase.project_id, allocation.consultant_id)
        now = datetime.utcnow()
        if removed:
            event = allocation_event(
                allocation,
                type=NotificationType.REALLOCATION_REJECTED,
                actor_id=context.user_id,
                title="Reallocation rejected",
                message=f"Reallocated hours were rejected and returned to the original phase: {reason}",
                recipients=recipients,
                new_status="DELETED",
                metadata={"rejection_reason": reason},
            )
            self.repo.delete_allocation(allocation)
            return event

        assert_transition(allocation.approval_status, ApprovalStatus.REJECTED)
        allocation.total_hours = restored_hours
        allocation.is_composite = False
        allocation.composition_metadata = None
        allocation.approval_status = ApprovalStatus.REJECTED
        allocation.rejection_reason = reason
        allocation.approved_by = None
        allocation.approved_at = None
        allocation.updated_at = now
        self.db.flush()

        return allocation_event(
            allocation,
            type=NotificationType.PHASE_ALLOCATION_REJECTED,
            actor_id=context.user_id,
            title="Allocation rejected",
            message=f"Allocation was rejected and reallocated hours returned to their phase: {reason}",
            recipients=recipients,
            metadata={"rejection_reason": reason, "reallocated_slices": str(len(linked))},
        )

    # ---------- Proposals ----------
    def list_proposals(
        self,
        *,
        context: RequestUserContext,
        status: ProposalStatus | None = None,
    ) -> list[ReallocationProposal]:
        proposals = self.repo.list_proposals(status=status)
        if context.is_growth_team:
            return proposals
        return [
            proposal
            for proposal in proposals
            if context.user_id in (proposal.requested_by, proposal.consultant_id)
        ]

    def decide_proposal(
        self,
        *,
        context: RequestUserContext,
        proposal_id: UUID,
        action: str,
        rejection_reason: str | None = None,
    ) -> ReallocationProposal:
        if not context.is_growth_team:
            raise Forbidden("Only the Growth Team can decide reallocation proposals.")
        if action not in PROPOSAL_ACTIONS:
            raise ValidationError(f"Unsupported proposal decision '{action}'.")
        if action == "reject" and not (rejection_reason or "").strip():
            raise ValidationError("rejection_reason is required when rejecting.")

        events: list[NotificationEvent] = []
        with transaction(self.db):
            proposal = self.repo.get_proposal(proposal_id, for_update=True)
            if proposal is None:
                raise NotFound("Reallocation proposal not found.")
            if proposal.status != ProposalStatus.PENDING:
                raise StaleState("Reallocation proposal was already decided.", currentStatus=proposal.status.value)

            unplanned = self.repo.get_unplanned(proposal.unplanned_id, for_update=True)
            project_id = unplanned.phase_allocation.phase.project_id
            now = datetime.utcnow()

            if action == "approve":
                destination = (
                    self.repo.get_allocation(proposal.destination_allocation_id, for_update=True)
                    if proposal.destination_allocation_id is not None
                    else None
                )
                if destination is None or destination.approval_status != ApprovalStatus.APPROVED:
                    raise InvalidDestinationState(
                        "Destination allocation is no longer approved; withdraw and re-target the proposal.",
                        currentStatus=destination.approval_status.value if destination is not None else "DELETED",
                    )
                self._ensure_in_flight(
                    unplanned,
                    expected_phase_id=proposal.destination_phase_id,
                    expected_allocation_id=destination.id,
                )
                destination.total_hours = _q2(destination.total_hours + proposal.hours)
                destination.updated_at = now
                self._finalise(unplanned, now)
                proposal.status = ProposalStatus.MERGED
                notification_type = NotificationType.REALLOCATION_APPROVED
                title = "Reallocation approved"
                message = f"{proposal.hours}h merged into the approved allocation, now {destination.total_hours}h."
            else:
                self._revert(
                    unplanned,
                    expected_phase_id=proposal.destination_phase_id,
                    expected_allocation_id=None,
                    outcome="rejected",
                )
                proposal.status = ProposalStatus.REJECTED
                proposal.rejection_reason = rejection_reason.strip()
                notification_type = NotificationType.REALLOCATION_REJECTED
                title = "Reallocation rejected"
                message = (
                    f"{proposal.hours}h are back in the original phase awaiting handling: "
                    f"{proposal.rejection_reason}"
                )

            proposal.decided_by = context.user_id
            proposal.decided_at = now
            self.db.flush()
            events.append(
                self._proposal_event(
                    proposal,
                    project_id=project_id,
                    type=notification_type,
                    actor_id=context.user_id,
                    title=title,
                    message=message,
                    recipients=self.repo.list_stakeholder_ids(project_id, proposal.consultant_id),
                )
            )

        publish_events(self.publisher, events)
        return proposal

    def withdraw_proposal(
        self,
        *,
        context: RequestUserContext,
        proposal_id: UUID,
        reason: str | None = None,
    ) -> ReallocationProposal:
        events: list[NotificationEvent] = []
        with transaction(self.db):
            proposal = self.repo.get_proposal(proposal_id, for_update=True)
            if proposal is None:
                raise NotFound("Reallocation proposal not found.")

            unplanned = self.repo.get_unplanned(proposal.unplanned_id, for_update=True)
            project_id = unplanned.phase_allocation.phase.project_id
            self._ensure_project_manager(context, project_id)
            if proposal.status != ProposalStatus.PENDING:
                raise StaleState("Reallocation proposal was already decided.", currentStatus=proposal.status.value)

            self._revert(
                unplanned,
                expected_phase_id=proposal.destination_phase_id,
                expected_allocation_id=None,
                outcome="withdrawn",
            )
            proposal.status = ProposalStatus.WITHDRAWN
            proposal.decided_by = context.user_id
            proposal.decided_at = datetime.utcnow()
            proposal.rejection_reason = reason
            self.db.flush()
            events.append(
                self._proposal_event(
                    proposal,
                    project_id=project_id,
                    type=NotificationType.REALLOCATION_WITHDRAWN,
                    actor_id=context.user_id,
                    title="Reallocation withdrawn",
                    message=f"{proposal.hours}h proposal was withdrawn by the Product Manager.",
                    recipients=self.repo.list_growth_team_ids(),
                )
            )

        publish_events(self.publisher, events)
        return proposal

    # ---------- Unplanned hours ----------
    def list_unplanned(
        self,
        *,
        context: RequestUserContext,
        project_id: UUID,
        status: UnplannedStatus | None = None,
    ) -> list[UnplannedExpiredHours]:
        if self.repo.get_project(project_id) is None:
            raise NotFound("Project not found.")
        if not context.is_growth_team and self.repo.get_member(project_id, context.user_id) is None:
            raise Forbidden("Not a member of this project.")
        return self.repo.list_unplanned_for_project(project_id, status=status)

    def forfeit(
        self,
        *,
        context: RequestUserContext,
        unplanned_id: UUID,
        notes: str | None = None,
    ) -> UnplannedExpiredHours:
        """Give up unplanned hours; the source allocation keeps only its approved weeks."""

        events: list[NotificationEvent] = []
        with transaction(self.db):
            unplanned = self.repo.get_unplanned(unplanned_id, for_update=True)
            if unplanned is None:
                raise NotFound("Unplanned hours record not found.")

            source = self.repo.get_allocation(unplanned.phase_allocation_id, for_update=True)
            project_id = source.phase.project_id
            if not context.is_growth_team:
                self._ensure_project_manager(context, project_id)
            if unplanned.status != UnplannedStatus.EXPIRED:
                raise PreconditionFailed(
                    "Unplanned hours were already handled.",
                    currentStatus=unplanned.status.value,
                )

            now = datetime.utcnow()
            assert_transition(source.approval_status, ApprovalStatus.FORFEITED)
            unplanned.status = UnplannedStatus.FORFEITED
            unplanned.handled_at = now
            unplanned.handled_by = context.user_id
            unplanned.notes = notes
            self._trim_source(unplanned, now)
            source.approval_status = ApprovalStatus.FORFEITED
            self.db.flush()

            events.append(
                allocation_event(
                    source,
                    type=NotificationType.UNPLANNED_HOURS_FORFEITED,
                    actor_id=context.user_id,
                    title="Unplanned hours forfeited",
                    message=f"{unplanned.unplanned_hours}h of unplanned hours were forfeited.",
                    recipients=self.repo.list_stakeholder_ids(project_id, source.consultant_id),
                    metadata={"unplanned_id": str(unplanned.id)},
                )
            )

        publish_events(self.publisher, events)
        return unplanned
