"""Weekly distribution of approved phase allocations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.auth import RequestUserContext
from app.core.errors import (
    BelowPlannedHours,
    BudgetExceeded,
    Forbidden,
    NotFound,
    PreconditionFailed,
    StaleState,
    ValidationError,
)
from app.models.entities import ApprovalStatus, PhaseAllocation, PlanningStatus, WeeklyAllocation
from app.repositories.allocation_repository import AllocationRepository
from app.services.notifications import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
    allocation_event,
    publish_events,
)
from app.services.transactions import transaction

ZERO = Decimal("0.00")
Q2 = Decimal("0.01")

APPROVED_WEEK_STATUSES = {PlanningStatus.APPROVED, PlanningStatus.MODIFIED}
WEEKLY_ACTIONS = {"approve", "reject", "modify"}
# Approved weekly totals of these allocations are frozen by the expiration ledger.
CLOSED_ALLOCATION_STATUSES = {ApprovalStatus.EXPIRED, ApprovalStatus.FORFEITED}


def _q2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Q2)


def effective_hours(week: WeeklyAllocation) -> Decimal:
    """Hours a week occupies: approved when decided, proposed while pending."""

    if week.approved_hours is not None:
        return week.approved_hours
    return week.proposed_hours


def sum_planned(weeks: list[WeeklyAllocation], *, excluding: WeeklyAllocation | None = None) -> Decimal:
    return _q2(
        sum(
            (
                effective_hours(week)
                for week in weeks
                if week is not excluding and week.planning_status != PlanningStatus.REJECTED
            ),
            ZERO,
        )
    )


def sum_approved(weeks: list[WeeklyAllocation]) -> Decimal:
    return _q2(
        sum(
            (
                week.approved_hours or ZERO
                for week in weeks
                if week.planning_status in APPROVED_WEEK_STATUSES
            ),
            ZERO,
        )
    )


@dataclass(frozen=True, slots=True)
class ReductionCheck:
    allowed: bool
    planned_hours: Decimal
    minimum_allowed_hours: Decimal
    current_allocation: Decimal

    def as_payload(self) -> dict[str, object]:
        return {
            "plannedHours": self.planned_hours,
            "minimumAllowedHours": self.minimum_allowed_hours,
            "currentAllocation": self.current_allocation,
        }


def evaluate_reduction(*, current_total: Decimal, planned: Decimal, new_total: Decimal) -> ReductionCheck:
    """Decide whether an allocation may move from ``current_total`` to ``new_total``.

    Increases are always legal. Once every current hour is planned no
    reduction is possible; otherwise the total may not drop below the
    planned hours.
    """

    current = _q2(current_total)
    planned = _q2(planned)
    requested = _q2(new_total)

    if requested >= current:
        return ReductionCheck(True, planned, ZERO, current)
    if planned >= current:
        return ReductionCheck(False, planned, current, current)
    if requested >= planned:
        return ReductionCheck(True, planned, planned, current)
    return ReductionCheck(False, planned, planned, current)


def iso_week_bounds(value: date) -> tuple[date, date, int, int]:
    """Return Monday, Sunday, ISO week number and ISO year for ``value``."""

    monday = value - timedelta(days=value.weekday())
    iso_year, iso_week, _ = monday.isocalendar()
    return monday, monday + timedelta(days=6), iso_week, iso_year


class WeeklyDistributionTracker:
    """Read-side view of how an allocation's hours are spread over weeks."""

    def planned_total(self, allocation: PhaseAllocation) -> Decimal:
        return sum_planned(allocation.weekly_allocations)

    def approved_total(self, allocation: PhaseAllocation) -> Decimal:
        return sum_approved(allocation.weekly_allocations)

    def can_reduce_to(self, allocation: PhaseAllocation, new_total: Decimal) -> ReductionCheck:
        return evaluate_reduction(
            current_total=allocation.total_hours,
            planned=self.planned_total(allocation),
            new_total=new_total,
        )

    def ensure_can_reduce_to(self, allocation: PhaseAllocation, new_total: Decimal) -> None:
        check = self.can_reduce_to(allocation, new_total)
        if not check.allowed:
            raise BelowPlannedHours(
                f"Cannot reduce allocation below {check.minimum_allowed_hours}h already planned in weekly allocations.",
                **check.as_payload(),
            )


@dataclass(slots=True)
class WeeklySubmitData:
    phase_allocation_id: UUID
    week_start_date: date
    proposed_hours: Decimal


@dataclass(slots=True)
class WeeklyDecisionData:
    action: str
    approved_hours: Decimal | None = None
    rejection_reason: str | None = None


@dataclass(slots=True)
class WeeklyBatchDecision:
    weekly_id: UUID
    data: WeeklyDecisionData


class WeeklyPlanningService:
    """Consultant weekly plans and their Growth Team review."""

    def __init__(self, db: Session, publisher: NotificationPublisher) -> None:
        self.db = db
        self.repo = AllocationRepository(db)
        self.publisher = publisher

    @staticmethod
    def serialize_weekly(week: WeeklyAllocation) -> dict[str, object]:
        return {
            "id": str(week.id),
            "phase_allocation_id": str(week.phase_allocation_id),
            "consultant_id": str(week.consultant_id),
            "week_start_date": week.week_start_date.isoformat(),
            "week_end_date": week.week_end_date.isoformat(),
            "week_number": week.week_number,
            "year": week.year,
            "proposed_hours": str(week.proposed_hours),
            "approved_hours": str(week.approved_hours) if week.approved_hours is not None else None,
            "planning_status": week.planning_status.value,
            "rejection_reason": week.rejection_reason,
        }

    def _ensure_within_total(
        self,
        allocation: PhaseAllocation,
        *,
        week: WeeklyAllocation | None,
        hours: Decimal,
    ) -> None:
        planned_elsewhere = sum_planned(allocation.weekly_allocations, excluding=week)
        new_total = _q2(planned_elsewhere + hours)
        if new_total > allocation.total_hours:
            raise BudgetExceeded(
                "Weekly hours would exceed the phase allocation.",
                allocatedHours=allocation.total_hours,
                plannedHours=planned_elsewhere,
                requestedHours=_q2(hours),
                overage=_q2(new_total - allocation.total_hours),
            )

    def submit_weekly(
        self,
        *,
        context: RequestUserContext,
        data: WeeklySubmitData,
        today: date | None = None,
    ) -> WeeklyAllocation:
        if data.proposed_hours < 0:
            raise ValidationError("proposed_hours must be zero or positive.")
        today = today or date.today()
        monday, sunday, week_number, year = iso_week_bounds(data.week_start_date)
        hours = _q2(data.proposed_hours)

        events: list[NotificationEvent] = []
        with transaction(self.db):
            allocation = self.repo.get_allocation(data.phase_allocation_id, for_update=True)
            if allocation is None:
                raise NotFound("Phase allocation not found.")
            if allocation.consultant_id != context.user_id and not context.is_growth_team:
                raise Forbidden("Only the allocated consultant can plan weekly hours.")
            if allocation.approval_status != ApprovalStatus.APPROVED:
                raise PreconditionFailed(
                    "Weekly hours can only be planned against an approved allocation.",
                    currentStatus=allocation.approval_status.value,
                )

            phase = allocation.phase
            if phase.end_date < today and not context.is_growth_team:
                raise PreconditionFailed(
                    "Phase has ended; weekly planning is locked.", phaseEndDate=phase.end_date.isoformat()
                )
            if sunday < phase.start_date or monday > phase.end_date:
                raise ValidationError(
                    "Week does not overlap the phase.",
                    phaseStartDate=phase.start_date.isoformat(),
                    phaseEndDate=phase.end_date.isoformat(),
                )

            week = next(
                (
                    item
                    for item in allocation.weekly_allocations
                    if item.year == year and item.week_number == week_number
                ),
                None,
            )
            self._ensure_within_total(allocation, week=week, hours=hours)

            now = datetime.utcnow()
            if week is None:
                week = WeeklyAllocation(
                    consultant_id=allocation.consultant_id,
                    week_start_date=monday,
                    week_end_date=sunday,
                    week_number=week_number,
                    year=year,
                    proposed_hours=hours,
                    created_at=now,
                )
                allocation.weekly_allocations.append(week)

            week.proposed_hours = hours
            week.approved_hours = None
            week.planning_status = PlanningStatus.PENDING
            week.planned_by = context.user_id
            week.approved_by = None
            week.approved_at = None
            week.rejection_reason = None
            week.updated_at = now
            self.db.flush()

            events.append(
                allocation_event(
                    allocation,
                    type=NotificationType.WEEKLY_ALLOCATION_PENDING,
                    actor_id=context.user_id,
                    title="Weekly plan submitted",
                    message=f"{hours}h planned for week {week_number}/{year}.",
                    recipients=self.repo.list_growth_team_ids(),
                    new_status=PlanningStatus.PENDING.value,
                    metadata={"weekly_allocation_id": str(week.id), "week_start_date": monday.isoformat()},
                )
            )

        publish_events(self.publisher, events)
        return week

    @staticmethod
    def _validate_decision(data: WeeklyDecisionData) -> None:
        if data.action not in WEEKLY_ACTIONS:
            raise ValidationError(f"Unsupported weekly decision '{data.action}'.")
        if data.action == "reject" and not (data.rejection_reason or "").strip():
            raise ValidationError("rejection_reason is required when rejecting.")
        if data.action == "modify" and data.approved_hours is None:
            raise ValidationError("approved_hours is required when modifying.")
        if data.approved_hours is not None and data.approved_hours < 0:
            raise ValidationError("approved_hours must be zero or positive.")

    def _apply_decision(
        self,
        *,
        context: RequestUserContext,
        week: WeeklyAllocation,
        data: WeeklyDecisionData,
        now: datetime,
    ) -> tuple[NotificationEvent, bool]:
        """Decide one pending week; the flag is true when a zero-hour approval removed it."""

        if week.planning_status != PlanningStatus.PENDING:
            raise StaleState(
                "Weekly allocation was already decided.",
                currentStatus=week.planning_status.value,
                weeklyAllocationId=week.id,
            )

        allocation = self.repo.get_allocation(week.phase_allocation_id, for_update=True)
        if data.action != "reject" and allocation.approval_status in CLOSED_ALLOCATION_STATUSES:
            raise PreconditionFailed(
                "Weekly hours of an expired or forfeited allocation can only be rejected.",
                currentStatus=allocation.approval_status.value,
            )
        if data.action == "reject":
            week.planning_status = PlanningStatus.REJECTED
            week.rejection_reason = data.rejection_reason.strip()
            week.approved_hours = None
            week.updated_at = now
            notification_type = NotificationType.WEEKLY_ALLOCATION_REJECTED
            message = f"Week {week.week_number}/{week.year} was rejected: {week.rejection_reason}"
        else:
            hours = _q2(data.approved_hours if data.approved_hours is not None else week.proposed_hours)
            self._ensure_within_total(allocation, week=week, hours=hours)
            week.approved_hours = hours
            week.planning_status = PlanningStatus.APPROVED if hours == week.proposed_hours else PlanningStatus.MODIFIED
            week.approved_by = context.user_id
            week.approved_at = now
            week.updated_at = now
            notification_type = (
                NotificationType.WEEKLY_ALLOCATION_APPROVED
                if week.planning_status == PlanningStatus.APPROVED
                else NotificationType.WEEKLY_ALLOCATION_MODIFIED
            )
            message = f"Week {week.week_number}/{week.year} approved with {hours}h."

        event = allocation_event(
            allocation,
            type=notification_type,
            actor_id=context.user_id,
            title="Weekly plan reviewed",
            message=message,
            recipients=[allocation.consultant_id],
            new_status=week.planning_status.value,
            metadata={"weekly_allocation_id": str(week.id)},
        )
        removed = week.approved_hours is not None and week.approved_hours == ZERO
        if removed:
            allocation.weekly_allocations.remove(week)
            event.metadata["removed"] = "true"
        self.db.flush()
        return event, removed

    def decide_weekly(
        self,
        *,
        context: RequestUserContext,
        weekly_id: UUID,
        data: WeeklyDecisionData,
    ) -> WeeklyAllocation | None:
        """Apply a Growth Team decision; returns ``None`` when a zero-hour approval removed the week."""

        if not context.is_growth_team:
            raise Forbidden("Only the Growth Team can decide weekly allocations.")
        self._validate_decision(data)

        with transaction(self.db):
            week = self.repo.get_weekly(weekly_id, for_update=True)
            if week is None:
                raise NotFound("Weekly allocation not found.")
            event, removed = self._apply_decision(context=context, week=week, data=data, now=datetime.utcnow())

        publish_events(self.publisher, [event])
        return None if removed else week

    def decide_weekly_batch(
        self,
        *,
        context: RequestUserContext,
        decisions: list[WeeklyBatchDecision],
    ) -> list[WeeklyAllocation]:
        """Decide many pending weeks at once; any failing week aborts the whole batch.

        Weeks are applied in order, so approvals earlier in the batch count
        against the allocation total when later weeks are checked.
        Returns the weeks that still exist afterwards.
        """

        if not context.is_growth_team:
            raise Forbidden("Only the Growth Team can decide weekly allocations.")
        if not decisions:
            raise ValidationError("Provide at least one weekly decision.")
        weekly_ids = [decision.weekly_id for decision in decisions]
        if len(set(weekly_ids)) != len(weekly_ids):
            raise ValidationError("Each weekly allocation can appear only once in a batch.")
        for decision in decisions:
            self._validate_decision(decision.data)

        events: list[NotificationEvent] = []
        decided: list[WeeklyAllocation] = []
        with transaction(self.db):
            weeks = {week.id: week for week in self.repo.list_weekly(weekly_ids, for_update=True)}
            missing = [weekly_id for weekly_id in weekly_ids if weekly_id not in weeks]
            if missing:
                raise NotFound("Weekly allocation not found.", weeklyAllocationIds=", ".join(map(str, missing)))
            not_pending = [week for week in weeks.values() if week.planning_status != PlanningStatus.PENDING]
            if not_pending:
                raise StaleState(
                    "Some weekly allocations were already decided.",
                    weeklyAllocationIds=", ".join(str(week.id) for week in not_pending),
                )

            now = datetime.utcnow()
            for decision in decisions:
                week = weeks[decision.weekly_id]
                event, removed = self._apply_decision(context=context, week=week, data=decision.data, now=now)
                events.append(event)
                if not removed:
                    decided.append(week)

        publish_events(self.publisher, events)
        return decided
