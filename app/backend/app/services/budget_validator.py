"""Budget checks gating every change to allocated hours.

The arithmetic lives in pure ``evaluate_*`` functions; :class:`BudgetValidator`
only reads committed totals and raises or returns warnings. Sums are read
fresh on every call so concurrent writers are always measured against the
current state of the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import BudgetExceeded, NotFound
from app.repositories.allocation_repository import AllocationRepository

ZERO = Decimal("0.00")
Q2 = Decimal("0.01")


def _q2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Q2)


@dataclass(frozen=True, slots=True)
class ConsultantBudgetCheck:
    consultant_id: UUID
    current_total: Decimal
    requested_hours: Decimal
    new_total: Decimal
    budget: Decimal | None

    @property
    def overage(self) -> Decimal:
        if self.budget is None:
            return ZERO
        return max(ZERO, _q2(self.new_total - self.budget))

    @property
    def within_budget(self) -> bool:
        return self.budget is None or self.new_total <= self.budget

    def as_payload(self) -> dict[str, object]:
        return {
            "consultantId": self.consultant_id,
            "currentTotal": self.current_total,
            "requestedHours": self.requested_hours,
            "newTotal": self.new_total,
            "budget": self.budget,
            "overage": self.overage,
        }


@dataclass(frozen=True, slots=True)
class ProjectBudgetWarning:
    project_id: UUID
    budgeted_hours: Decimal
    committed_hours: Decimal
    overage: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "type": "project_budget_exceeded",
            "project_id": str(self.project_id),
            "budgeted_hours": str(self.budgeted_hours),
            "committed_hours": str(self.committed_hours),
            "overage": str(self.overage),
            "message": (
                f"Project allocations total {self.committed_hours}h against a budget of "
                f"{self.budgeted_hours}h ({self.overage}h over)."
            ),
        }


def evaluate_consultant_budget(
    *,
    consultant_id: UUID,
    committed_elsewhere: Decimal,
    candidate_total: Decimal,
    budget: Decimal | None,
) -> ConsultantBudgetCheck:
    """Compare committed hours plus a candidate allocation against a ceiling."""

    current = _q2(committed_elsewhere)
    requested = _q2(candidate_total)
    return ConsultantBudgetCheck(
        consultant_id=consultant_id,
        current_total=current,
        requested_hours=requested,
        new_total=_q2(current + requested),
        budget=_q2(budget) if budget is not None else None,
    )


def evaluate_project_budget(
    *,
    project_id: UUID,
    committed_elsewhere: Decimal,
    candidate_total: Decimal,
    budgeted_hours: Decimal,
) -> ProjectBudgetWarning | None:
    """Return a warning when the project would exceed its budget.

    A project without a positive budget is never reported.
    """

    budget = _q2(budgeted_hours)
    if budget <= ZERO:
        return None

    committed = _q2(committed_elsewhere + candidate_total)
    if committed <= budget:
        return None

    return ProjectBudgetWarning(
        project_id=project_id,
        budgeted_hours=budget,
        committed_hours=committed,
        overage=_q2(committed - budget),
    )


class BudgetValidator:
    """Reads committed totals and applies consultant and project budget rules."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.repo = AllocationRepository(db)

    def check_consultant_budget(
        self,
        *,
        consultant_id: UUID,
        project_id: UUID,
        candidate_total: Decimal,
        excluding_phase_id: UUID | None = None,
    ) -> ConsultantBudgetCheck:
        """Raise :class:`BudgetExceeded` when the consultant ceiling would be breached."""

        member = self.repo.get_member(project_id, consultant_id)
        if member is None:
            raise NotFound("Consultant is not a member of this project.", consultantId=consultant_id)

        check = evaluate_consultant_budget(
            consultant_id=consultant_id,
            committed_elsewhere=self.repo.sum_consultant_committed_hours(
                project_id=project_id,
                consultant_id=consultant_id,
                excluding_phase_id=excluding_phase_id,
            ),
            candidate_total=candidate_total,
            budget=member.allocated_hours,
        )
        if not check.within_budget:
            raise BudgetExceeded(
                f"Allocation exceeds the consultant's project budget by {check.overage}h.",
                **check.as_payload(),
            )
        return check

    def check_project_budget(
        self,
        *,
        project_id: UUID,
        candidate_total: Decimal,
        excluding_allocation_id: UUID | None = None,
    ) -> ProjectBudgetWarning | None:
        project = self.repo.get_project(project_id)
        if project is None:
            raise NotFound("Project not found.", projectId=project_id)

        return evaluate_project_budget(
            project_id=project_id,
            committed_elsewhere=self.repo.sum_project_committed_hours(
                project_id=project_id,
                excluding_allocation_id=excluding_allocation_id,
            ),
            candidate_total=candidate_total,
            budgeted_hours=project.budgeted_hours,
        )
