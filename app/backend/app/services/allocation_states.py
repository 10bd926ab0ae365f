"""Lifecycle transitions allowed for phase allocations."""

from __future__ import annotations

from app.core.errors import PreconditionFailed
from app.models.entities import ApprovalStatus

ALLOWED_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    # APPROVED -> PENDING when hours are edited after approval.
    ApprovalStatus.APPROVED: frozenset(
        {ApprovalStatus.PENDING, ApprovalStatus.DELETION_PENDING, ApprovalStatus.EXPIRED}
    ),
    ApprovalStatus.REJECTED: frozenset({ApprovalStatus.PENDING}),
    # Approving a deletion removes the row instead of transitioning it.
    ApprovalStatus.DELETION_PENDING: frozenset({ApprovalStatus.APPROVED}),
    ApprovalStatus.EXPIRED: frozenset({ApprovalStatus.FORFEITED}),
    ApprovalStatus.FORFEITED: frozenset(),
}

_unmapped = set(ApprovalStatus) - set(ALLOWED_TRANSITIONS)
if _unmapped:
    raise RuntimeError(f"Allocation transitions missing for: {sorted(status.value for status in _unmapped)}")


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(current: ApprovalStatus, target: ApprovalStatus) -> None:
    """Raise when ``current -> target`` is not a legal allocation transition."""

    if not can_transition(current, target):
        raise PreconditionFailed(
            f"Allocation cannot move from {current.value} to {target.value}.",
            currentStatus=current.value,
            requestedStatus=target.value,
        )
