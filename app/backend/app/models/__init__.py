"""ORM model package."""

from app.models.entities import (
    ApprovalStatus,
    Notification,
    Phase,
    PhaseAllocation,
    PlanningStatus,
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

__all__ = [
    "ApprovalStatus",
    "Notification",
    "Phase",
    "PhaseAllocation",
    "PlanningStatus",
    "Project",
    "ProjectMember",
    "ProjectRole",
    "ProposalStatus",
    "ReallocationProposal",
    "UnplannedExpiredHours",
    "UnplannedStatus",
    "User",
    "UserRole",
    "WeeklyAllocation",
]
