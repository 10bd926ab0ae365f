"""Detection of approved allocations whose phase ended with unplanned hours."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.entities import ApprovalStatus, UnplannedExpiredHours, UnplannedStatus
from app.repositories.allocation_repository import AllocationRepository
from app.services.allocation_states import assert_transition
from app.services.notifications import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
    allocation_event,
    publish_events,
)
from app.services.transactions import transaction
from app.services.weekly_distribution import WeeklyDistributionTracker

logger = logging.getLogger(__name__)

Q2 = Decimal("0.01")


@dataclass(slots=True)
class DetectionSummary:
    checked: int = 0
    expired: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"checked": self.checked, "expired": self.expired, "skipped": self.skipped}


class ExpirationDetector:
    """Turns under-planned hours of ended phases into unplanned ledger rows.

    Safe to run repeatedly: an allocation that already has a ledger row is
    skipped, and rows locked by a concurrent decision are left for the next run.
    """

    def __init__(self, db: Session, publisher: NotificationPublisher) -> None:
        self.db = db
        self.repo = AllocationRepository(db)
        self.tracker = WeeklyDistributionTracker()
        self.publisher = publisher

    def detect_expired_allocations(self, today: date | None = None) -> DetectionSummary:
        today = today or date.today()
        epsilon = get_settings().hours_epsilon
        summary = DetectionSummary()

        events: list[NotificationEvent] = []
        with transaction(self.db):
            growth_team = self.repo.list_growth_team_ids()
            for allocation in self.repo.list_expirable_allocations(today):
                summary.checked += 1
                shortfall = (allocation.total_hours - self.tracker.approved_total(allocation)).quantize(Q2)
                if shortfall <= epsilon:
                    continue
                if self.repo.get_unplanned_for_allocation(allocation.id) is not None:
                    summary.skipped += 1
                    continue

                now = datetime.utcnow()
                self.repo.add_unplanned(
                    UnplannedExpiredHours(
                        phase_allocation_id=allocation.id,
                        unplanned_hours=shortfall,
                        status=UnplannedStatus.EXPIRED,
                        detected_at=now,
                    )
                )
                assert_transition(allocation.approval_status, ApprovalStatus.EXPIRED)
                allocation.approval_status = ApprovalStatus.EXPIRED
                allocation.updated_at = now
                self.db.flush()
                summary.expired += 1

                stakeholders = self.repo.list_stakeholder_ids(allocation.phase.project_id, allocation.consultant_id)
                events.append(
                    allocation_event(
                        allocation,
                        type=NotificationType.PHASE_ALLOCATION_EXPIRED,
                        actor_id=None,
                        title="Allocation expired with unplanned hours",
                        message=(
                            f"Phase ended with {shortfall}h of {allocation.total_hours}h unplanned; "
                            "forfeit or reallocate them."
                        ),
                        recipients=list(dict.fromkeys([*stakeholders, *growth_team])),
                        metadata={"unplanned_hours": str(shortfall)},
                    )
                )

        logger.info(
            "Expiration scan finished: checked=%s expired=%s skipped=%s",
            summary.checked,
            summary.expired,
            summary.skipped,
        )
        publish_events(self.publisher, events)
        return summary
