"""Notification gateway for allocation lifecycle events.

Services collect :class:`NotificationEvent` objects while a transaction is
open and hand them to :func:`publish_events` after commit. Delivery is best
effort: a failing publisher is logged and never undoes a committed change.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.models.entities import Notification, PhaseAllocation

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    PHASE_ALLOCATION_PENDING = "PHASE_ALLOCATION_PENDING"
    PHASE_ALLOCATION_APPROVED = "PHASE_ALLOCATION_APPROVED"
    PHASE_ALLOCATION_MODIFIED = "PHASE_ALLOCATION_MODIFIED"
    PHASE_ALLOCATION_REJECTED = "PHASE_ALLOCATION_REJECTED"
    PHASE_ALLOCATION_DELETION_PENDING = "PHASE_ALLOCATION_DELETION_PENDING"
    PHASE_ALLOCATION_DELETED = "PHASE_ALLOCATION_DELETED"
    PHASE_ALLOCATION_DELETION_REJECTED = "PHASE_ALLOCATION_DELETION_REJECTED"
    PHASE_ALLOCATION_EXPIRED = "PHASE_ALLOCATION_EXPIRED"
    UNPLANNED_HOURS_FORFEITED = "UNPLANNED_HOURS_FORFEITED"
    REALLOCATION_PENDING = "REALLOCATION_PENDING"
    REALLOCATION_APPROVED = "REALLOCATION_APPROVED"
    REALLOCATION_REJECTED = "REALLOCATION_REJECTED"
    REALLOCATION_WITHDRAWN = "REALLOCATION_WITHDRAWN"
    WEEKLY_ALLOCATION_PENDING = "WEEKLY_ALLOCATION_PENDING"
    WEEKLY_ALLOCATION_APPROVED = "WEEKLY_ALLOCATION_APPROVED"
    WEEKLY_ALLOCATION_MODIFIED = "WEEKLY_ALLOCATION_MODIFIED"
    WEEKLY_ALLOCATION_REJECTED = "WEEKLY_ALLOCATION_REJECTED"


@dataclass(slots=True)
class NotificationEvent:
    type: NotificationType
    allocation_id: UUID | None
    phase_id: UUID
    project_id: UUID
    consultant_id: UUID
    new_status: str
    actor_id: UUID | None
    title: str
    message: str
    recipients: list[UUID] = field(default_factory=list)
    action_url: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def log_context(self) -> dict[str, object]:
        return {
            "allocation_id": self.allocation_id,
            "phase_id": self.phase_id,
            "project_id": self.project_id,
            "consultant_id": self.consultant_id,
            "actor_id": self.actor_id,
            "event_type": self.type.value,
            "new_status": self.new_status,
        }


class NotificationPublisher(Protocol):
    def publish(self, event: NotificationEvent) -> None: ...


class InAppNotificationPublisher:
    """Writes one in-app notification row per recipient in its own session."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def publish(self, event: NotificationEvent) -> None:
        session = self._session_factory()
        try:
            for user_id in dict.fromkeys(event.recipients):
                session.add(
                    Notification(
                        user_id=user_id,
                        type=event.type.value,
                        title=event.title,
                        message=event.message,
                        action_url=event.action_url,
                        metadata_={
                            "allocation_id": str(event.allocation_id) if event.allocation_id else None,
                            "phase_id": str(event.phase_id),
                            "project_id": str(event.project_id),
                            "consultant_id": str(event.consultant_id),
                            "new_status": event.new_status,
                            **event.metadata,
                        },
                    )
                )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def get_notification_publisher() -> NotificationPublisher:
    """FastAPI dependency returning the production publisher."""

    return InAppNotificationPublisher()


def allocation_event(
    allocation: PhaseAllocation,
    *,
    type: NotificationType,
    actor_id: UUID | None,
    title: str,
    message: str,
    recipients: Iterable[UUID],
    new_status: str | None = None,
    metadata: dict[str, str] | None = None,
) -> NotificationEvent:
    """Snapshot an allocation into an event; safe to call before the row is deleted."""

    return NotificationEvent(
        type=type,
        allocation_id=allocation.id,
        phase_id=allocation.phase_id,
        project_id=allocation.phase.project_id,
        consultant_id=allocation.consultant_id,
        new_status=new_status or allocation.approval_status.value,
        actor_id=actor_id,
        title=title,
        message=message,
        recipients=list(recipients),
        action_url=f"/allocations/{allocation.id}",
        metadata=dict(metadata or {}),
    )


def publish_events(publisher: NotificationPublisher, events: Iterable[NotificationEvent]) -> None:
    """Log and publish committed lifecycle events, suppressing delivery failures."""

    for event in events:
        logger.info("%s committed", event.type.value, extra=event.log_context())
        try:
            publisher.publish(event)
        except Exception:
            logger.exception("Notification delivery failed", extra=event.log_context())
