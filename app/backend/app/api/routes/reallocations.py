"""Reallocation proposal and unplanned hours endpoints."""

from __future__ import annotations

from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.auth import RequestUserContext, get_current_user_context
from app.db.dependencies import get_db_session
from app.models.entities import ProposalStatus, UnplannedStatus
from app.services.notifications import NotificationPublisher, get_notification_publisher
from app.services.reallocation_service import ReallocationService

router = APIRouter(tags=["reallocations"])


class ProposalDecisionPayload(BaseModel):
    action: Literal["approve", "reject"]
    rejection_reason: str | None = Field(default=None, max_length=2000)


class ProposalWithdrawalPayload(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ForfeitPayload(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


def _reallocation_service(db: Session, publisher: NotificationPublisher) -> ReallocationService:
    return ReallocationService(db, publisher)


@router.get("/reallocation-proposals")
def list_reallocation_proposals(
    status: ProposalStatus | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> list[dict[str, object]]:
    service = _reallocation_service(db, publisher)
    return [service.serialize_proposal(proposal) for proposal in service.list_proposals(context=context, status=status)]


@router.post("/reallocation-proposals/{proposal_id}/decision")
def decide_reallocation_proposal(
    proposal_id: UUID,
    payload: ProposalDecisionPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object]:
    service = _reallocation_service(db, publisher)
    proposal = service.decide_proposal(
        context=context,
        proposal_id=proposal_id,
        action=payload.action,
        rejection_reason=payload.rejection_reason,
    )
    return service.serialize_proposal(proposal)


@router.post("/reallocation-proposals/{proposal_id}/withdrawal")
def withdraw_reallocation_proposal(
    proposal_id: UUID,
    payload: ProposalWithdrawalPayload | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object]:
    service = _reallocation_service(db, publisher)
    proposal = service.withdraw_proposal(
        context=context,
        proposal_id=proposal_id,
        reason=payload.reason if payload is not None else None,
    )
    return service.serialize_proposal(proposal)


@router.get("/projects/{project_id}/unplanned-hours")
def list_unplanned_hours(
    project_id: UUID,
    status: UnplannedStatus | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> list[dict[str, object]]:
    service = _reallocation_service(db, publisher)
    return [
        service.serialize_unplanned(unplanned)
        for unplanned in service.list_unplanned(context=context, project_id=project_id, status=status)
    ]


@router.post("/unplanned-hours/{unplanned_id}/forfeit")
def forfeit_unplanned_hours(
    unplanned_id: UUID,
    payload: ForfeitPayload | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object]:
    service = _reallocation_service(db, publisher)
    unplanned = service.forfeit(
        context=context,
        unplanned_id=unplanned_id,
        notes=payload.notes if payload is not None else None,
    )
    return service.serialize_unplanned(unplanned)
