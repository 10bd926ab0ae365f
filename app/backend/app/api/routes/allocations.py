"""Phase allocation submit, decision and deletion endpoints."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.auth import RequestUserContext, get_current_user_context
from app.db.dependencies import get_db_session
from app.services.allocation_service import AllocationDecisionData, AllocationService, AllocationSubmitData
from app.services.notifications import NotificationPublisher, get_notification_publisher
from app.services.reallocation_service import ReallocationService

router = APIRouter(prefix="/allocations", tags=["allocations"])


class AllocationSubmitPayload(BaseModel):
    phase_id: UUID
    consultant_id: UUID
    total_hours: Decimal
    is_reallocation: bool = False
    reallocated_from_phase_id: UUID | None = None
    reallocated_from_unplanned_id: UUID | None = None
    notes: str | None = Field(default=None, max_length=2000)


class AllocationDecisionPayload(BaseModel):
    action: Literal["approve", "reject", "modify", "delete", "reject-deletion"]
    rejection_reason: str | None = Field(default=None, max_length=2000)
    modified_hours: Decimal | None = None


class DeletionRequestPayload(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


def _allocation_service(db: Session, publisher: NotificationPublisher) -> AllocationService:
    return AllocationService(db, publisher)


@router.get("")
def list_allocations(
    phase_id: UUID | None = None,
    consultant_id: UUID | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> list[dict[str, object]]:
    service = _allocation_service(db, publisher)
    allocations = service.list_allocations(context=context, phase_id=phase_id, consultant_id=consultant_id)
    return [service.serialize_allocation(allocation) for allocation in allocations]


@router.post("", status_code=status.HTTP_201_CREATED)
def submit_allocation(
    payload: AllocationSubmitPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object]:
    service = _allocation_service(db, publisher)
    result = service.submit(
        context=context,
        data=AllocationSubmitData(
            phase_id=payload.phase_id,
            consultant_id=payload.consultant_id,
            total_hours=payload.total_hours,
            is_reallocation=payload.is_reallocation,
            reallocated_from_phase_id=payload.reallocated_from_phase_id,
            reallocated_from_unplanned_id=payload.reallocated_from_unplanned_id,
            notes=payload.notes,
        ),
    )
    return {
        "allocation": service.serialize_allocation(result.allocation) if result.allocation is not None else None,
        "proposal": (
            ReallocationService.serialize_proposal(result.proposal) if result.proposal is not None else None
        ),
        "warnings": [warning.as_dict() for warning in result.warnings],
    }


@router.post("/{allocation_id}/decision", response_model=None)
def decide_allocation(
    allocation_id: UUID,
    payload: AllocationDecisionPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object] | Response:
    service = _allocation_service(db, publisher)
    allocation = service.decide(
        context=context,
        allocation_id=allocation_id,
        data=AllocationDecisionData(
            action=payload.action,
            rejection_reason=payload.rejection_reason,
            modified_hours=payload.modified_hours,
        ),
    )
    if allocation is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return service.serialize_allocation(allocation)


@router.post("/{allocation_id}/deletion-request")
def request_allocation_deletion(
    allocation_id: UUID,
    payload: DeletionRequestPayload | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object]:
    service = _allocation_service(db, publisher)
    allocation = service.request_deletion(
        context=context,
        allocation_id=allocation_id,
        reason=payload.reason if payload is not None else None,
    )
    return service.serialize_allocation(allocation)
