"""Weekly allocation planning and review endpoints."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.auth import RequestUserContext, get_current_user_context
from app.db.dependencies import get_db_session
from app.services.notifications import NotificationPublisher, get_notification_publisher
from app.services.weekly_distribution import (
    WeeklyBatchDecision,
    WeeklyDecisionData,
    WeeklyPlanningService,
    WeeklySubmitData,
)

router = APIRouter(prefix="/weekly-allocations", tags=["weekly-allocations"])


class WeeklySubmitPayload(BaseModel):
    phase_allocation_id: UUID
    week_start_date: date
    proposed_hours: Decimal


class WeeklyDecisionPayload(BaseModel):
    action: Literal["approve", "reject", "modify"]
    approved_hours: Decimal | None = None
    rejection_reason: str | None = Field(default=None, max_length=2000)


class WeeklyBatchItemPayload(WeeklyDecisionPayload):
    weekly_allocation_id: UUID
    action: Literal["approve", "reject", "modify"] | None = None


class WeeklyBatchDecisionPayload(BaseModel):
    decisions: list[WeeklyBatchItemPayload] = Field(min_length=1)
    default_action: Literal["approve", "reject"] = "approve"
    rejection_reason: str | None = Field(default=None, max_length=2000)


@router.post("", status_code=status.HTTP_201_CREATED)
def submit_weekly_allocation(
    payload: WeeklySubmitPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object]:
    service = WeeklyPlanningService(db, publisher)
    week = service.submit_weekly(
        context=context,
        data=WeeklySubmitData(
            phase_allocation_id=payload.phase_allocation_id,
            week_start_date=payload.week_start_date,
            proposed_hours=payload.proposed_hours,
        ),
    )
    return service.serialize_weekly(week)


@router.post("/{weekly_id}/decision", response_model=None)
def decide_weekly_allocation(
    weekly_id: UUID,
    payload: WeeklyDecisionPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object] | Response:
    service = WeeklyPlanningService(db, publisher)
    week = service.decide_weekly(
        context=context,
        weekly_id=weekly_id,
        data=WeeklyDecisionData(
            action=payload.action,
            approved_hours=payload.approved_hours,
            rejection_reason=payload.rejection_reason,
        ),
    )
    if week is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return service.serialize_weekly(week)


@router.post("/decisions")
def decide_weekly_allocations(
    payload: WeeklyBatchDecisionPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, object]:
    service = WeeklyPlanningService(db, publisher)
    weeks = service.decide_weekly_batch(
        context=context,
        decisions=[
            WeeklyBatchDecision(
                weekly_id=item.weekly_allocation_id,
                data=WeeklyDecisionData(
                    action=item.action or payload.default_action,
                    approved_hours=item.approved_hours,
                    rejection_reason=item.rejection_reason or payload.rejection_reason,
                ),
            )
            for item in payload.decisions
        ],
    )
    return {
        "decided": len(payload.decisions),
        "weekly_allocations": [service.serialize_weekly(week) for week in weeks],
    }
