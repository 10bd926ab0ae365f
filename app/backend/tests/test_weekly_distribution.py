from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from app.models.entities import ApprovalStatus, PlanningStatus, WeeklyAllocation
from app.services.weekly_distribution import evaluate_reduction, iso_week_bounds, sum_approved, sum_planned


@pytest.mark.parametrize(
    ("new_total", "allowed", "minimum"),
    [
        ("90", True, "0.00"),
        ("70", True, "60.00"),
        ("60", True, "60.00"),
        ("50", False, "60.00"),
    ],
)
def test_reduction_rules_for_partially_planned_allocation(new_total: str, allowed: bool, minimum: str) -> None:
    check = evaluate_reduction(current_total=Decimal("80"), planned=Decimal("60"), new_total=Decimal(new_total))

    assert check.allowed is allowed
    assert check.minimum_allowed_hours == Decimal(minimum)
    assert check.current_allocation == Decimal("80.00")


def test_fully_planned_allocation_only_grows() -> None:
    shrink = evaluate_reduction(current_total=Decimal("60"), planned=Decimal("60"), new_total=Decimal("59.99"))
    grow = evaluate_reduction(current_total=Decimal("60"), planned=Decimal("60"), new_total=Decimal("65"))

    assert shrink.allowed is False
    assert shrink.minimum_allowed_hours == Decimal("60.00")
    assert grow.allowed is True


def test_planned_and_approved_sums_ignore_rejected_weeks() -> None:
    weeks = [
        WeeklyAllocation(
            proposed_hours=Decimal("10"), approved_hours=Decimal("8"), planning_status=PlanningStatus.MODIFIED
        ),
        WeeklyAllocation(proposed_hours=Decimal("12"), approved_hours=None, planning_status=PlanningStatus.PENDING),
        WeeklyAllocation(proposed_hours=Decimal("20"), approved_hours=None, planning_status=PlanningStatus.REJECTED),
    ]

    assert sum_planned(weeks) == Decimal("20.00")
    assert sum_planned(weeks, excluding=weeks[1]) == Decimal("8.00")
    assert sum_approved(weeks) == Decimal("8.00")


def test_iso_week_bounds_snaps_to_monday() -> None:
    monday, sunday, week_number, year = iso_week_bounds(date(2026, 1, 1))

    assert monday == date(2025, 12, 29)
    assert sunday == date(2026, 1, 4)
    assert (week_number, year) == (1, 2026)


def _plan(client: TestClient, world, allocation, week_start: date, hours: str, *, user=None):
    return client.post(
        "/api/v1/weekly-allocations",
        headers=world.headers_for(user or world.consultant),
        json={
            "phase_allocation_id": str(allocation.id),
            "week_start_date": week_start.isoformat(),
            "proposed_hours": hours,
        },
    )


def _review(client: TestClient, world, weekly_id: str, action: str, **extra):
    return client.post(
        f"/api/v1/weekly-allocations/{weekly_id}/decision",
        headers=world.headers_for(world.growth),
        json={"action": action, **extra},
    )


def test_consultant_plans_week_and_resubmission_updates_it(client: TestClient, world, publisher) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    monday = world.today - timedelta(days=world.today.weekday())

    first = _plan(client, world, allocation, world.today, "16")
    assert first.status_code == 201
    assert first.json()["week_start_date"] == monday.isoformat()
    assert first.json()["planning_status"] == "PENDING"

    updated = _plan(client, world, allocation, monday, "12")
    assert updated.status_code == 201
    assert updated.json()["id"] == first.json()["id"]
    assert updated.json()["proposed_hours"] == "12.00"

    assert publisher.types == ["WEEKLY_ALLOCATION_PENDING", "WEEKLY_ALLOCATION_PENDING"]
    assert publisher.events[0].recipients == [world.growth.id]


def test_weekly_plan_cannot_exceed_phase_allocation(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    _plan(client, world, allocation, world.today, "16")

    response = _plan(client, world, allocation, world.today + timedelta(days=7), "30")

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error"] == "budget_exceeded"
    assert detail["allocatedHours"] == "40.00"
    assert detail["plannedHours"] == "16.00"
    assert detail["overage"] == "6.00"


def test_weekly_plan_requires_owner_and_approved_allocation(client: TestClient, world) -> None:
    approved = world.add_allocation(world.current_phase, "40")
    pending = world.add_allocation(world.next_phase, "20", status=ApprovalStatus.PENDING)

    not_owner = _plan(client, world, approved, world.today, "8", user=world.pm)
    not_approved = _plan(client, world, pending, world.next_phase.start_date, "8")

    assert not_owner.status_code == 403
    assert not_approved.status_code == 400
    assert not_approved.json()["detail"]["currentStatus"] == "PENDING"


def test_week_must_overlap_phase(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.current_phase, "40")

    response = _plan(client, world, allocation, world.current_phase.end_date + timedelta(days=14), "8")

    assert response.status_code == 422


def test_ended_phase_locks_consultant_but_not_growth_team(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.past_phase, "40")
    week_start = world.past_phase.start_date + timedelta(days=7)

    consultant = _plan(client, world, allocation, week_start, "8")
    growth = _plan(client, world, allocation, week_start, "8", user=world.growth)

    assert consultant.status_code == 400
    assert growth.status_code == 201


def test_growth_team_approves_and_second_review_is_stale(client: TestClient, world, publisher) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    weekly_id = _plan(client, world, allocation, world.today, "16").json()["id"]

    approved = _review(client, world, weekly_id, "approve")
    assert approved.status_code == 200
    assert approved.json()["planning_status"] == "APPROVED"
    assert approved.json()["approved_hours"] == "16.00"

    again = _review(client, world, weekly_id, "approve")
    assert again.status_code == 409

    assert publisher.types[-1] == "WEEKLY_ALLOCATION_APPROVED"
    assert publisher.events[-1].recipients == [world.consultant.id]


def test_modified_week_records_approved_hours(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    weekly_id = _plan(client, world, allocation, world.today, "16").json()["id"]

    response = _review(client, world, weekly_id, "modify", approved_hours="12")

    assert response.status_code == 200
    assert response.json()["planning_status"] == "MODIFIED"
    assert response.json()["proposed_hours"] == "16.00"
    assert response.json()["approved_hours"] == "12.00"


def test_rejected_week_requires_reason(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    weekly_id = _plan(client, world, allocation, world.today, "16").json()["id"]

    missing = _review(client, world, weekly_id, "reject")
    rejected = _review(client, world, weekly_id, "reject", rejection_reason="Holiday")

    assert missing.status_code == 422
    assert rejected.status_code == 200
    assert rejected.json()["planning_status"] == "REJECTED"
    assert rejected.json()["approved_hours"] is None


def test_zero_hour_approval_removes_week(client: TestClient, world, db_session) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    weekly_id = _plan(client, world, allocation, world.today, "16").json()["id"]

    response = _review(client, world, weekly_id, "modify", approved_hours="0")

    assert response.status_code == 204
    assert db_session.scalar(select(func.count()).select_from(WeeklyAllocation)) == 0


def test_only_growth_team_reviews_weeks(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    weekly_id = _plan(client, world, allocation, world.today, "16").json()["id"]

    response = client.post(
        f"/api/v1/weekly-allocations/{weekly_id}/decision",
        headers=world.headers_for(world.pm),
        json={"action": "approve"},
    )

    assert response.status_code == 403


def test_modify_cannot_push_weeks_over_phase_allocation(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    first_id = _plan(client, world, allocation, world.today, "16").json()["id"]
    _plan(client, world, allocation, world.today + timedelta(days=7), "20")

    response = _review(client, world, first_id, "modify", approved_hours="24")

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error"] == "budget_exceeded"
    assert detail["plannedHours"] == "20.00"
    assert detail["overage"] == "4.00"
    assert _review(client, world, first_id, "approve").status_code == 200


def _review_batch(client: TestClient, world, decisions: list[dict], *, user=None, **extra):
    return client.post(
        "/api/v1/weekly-allocations/decisions",
        headers=world.headers_for(user or world.growth),
        json={"decisions": decisions, **extra},
    )


def test_batch_review_applies_each_decision(client: TestClient, world, publisher) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    ids = [
        _plan(client, world, allocation, world.today + timedelta(days=7 * offset), "10").json()["id"]
        for offset in range(3)
    ]

    response = _review_batch(
        client,
        world,
        [
            {"weekly_allocation_id": ids[0]},
            {"weekly_allocation_id": ids[1], "approved_hours": "8"},
            {"weekly_allocation_id": ids[2], "action": "reject"},
        ],
        rejection_reason="Team offsite",
    )

    assert response.status_code == 200
    body = response.json()
    assert body["decided"] == 3
    statuses = {week["id"]: week["planning_status"] for week in body["weekly_allocations"]}
    assert statuses == {ids[0]: "APPROVED", ids[1]: "MODIFIED", ids[2]: "REJECTED"}
    rejected = next(week for week in body["weekly_allocations"] if week["id"] == ids[2])
    assert rejected["rejection_reason"] == "Team offsite"
    assert publisher.types[-3:] == [
        "WEEKLY_ALLOCATION_APPROVED",
        "WEEKLY_ALLOCATION_MODIFIED",
        "WEEKLY_ALLOCATION_REJECTED",
    ]


def test_batch_review_is_refused_when_any_week_was_decided(client: TestClient, world, db_session) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    decided_id = _plan(client, world, allocation, world.today, "10").json()["id"]
    pending_id = _plan(client, world, allocation, world.today + timedelta(days=7), "10").json()["id"]
    _review(client, world, decided_id, "approve")

    response = _review_batch(
        client,
        world,
        [{"weekly_allocation_id": pending_id}, {"weekly_allocation_id": decided_id}],
    )

    assert response.status_code == 409
    assert decided_id in response.json()["detail"]["weeklyAllocationIds"]
    statuses = db_session.scalars(
        select(WeeklyAllocation.planning_status).where(WeeklyAllocation.proposed_hours == Decimal("10"))
    ).all()
    assert sorted(status.value for status in statuses) == ["APPROVED", "PENDING"]


def test_batch_review_counts_earlier_approvals_against_the_total(client: TestClient, world, db_session) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    first_id = _plan(client, world, allocation, world.today, "16").json()["id"]
    second_id = _plan(client, world, allocation, world.today + timedelta(days=7), "16").json()["id"]

    response = _review_batch(
        client,
        world,
        [
            {"weekly_allocation_id": first_id, "approved_hours": "20"},
            {"weekly_allocation_id": second_id, "approved_hours": "24"},
        ],
    )

    assert response.status_code == 400
    assert response.json()["detail"]["plannedHours"] == "20.00"
    assert response.json()["detail"]["overage"] == "4.00"
    assert (
        db_session.scalar(
            select(func.count())
            .select_from(WeeklyAllocation)
            .where(WeeklyAllocation.planning_status == PlanningStatus.PENDING)
        )
        == 2
    )


def test_batch_review_requires_growth_team_and_reasons(client: TestClient, world) -> None:
    allocation = world.add_allocation(world.current_phase, "40")
    weekly_id = _plan(client, world, allocation, world.today, "10").json()["id"]

    not_growth = _review_batch(client, world, [{"weekly_allocation_id": weekly_id}], user=world.pm)
    no_reason = _review_batch(client, world, [{"weekly_allocation_id": weekly_id}], default_action="reject")
    empty = _review_batch(client, world, [])

    assert not_growth.status_code == 403
    assert no_reason.status_code == 422
    assert empty.status_code == 422
