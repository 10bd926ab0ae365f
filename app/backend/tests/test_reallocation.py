from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from app.models.entities import (
    ApprovalStatus,
    Phase,
    PhaseAllocation,
    PlanningStatus,
    ReallocationProposal,
    UnplannedExpiredHours,
    UnplannedStatus,
)
from app.services.expiration_detector import ExpirationDetector


def _expire(world, publisher, total: str, approved: str, *, phase=None):
    """Approved allocation on an ended phase, expired with ``total - approved`` unplanned hours."""

    source = world.add_allocation(phase or world.past_phase, total, weeks=[(approved, PlanningStatus.APPROVED)])
    ExpirationDetector(world.db, publisher).detect_expired_allocations()
    unplanned = world.db.scalar(
        select(UnplannedExpiredHours).where(UnplannedExpiredHours.phase_allocation_id == source.id)
    )
    publisher.events.clear()
    return source, unplanned


def _reallocate(client: TestClient, world, unplanned, phase, hours: str):
    return client.post(
        "/api/v1/allocations",
        headers=world.headers_for(world.pm),
        json={
            "phase_id": str(phase.id),
            "consultant_id": str(world.consultant.id),
            "total_hours": hours,
            "is_reallocation": True,
            "reallocated_from_phase_id": str(unplanned.phase_allocation.phase_id),
            "reallocated_from_unplanned_id": str(unplanned.id),
        },
    )


def _earlier_ended_phase(world) -> Phase:
    phase = Phase(
        project_id=world.project.id,
        name="Pilot",
        start_date=world.today - timedelta(days=120),
        end_date=world.today - timedelta(days=70),
    )
    world.db.add(phase)
    world.db.commit()
    return phase


def _edit_hours(client: TestClient, world, phase, hours: str):
    return client.post(
        "/api/v1/allocations",
        headers=world.headers_for(world.pm),
        json={
            "phase_id": str(phase.id),
            "consultant_id": str(world.consultant.id),
            "total_hours": hours,
        },
    )


def _decide(client: TestClient, world, allocation_id: str, action: str, **extra):
    return client.post(
        f"/api/v1/allocations/{allocation_id}/decision",
        headers=world.headers_for(world.growth),
        json={"action": action, **extra},
    )


def _decide_proposal(client: TestClient, world, proposal_id: str, action: str, **extra):
    return client.post(
        f"/api/v1/reallocation-proposals/{proposal_id}/decision",
        headers=world.headers_for(world.growth),
        json={"action": action, **extra},
    )


def test_merge_into_pending_allocation_builds_composite(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "45", "30")
    destination = world.add_allocation(world.current_phase, "40", status=ApprovalStatus.PENDING)

    response = _reallocate(client, world, unplanned, world.current_phase, "15")

    assert response.status_code == 201
    body = response.json()
    assert body["proposal"] is None
    allocation = body["allocation"]
    assert allocation["id"] == str(destination.id)
    assert allocation["total_hours"] == "55.00"
    assert allocation["approval_status"] == "PENDING"
    assert allocation["is_composite"] is True
    assert allocation["composition_metadata"][0]["original_hours"] == "40.00"
    assert allocation["composition_metadata"][1]["reallocated_hours"] == "15.00"
    assert allocation["composition_metadata"][1]["source_unplanned_id"] == str(unplanned.id)

    world.db.refresh(unplanned)
    assert unplanned.status == UnplannedStatus.REALLOCATED
    assert unplanned.reallocated_to_allocation_id == destination.id
    assert unplanned.reallocated_to_phase_id == world.current_phase.id
    assert unplanned.handled_by == world.pm.id
    assert publisher.types == ["REALLOCATION_PENDING"]
    assert publisher.events[0].recipients == [world.growth.id]


def test_approving_composite_finalises_every_slice(client: TestClient, world, publisher) -> None:
    source, unplanned = _expire(world, publisher, "45", "30")
    destination = world.add_allocation(world.current_phase, "40", status=ApprovalStatus.PENDING)
    _reallocate(client, world, unplanned, world.current_phase, "15")

    response = _decide(client, world, str(destination.id), "approve")

    assert response.status_code == 200
    assert response.json()["approval_status"] == "APPROVED"
    assert response.json()["total_hours"] == "55.00"

    world.db.refresh(unplanned)
    world.db.refresh(source)
    assert unplanned.status == UnplannedStatus.REALLOCATED
    assert unplanned.reallocation_approved_at is not None
    assert source.total_hours == Decimal("30.00")
    assert source.total_hours + Decimal("55.00") == Decimal("45.00") + Decimal("40.00")

    again = _decide(client, world, str(destination.id), "approve")
    assert again.status_code == 409


def test_rejecting_composite_restores_original_hours(client: TestClient, world, publisher) -> None:
    source, unplanned = _expire(world, publisher, "45", "30")
    destination = world.add_allocation(world.current_phase, "40", status=ApprovalStatus.PENDING)
    _reallocate(client, world, unplanned, world.current_phase, "15")

    response = _decide(client, world, str(destination.id), "reject", rejection_reason="Wrong phase")

    assert response.status_code == 200
    body = response.json()
    assert body["approval_status"] == "REJECTED"
    assert body["total_hours"] == "40.00"
    assert body["is_composite"] is False
    assert body["composition_metadata"] is None

    world.db.refresh(unplanned)
    world.db.refresh(source)
    assert unplanned.status == UnplannedStatus.EXPIRED
    assert unplanned.reallocated_to_allocation_id is None
    assert unplanned.reallocated_to_phase_id is None
    assert unplanned.handled_at is None
    assert "rejected" in unplanned.notes
    assert source.total_hours == Decimal("45.00")


def test_composite_cannot_be_modified_or_edited_while_pending(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "45", "30")
    destination = world.add_allocation(world.current_phase, "40", status=ApprovalStatus.PENDING)
    _reallocate(client, world, unplanned, world.current_phase, "15")

    modify = _decide(client, world, str(destination.id), "modify", modified_hours="50")
    edit = client.post(
        "/api/v1/allocations",
        headers=world.headers_for(world.pm),
        json={
            "phase_id": str(world.current_phase.id),
            "consultant_id": str(world.consultant.id),
            "total_hours": "60",
        },
    )

    assert modify.status_code == 422
    assert edit.status_code == 400


def test_rejecting_second_merge_keeps_approved_and_edited_hours(client: TestClient, world, publisher) -> None:
    first_source, first = _expire(world, publisher, "45", "30")
    destination = world.add_allocation(world.current_phase, "40", status=ApprovalStatus.PENDING)
    _reallocate(client, world, first, world.current_phase, "15")
    approved = _decide(client, world, str(destination.id), "approve")
    assert approved.json()["total_hours"] == "55.00"
    assert approved.json()["is_composite"] is False
    assert approved.json()["composition_metadata"] is None

    assert _edit_hours(client, world, world.current_phase, "60").status_code == 201
    _, second = _expire(world, publisher, "40", "30", phase=_earlier_ended_phase(world))
    merged = _reallocate(client, world, second, world.current_phase, "10").json()["allocation"]
    assert merged["total_hours"] == "70.00"
    assert merged["composition_metadata"][0]["original_hours"] == "60.00"

    response = _decide(client, world, str(destination.id), "reject", rejection_reason="Second slice not needed")

    assert response.status_code == 200
    assert response.json()["approval_status"] == "REJECTED"
    assert response.json()["total_hours"] == "60.00"
    world.db.refresh(first)
    world.db.refresh(second)
    world.db.refresh(first_source)
    assert second.status == UnplannedStatus.EXPIRED
    assert first.status == UnplannedStatus.REALLOCATED
    assert first.reallocation_approved_at is not None
    assert first_source.total_hours == Decimal("30.00")


def test_rejecting_merge_into_approved_reallocation_keeps_the_row(client: TestClient, world, publisher) -> None:
    first_source, first = _expire(world, publisher, "45", "30")
    allocation_id = _reallocate(client, world, first, world.next_phase, "15").json()["allocation"]["id"]
    assert _decide(client, world, allocation_id, "approve").status_code == 200

    assert _edit_hours(client, world, world.next_phase, "20").status_code == 201
    _, second = _expire(world, publisher, "40", "30", phase=_earlier_ended_phase(world))
    assert _reallocate(client, world, second, world.next_phase, "10").json()["allocation"]["total_hours"] == "30.00"

    response = _decide(client, world, allocation_id, "reject", rejection_reason="Not this round")

    assert response.status_code == 200
    assert response.json()["id"] == allocation_id
    assert response.json()["total_hours"] == "20.00"
    assert response.json()["approval_status"] == "REJECTED"
    world.db.refresh(second)
    world.db.refresh(first_source)
    assert second.status == UnplannedStatus.EXPIRED
    assert first_source.total_hours == Decimal("30.00")
    assert publisher.types[-1] == "PHASE_ALLOCATION_REJECTED"


def test_new_allocation_from_reallocation_is_deleted_on_reject(
    client: TestClient, world, publisher, db_session
) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")

    created = _reallocate(client, world, unplanned, world.next_phase, "20")
    assert created.status_code == 201
    allocation = created.json()["allocation"]
    assert allocation["is_reallocation"] is True
    assert allocation["reallocated_from_unplanned_id"] == str(unplanned.id)
    assert allocation["total_hours"] == "20.00"

    rejected = _decide(client, world, allocation["id"], "reject", rejection_reason="Not needed")
    assert rejected.status_code == 204

    assert (
        db_session.scalar(
            select(func.count()).select_from(PhaseAllocation).where(PhaseAllocation.phase_id == world.next_phase.id)
        )
        == 0
    )
    world.db.refresh(unplanned)
    assert unplanned.status == UnplannedStatus.EXPIRED
    assert publisher.types[-1] == "REALLOCATION_REJECTED"
    assert publisher.events[-1].new_status == "DELETED"


def test_new_allocation_from_reallocation_approves_and_trims_source(
    client: TestClient, world, publisher
) -> None:
    source, unplanned = _expire(world, publisher, "50", "30")
    allocation_id = _reallocate(client, world, unplanned, world.next_phase, "20").json()["allocation"]["id"]

    response = _decide(client, world, allocation_id, "approve")

    assert response.status_code == 200
    world.db.refresh(source)
    world.db.refresh(unplanned)
    assert source.total_hours == Decimal("30.00")
    assert source.approval_status == ApprovalStatus.EXPIRED
    assert unplanned.reallocation_approved_at is not None


def test_reallocation_into_approved_allocation_creates_proposal(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")
    destination = world.add_allocation(world.current_phase, "60")

    response = _reallocate(client, world, unplanned, world.current_phase, "20")

    assert response.status_code == 201
    body = response.json()
    assert body["allocation"]["total_hours"] == "60.00"
    assert body["allocation"]["approval_status"] == "APPROVED"
    assert body["proposal"]["status"] == "PENDING"
    assert body["proposal"]["hours"] == "20.00"
    assert body["proposal"]["destination_allocation_id"] == str(destination.id)

    # Proposed hours already occupy the consultant's budget: 60 + 20 + 30 > 100.
    blocked = client.post(
        "/api/v1/allocations",
        headers=world.headers_for(world.pm),
        json={
            "phase_id": str(world.next_phase.id),
            "consultant_id": str(world.consultant.id),
            "total_hours": "30",
        },
    )
    assert blocked.status_code == 400
    assert blocked.json()["detail"]["currentTotal"] == "80.00"


def test_approving_proposal_merges_hours(client: TestClient, world, publisher) -> None:
    source, unplanned = _expire(world, publisher, "50", "30")
    destination = world.add_allocation(world.current_phase, "60")
    proposal_id = _reallocate(client, world, unplanned, world.current_phase, "20").json()["proposal"]["id"]

    response = _decide_proposal(client, world, proposal_id, "approve")

    assert response.status_code == 200
    assert response.json()["status"] == "MERGED"
    assert response.json()["decided_by"] == str(world.growth.id)
    world.db.refresh(destination)
    world.db.refresh(source)
    assert destination.total_hours == Decimal("80.00")
    assert destination.approval_status == ApprovalStatus.APPROVED
    assert source.total_hours == Decimal("30.00")

    again = _decide_proposal(client, world, proposal_id, "approve")
    assert again.status_code == 409
    assert publisher.types[-1] == "REALLOCATION_APPROVED"


def test_rejecting_proposal_returns_hours_to_source(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")
    destination = world.add_allocation(world.current_phase, "60")
    proposal_id = _reallocate(client, world, unplanned, world.current_phase, "20").json()["proposal"]["id"]

    missing_reason = _decide_proposal(client, world, proposal_id, "reject")
    response = _decide_proposal(client, world, proposal_id, "reject", rejection_reason="Budget frozen")

    assert missing_reason.status_code == 422
    assert response.status_code == 200
    assert response.json()["status"] == "REJECTED"
    assert response.json()["rejection_reason"] == "Budget frozen"
    world.db.refresh(destination)
    world.db.refresh(unplanned)
    assert destination.total_hours == Decimal("60.00")
    assert unplanned.status == UnplannedStatus.EXPIRED
    assert unplanned.unplanned_hours == Decimal("20.00")
    assert publisher.events[-1].recipients == [world.pm.id, world.consultant.id]


def test_project_manager_withdraws_proposal(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")
    world.add_allocation(world.current_phase, "60")
    proposal_id = _reallocate(client, world, unplanned, world.current_phase, "20").json()["proposal"]["id"]

    response = client.post(
        f"/api/v1/reallocation-proposals/{proposal_id}/withdrawal",
        headers=world.headers_for(world.pm),
        json={"reason": "Re-planning"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "WITHDRAWN"
    world.db.refresh(unplanned)
    assert unplanned.status == UnplannedStatus.EXPIRED
    assert "withdrawn" in unplanned.notes
    assert publisher.types[-1] == "REALLOCATION_WITHDRAWN"
    assert publisher.events[-1].recipients == [world.growth.id]


def test_proposal_cannot_merge_into_deleted_destination(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")
    destination = world.add_allocation(world.current_phase, "60")
    destination_id = str(destination.id)
    proposal_id = _reallocate(client, world, unplanned, world.current_phase, "20").json()["proposal"]["id"]

    client.post(f"/api/v1/allocations/{destination_id}/deletion-request", headers=world.headers_for(world.pm))
    assert _decide(client, world, destination_id, "delete").status_code == 204

    proposal = world.db.get(ReallocationProposal, uuid.UUID(proposal_id))
    assert proposal.destination_allocation_id is None

    response = _decide_proposal(client, world, proposal_id, "approve")
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_destination_state"
    assert response.json()["detail"]["currentStatus"] == "DELETED"

    withdrawn = client.post(
        f"/api/v1/reallocation-proposals/{proposal_id}/withdrawal",
        headers=world.headers_for(world.pm),
    )
    assert withdrawn.status_code == 200
    world.db.refresh(unplanned)
    assert unplanned.status == UnplannedStatus.EXPIRED


def test_reallocation_requires_exact_unplanned_hours(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")

    response = _reallocate(client, world, unplanned, world.next_phase, "15")

    assert response.status_code == 422
    assert response.json()["detail"]["unplannedHours"] == "20.00"
    assert response.json()["detail"]["requestedHours"] == "15.00"


def test_reallocation_into_deletion_pending_destination_is_refused(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")
    destination = world.add_allocation(world.current_phase, "60")
    client.post(f"/api/v1/allocations/{destination.id}/deletion-request", headers=world.headers_for(world.pm))

    response = _reallocate(client, world, unplanned, world.current_phase, "20")

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_destination_state"


def test_reallocation_respects_consultant_budget(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")
    world.add_allocation(world.current_phase, "90")

    response = _reallocate(client, world, unplanned, world.next_phase, "20")

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "budget_exceeded"
    assert response.json()["detail"]["overage"] == "10.00"


def test_forfeit_closes_source_allocation(client: TestClient, world, publisher) -> None:
    source, unplanned = _expire(world, publisher, "50", "30")

    response = client.post(
        f"/api/v1/unplanned-hours/{unplanned.id}/forfeit",
        headers=world.headers_for(world.pm),
        json={"notes": "Client paused"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "FORFEITED"
    assert response.json()["notes"] == "Client paused"
    world.db.refresh(source)
    assert source.approval_status == ApprovalStatus.FORFEITED
    assert source.total_hours == Decimal("30.00")
    assert publisher.types == ["UNPLANNED_HOURS_FORFEITED"]

    again = client.post(f"/api/v1/unplanned-hours/{unplanned.id}/forfeit", headers=world.headers_for(world.pm))
    assert again.status_code == 400
    reallocate = _reallocate(client, world, unplanned, world.next_phase, "20")
    assert reallocate.status_code == 400
    assert reallocate.json()["detail"]["currentStatus"] == "FORFEITED"


def test_consultant_cannot_forfeit(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")

    response = client.post(
        f"/api/v1/unplanned-hours/{unplanned.id}/forfeit",
        headers=world.headers_for(world.consultant),
    )

    assert response.status_code == 403


def test_unplanned_hours_listing_is_scoped_to_members(client: TestClient, world, publisher) -> None:
    _expire(world, publisher, "50", "30")
    url = f"/api/v1/projects/{world.project.id}/unplanned-hours"

    listed = client.get(url, headers=world.headers_for(world.consultant), params={"status": "EXPIRED"})
    stranger = client.get(
        url,
        headers={"X-MS-OID": "oid-stranger", "X-MS-EMAIL": "stranger@test.local"},
    )

    assert listed.status_code == 200
    assert len(listed.json()) == 1
    assert listed.json()[0]["unplanned_hours"] == "20.00"
    assert listed.json()[0]["phase_id"] == str(world.past_phase.id)
    assert stranger.status_code == 403


def test_proposal_listing_is_scoped_to_participants(client: TestClient, world, publisher) -> None:
    _, unplanned = _expire(world, publisher, "50", "30")
    world.add_allocation(world.current_phase, "60")
    _reallocate(client, world, unplanned, world.current_phase, "20")

    growth = client.get("/api/v1/reallocation-proposals", headers=world.headers_for(world.growth))
    consultant = client.get(
        "/api/v1/reallocation-proposals",
        headers=world.headers_for(world.consultant),
        params={"status": "PENDING"},
    )
    stranger = client.get(
        "/api/v1/reallocation-proposals",
        headers={"X-MS-OID": "oid-stranger", "X-MS-EMAIL": "stranger@test.local"},
    )

    assert len(growth.json()) == 1
    assert len(consultant.json()) == 1
    assert stranger.json() == []
