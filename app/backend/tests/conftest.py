from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import RequestUserContext, ensure_user_principal
from app.core.config import get_settings
from app.db.base import Base
from app.db.dependencies import get_db_session
import app.models.entities  # noqa: F401
from app.main import create_app
from app.models.entities import (
    ApprovalStatus,
    Phase,
    PhaseAllocation,
    PlanningStatus,
    Project,
    ProjectMember,
    ProjectRole,
    User,
    UserRole,
    WeeklyAllocation,
)
from app.services.notifications import NotificationEvent, get_notification_publisher
from app.services.weekly_distribution import iso_week_bounds


class RecordingPublisher:
    """Captures published notification events instead of delivering them."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def publish(self, event: NotificationEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type.value for event in self.events]


class AllocationWorld:
    """One project with three phases, a Product Manager, a consultant and a Growth Team approver."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.today = date.today()
        now = datetime.utcnow()

        self.growth = ensure_user_principal(
            db,
            microsoft_oid="oid-growth",
            email="growth@test.local",
            display_name="Growth Approver",
            role=UserRole.GROWTH_TEAM,
        )
        self.pm = ensure_user_principal(
            db,
            microsoft_oid="oid-pm",
            email="pm@test.local",
            display_name="Product Manager",
            role=UserRole.PRODUCT_MANAGER,
        )
        self.consultant = ensure_user_principal(
            db,
            microsoft_oid="oid-consultant",
            email="consultant@test.local",
            display_name="Consultant",
            role=UserRole.CONSULTANT,
        )

        self.project = Project(
            code="PRJ-1",
            title="Platform rollout",
            budgeted_hours=Decimal("500.00"),
            created_at=now,
            updated_at=now,
        )
        db.add(self.project)
        db.flush()

        self.past_phase = Phase(
            project_id=self.project.id,
            name="Discovery",
            start_date=self.today - timedelta(days=60),
            end_date=self.today - timedelta(days=10),
        )
        self.current_phase = Phase(
            project_id=self.project.id,
            name="Build",
            start_date=self.today - timedelta(days=14),
            end_date=self.today + timedelta(days=30),
        )
        self.next_phase = Phase(
            project_id=self.project.id,
            name="Launch",
            start_date=self.today + timedelta(days=31),
            end_date=self.today + timedelta(days=90),
        )
        db.add_all([self.past_phase, self.current_phase, self.next_phase])

        db.add(ProjectMember(project_id=self.project.id, user_id=self.pm.id, role=ProjectRole.PRODUCT_MANAGER))
        self.membership = ProjectMember(
            project_id=self.project.id,
            user_id=self.consultant.id,
            role=ProjectRole.CONSULTANT,
            allocated_hours=Decimal("100.00"),
        )
        db.add(self.membership)
        db.commit()

    def headers_for(self, user: User) -> dict[str, str]:
        return {
            "X-MS-OID": user.microsoft_oid,
            "X-MS-EMAIL": user.email,
            "X-MS-DISPLAY-NAME": user.display_name,
        }

    def context_for(self, user: User) -> RequestUserContext:
        return RequestUserContext(
            user_id=user.id,
            microsoft_oid=user.microsoft_oid,
            email=user.email,
            display_name=user.display_name,
            status=user.status,
            role=user.role,
        )

    def add_allocation(
        self,
        phase: Phase,
        total_hours: str,
        *,
        status: ApprovalStatus = ApprovalStatus.APPROVED,
        weeks: list[tuple[str, PlanningStatus]] | None = None,
    ) -> PhaseAllocation:
        """Insert an allocation directly, with weekly rows starting at the phase's first week."""

        now = datetime.utcnow()
        allocation = PhaseAllocation(
            phase_id=phase.id,
            consultant_id=self.consultant.id,
            total_hours=Decimal(total_hours),
            approval_status=status,
            approved_by=self.growth.id if status == ApprovalStatus.APPROVED else None,
            approved_at=now if status == ApprovalStatus.APPROVED else None,
            created_at=now,
            updated_at=now,
        )
        for offset, (hours, planning_status) in enumerate(weeks or []):
            monday, sunday, week_number, year = iso_week_bounds(phase.start_date + timedelta(weeks=offset))
            approved = planning_status in (PlanningStatus.APPROVED, PlanningStatus.MODIFIED)
            allocation.weekly_allocations.append(
                WeeklyAllocation(
                    consultant_id=self.consultant.id,
                    week_start_date=monday,
                    week_end_date=sunday,
                    week_number=week_number,
                    year=year,
                    proposed_hours=Decimal(hours),
                    approved_hours=Decimal(hours) if approved else None,
                    planning_status=planning_status,
                    planned_by=self.consultant.id,
                    created_at=now,
                    updated_at=now,
                )
            )
        self.db.add(allocation)
        self.db.commit()
        self.db.refresh(allocation)
        return allocation


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def client(db_session: Session, publisher: RecordingPublisher) -> Generator[TestClient, None, None]:
    app = create_app()

    def override_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db_session] = override_db
    app.dependency_overrides[get_notification_publisher] = lambda: publisher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def world(db_session: Session) -> AllocationWorld:
    return AllocationWorld(db_session)


@pytest.fixture()
def cron_secret(monkeypatch: pytest.MonkeyPatch) -> Generator[str, None, None]:
    monkeypatch.setenv("CRON_SECRET", "test-cron-secret")
    get_settings.cache_clear()
    yield "test-cron-secret"
    get_settings.cache_clear()

