from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel

from app.domain.models import Department, UserProfile
from app.domain.permissions import UserRole
from app.infra.db import create_db_engine
from app.infra.events import EventBus
from app.services.department_service import DirectoryService
from app.services.notification_service import NotificationService
from app.services.project_service import ProjectService
from app.services.recurrence_service import RecurrenceEngine
from app.services.task_service import TaskService


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def send(self, user_id: str, payload: dict[str, Any]) -> None:
        self.sent.append((user_id, payload))


@dataclass(frozen=True)
class Org:
    """Head Office -> {Engineering -> Platform, Sales}."""

    root: str
    engineering: str
    platform: str
    sales: str
    admin: str
    eng_manager: str
    platform_staff: str
    platform_staff2: str
    sales_staff: str
    sales_manager: str
    hr_flag_staff: str


def seed_org(engine: Engine) -> Org:
    with Session(engine) as session:
        root = Department(name="Head Office")
        session.add(root)
        session.flush()
        engineering = Department(name="Engineering", parent_id=root.id)
        sales = Department(name="Sales", parent_id=root.id)
        session.add(engineering)
        session.add(sales)
        session.flush()
        platform = Department(name="Platform", parent_id=engineering.id)
        session.add(platform)
        session.flush()

        def _user(name: str, department_id: str, role: UserRole = UserRole.STAFF, **extra: Any) -> str:
            user = UserProfile(
                email=f"{name.lower().replace(' ', '.')}@example.com",
                name=name,
                role=role,
                department_id=department_id,
                **extra,
            )
            session.add(user)
            session.flush()
            return user.id

        org = Org(
            root=root.id,
            engineering=engineering.id,
            platform=platform.id,
            sales=sales.id,
            admin=_user("Hana Admin", root.id, UserRole.HR_ADMIN),
            eng_manager=_user("Erin Manager", engineering.id, UserRole.MANAGER),
            platform_staff=_user("Pat Staff", platform.id),
            platform_staff2=_user("Quinn Staff", platform.id),
            sales_staff=_user("Sid Seller", sales.id),
            sales_manager=_user("Sky Manager", sales.id, UserRole.MANAGER),
            hr_flag_staff=_user("Flo Flagged", sales.id, is_hr_admin=True),
        )
        session.commit()
    return org


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_db_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def org(engine: Engine) -> Org:
    return seed_org(engine)


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def notifications(engine: Engine, dispatcher: RecordingDispatcher) -> NotificationService:
    return NotificationService(engine, dispatcher)


@pytest.fixture()
def task_service(engine: Engine, notifications: NotificationService, event_bus: EventBus) -> TaskService:
    return TaskService(engine, notifications, RecurrenceEngine(), event_bus)


@pytest.fixture()
def project_service(engine: Engine, event_bus: EventBus) -> ProjectService:
    return ProjectService(engine, event_bus)


@pytest.fixture()
def directory(engine: Engine) -> DirectoryService:
    return DirectoryService(engine)
