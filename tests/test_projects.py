from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from conftest import Org, seed_org
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from app.domain.models import EventEnvelope, Project, ProjectCreate
from app.domain.state_machine import ProjectStatus
from app.infra.db import create_db_engine
from app.infra.events import EventBus
from app.services.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.services.project_service import ProjectService


def test_create_project_defaults(project_service: ProjectService, org: Org) -> None:
    project = project_service.create_project(org.platform_staff, ProjectCreate(name="  Tooling refresh  "))

    assert project.name == "Tooling refresh"
    assert project.priority == 5
    assert project.status == ProjectStatus.ACTIVE
    assert project.department_id == org.platform
    assert project.creator_id == org.platform_staff


def test_project_name_rules(project_service: ProjectService, org: Org) -> None:
    project_service.create_project(org.eng_manager, ProjectCreate(name="Apollo"))

    with pytest.raises(ConflictError):
        project_service.create_project(org.sales_manager, ProjectCreate(name="  APOLLO "))
    with pytest.raises(ValidationError):
        project_service.create_project(org.eng_manager, ProjectCreate(name="   "))
    with pytest.raises(ValidationError):
        project_service.create_project(org.eng_manager, ProjectCreate(name="x" * 101))
    with pytest.raises(ValidationError):
        project_service.create_project(org.eng_manager, ProjectCreate(name="Zero", priority=0))

    assert project_service.create_project(org.eng_manager, ProjectCreate(name="y" * 100)).name == "y" * 100


def test_archived_name_can_be_reused(project_service: ProjectService, org: Org) -> None:
    first = project_service.create_project(org.eng_manager, ProjectCreate(name="Gemini"))
    project_service.archive_project(org.eng_manager, first.id)

    second = project_service.create_project(org.eng_manager, ProjectCreate(name="gemini"))
    assert second.id != first.id


def test_visible_projects_follow_scope_and_grants(project_service: ProjectService, org: Org) -> None:
    engineering = project_service.create_project(org.eng_manager, ProjectCreate(name="Eng roadmap", priority=8))
    platform = project_service.create_project(org.platform_staff, ProjectCreate(name="Platform ops", priority=3))
    sales = project_service.create_project(org.sales_manager, ProjectCreate(name="Sales push", priority=6))

    def visible(user_id: str) -> list[str]:
        return [item.id for item in project_service.get_visible_projects_for_user(user_id)]

    assert visible(org.eng_manager) == [engineering.id, platform.id]
    assert visible(org.platform_staff) == [platform.id]
    assert visible(org.sales_staff) == [sales.id]
    assert visible(org.admin) == [engineering.id, sales.id, platform.id]

    with pytest.raises(UnauthorizedError):
        project_service.grant_department_access(org.sales_staff, sales.id, org.platform)
    with pytest.raises(UnauthorizedError):
        project_service.grant_department_access(org.eng_manager, sales.id, org.platform)
    with pytest.raises(NotFoundError):
        project_service.grant_department_access(org.sales_manager, sales.id, "missing")

    grant = project_service.grant_department_access(org.sales_manager, sales.id, org.platform)
    again = project_service.grant_department_access(org.sales_manager, sales.id, org.platform)
    assert (grant.project_id, grant.department_id) == (again.project_id, again.department_id)
    assert len(project_service.list_department_access(org.sales_manager, sales.id)) == 1

    assert visible(org.platform_staff) == [sales.id, platform.id]
    assert visible(org.eng_manager) == [engineering.id, sales.id, platform.id]


def test_archive_project_rights(project_service: ProjectService, org: Org) -> None:
    project = project_service.create_project(org.platform_staff, ProjectCreate(name="Side quest"))

    with pytest.raises(UnauthorizedError):
        project_service.archive_project(org.platform_staff2, project.id)
    with pytest.raises(UnauthorizedError):
        project_service.archive_project(org.sales_manager, project.id)

    archived = project_service.archive_project(org.eng_manager, project.id)
    assert archived.is_archived
    assert project_service.get_visible_projects_for_user(org.platform_staff) == []

    own = project_service.create_project(org.platform_staff, ProjectCreate(name="Own quest"))
    assert project_service.archive_project(org.platform_staff, own.id).is_archived


def test_active_name_is_unique_in_the_database(engine: Engine, org: Org) -> None:
    with Session(engine) as session:
        session.add(Project(name="Atlas", department_id=org.sales, creator_id=org.sales_manager))
        session.commit()

    with pytest.raises(IntegrityError), Session(engine) as session:
        session.add(Project(name="ATLAS", department_id=org.sales, creator_id=org.sales_manager))
        session.commit()

    with Session(engine) as session:
        session.add(Project(name="atlas", department_id=org.sales, creator_id=org.sales_manager, is_archived=True))
        session.commit()


def test_concurrent_creates_keep_one_active_name(tmp_path: Path) -> None:
    file_engine = create_db_engine(f"sqlite:///{tmp_path / 'projects.db'}")
    SQLModel.metadata.create_all(file_engine)
    org = seed_org(file_engine)
    service = ProjectService(file_engine)
    names = ["Apollo", "APOLLO", "apollo ", " Apollo"] * 2

    def attempt(name: str) -> str:
        try:
            service.create_project(org.eng_manager, ProjectCreate(name=name))
        except ConflictError:
            return "conflict"
        return "created"

    with ThreadPoolExecutor(max_workers=len(names)) as pool:
        outcomes = list(pool.map(attempt, names))

    assert outcomes.count("created") == 1
    assert outcomes.count("conflict") == len(names) - 1
    with Session(file_engine) as session:
        statement = select(func.count()).select_from(Project).where(func.lower(Project.name) == "apollo")
        count = session.exec(statement).one()
    assert count == 1
    file_engine.dispose()


def test_project_mutations_reach_subscribers(project_service: ProjectService, event_bus: EventBus, org: Org) -> None:
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_type)

    event_bus.subscribe("*", handler)
    project = project_service.create_project(org.sales_manager, ProjectCreate(name="Outreach"))
    project_service.grant_department_access(org.sales_manager, project.id, org.platform)
    project_service.archive_project(org.sales_manager, project.id)

    assert seen == ["project.created", "project.access_granted", "project.archived"]
