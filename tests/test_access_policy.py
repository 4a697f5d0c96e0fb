from __future__ import annotations

from datetime import UTC, datetime

from conftest import Org
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.domain.models import Project, ProjectDepartmentAccess, Task, TaskAssignment, UserProfile
from app.domain.permissions import Authority, UserRole, resolve_authority
from app.services.access_policy import AccessPolicy, DepartmentScope

DUE = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _make_task(engine: Engine, *, owner_id: str, assignee_ids: list[str], title: str = "task") -> str:
    with Session(engine) as session:
        owner = session.get(UserProfile, owner_id)
        assert owner is not None
        task = Task(title=title, due_date=DUE, owner_id=owner.id, department_id=owner.department_id)
        session.add(task)
        session.flush()
        for user_id in assignee_ids:
            session.add(TaskAssignment(task_id=task.id, user_id=user_id))
        session.commit()
        return task.id


def _make_project(engine: Engine, *, creator_id: str, name: str) -> str:
    with Session(engine) as session:
        creator = session.get(UserProfile, creator_id)
        assert creator is not None
        project = Project(name=name, department_id=creator.department_id, creator_id=creator.id)
        session.add(project)
        session.commit()
        return project.id


def _check(engine: Engine, user_id: str, task_id: str, attribute: str) -> bool:
    with Session(engine) as session:
        user = session.get(UserProfile, user_id)
        task = session.get(Task, task_id)
        assert user is not None and task is not None
        return bool(getattr(AccessPolicy(session), attribute)(user, task))


def test_resolve_authority_folds_hr_flag() -> None:
    assert resolve_authority(UserRole.STAFF, False) == Authority.STAFF
    assert resolve_authority(UserRole.MANAGER, False) == Authority.MANAGER
    assert resolve_authority(UserRole.STAFF, True) == Authority.ADMIN
    assert resolve_authority(UserRole.MANAGER, True) == Authority.ADMIN
    assert resolve_authority(UserRole.HR_ADMIN, False) == Authority.ADMIN


def test_visible_departments_by_role(engine: Engine, org: Org) -> None:
    with Session(engine) as session:
        policy = AccessPolicy(session)

        def scope_of(user_id: str) -> DepartmentScope:
            user = session.get(UserProfile, user_id)
            assert user is not None
            return policy.visible_departments(user)

        assert scope_of(org.platform_staff) == DepartmentScope(department_ids=frozenset({org.platform}))
        assert scope_of(org.eng_manager) == DepartmentScope(department_ids=frozenset({org.engineering, org.platform}))
        assert scope_of(org.sales_manager) == DepartmentScope(department_ids=frozenset({org.sales}))
        assert scope_of(org.admin).is_all()
        assert scope_of(org.hr_flag_staff).is_all()


def test_task_visibility_follows_department_and_assignees(engine: Engine, org: Org) -> None:
    platform_task = _make_task(engine, owner_id=org.platform_staff, assignee_ids=[org.platform_staff])
    sales_task = _make_task(engine, owner_id=org.sales_manager, assignee_ids=[org.platform_staff2])

    assert _check(engine, org.eng_manager, platform_task, "is_task_visible")
    assert _check(engine, org.hr_flag_staff, platform_task, "is_task_visible")
    assert not _check(engine, org.sales_staff, platform_task, "is_task_visible")
    assert not _check(engine, org.sales_manager, platform_task, "is_task_visible")

    # Sales task reaches Engineering through its Platform assignee.
    assert _check(engine, org.eng_manager, sales_task, "is_task_visible")
    assert _check(engine, org.platform_staff2, sales_task, "is_task_visible")
    assert _check(engine, org.platform_staff, sales_task, "is_task_visible")
    assert _check(engine, org.sales_staff, sales_task, "is_task_visible")


def test_edit_rights(engine: Engine, org: Org) -> None:
    task_id = _make_task(engine, owner_id=org.platform_staff, assignee_ids=[org.platform_staff, org.platform_staff2])

    assert _check(engine, org.platform_staff, task_id, "can_edit")
    assert _check(engine, org.eng_manager, task_id, "can_edit")
    assert _check(engine, org.admin, task_id, "can_edit")
    assert not _check(engine, org.platform_staff2, task_id, "can_edit")
    assert not _check(engine, org.sales_manager, task_id, "can_edit")


def test_assignee_and_archive_rights(engine: Engine, org: Org) -> None:
    task_id = _make_task(engine, owner_id=org.eng_manager, assignee_ids=[org.platform_staff])

    assert _check(engine, org.platform_staff, task_id, "can_add_assignee")
    assert not _check(engine, org.platform_staff2, task_id, "can_add_assignee")
    assert _check(engine, org.eng_manager, task_id, "can_add_assignee")

    assert not _check(engine, org.platform_staff, task_id, "can_remove_assignee")
    assert _check(engine, org.eng_manager, task_id, "can_remove_assignee")
    assert not _check(engine, org.sales_manager, task_id, "can_remove_assignee")

    assert not _check(engine, org.platform_staff, task_id, "can_archive")
    assert _check(engine, org.admin, task_id, "can_archive")

    assert _check(engine, org.platform_staff, task_id, "can_comment")
    assert not _check(engine, org.sales_staff, task_id, "can_comment")


def test_staff_owner_cannot_remove_assignees(engine: Engine, org: Org) -> None:
    task_id = _make_task(engine, owner_id=org.platform_staff, assignee_ids=[org.platform_staff, org.platform_staff2])
    assert _check(engine, org.platform_staff, task_id, "can_add_assignee")
    assert not _check(engine, org.platform_staff, task_id, "can_remove_assignee")


def test_task_filter_matches_visibility(engine: Engine, org: Org) -> None:
    task_ids = [
        _make_task(engine, owner_id=org.platform_staff, assignee_ids=[org.platform_staff]),
        _make_task(engine, owner_id=org.sales_manager, assignee_ids=[org.platform_staff2]),
        _make_task(engine, owner_id=org.sales_staff, assignee_ids=[org.sales_staff]),
        _make_task(engine, owner_id=org.admin, assignee_ids=[org.admin]),
    ]
    users = [org.platform_staff, org.eng_manager, org.sales_staff, org.sales_manager, org.admin]
    with Session(engine) as session:
        policy = AccessPolicy(session)
        for user_id in users:
            user = session.get(UserProfile, user_id)
            assert user is not None
            filtered = set(session.exec(select(Task.id).where(policy.task_filter(user))).all())
            expected = {
                task_id
                for task_id in task_ids
                if policy.is_task_visible(user, session.get(Task, task_id))  # type: ignore[arg-type]
            }
            assert filtered == expected, user.name


def test_project_visibility_with_grants(engine: Engine, org: Org) -> None:
    project_id = _make_project(engine, creator_id=org.sales_manager, name="Quarterly push")

    with Session(engine) as session:
        policy = AccessPolicy(session)
        project = session.get(Project, project_id)
        platform_staff = session.get(UserProfile, org.platform_staff)
        sales_staff = session.get(UserProfile, org.sales_staff)
        assert project is not None and platform_staff is not None and sales_staff is not None
        assert policy.is_project_visible(sales_staff, project)
        assert not policy.is_project_visible(platform_staff, project)

        session.add(
            ProjectDepartmentAccess(project_id=project_id, department_id=org.platform, granted_by_id=org.sales_manager)
        )
        session.commit()
        assert policy.is_project_visible(platform_staff, project)
