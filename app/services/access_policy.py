from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import ColumnElement, false, or_, true
from sqlmodel import Session, col, select

from app.domain.models import Project, ProjectDepartmentAccess, Task, TaskAssignment, UserProfile
from app.domain.permissions import (
    ACTION_ADD_ASSIGNEE,
    ACTION_ARCHIVE,
    ACTION_ARCHIVE_PROJECT,
    ACTION_EDIT,
    ACTION_GRANT_PROJECT_ACCESS,
    ACTION_REMOVE_ASSIGNEE,
    AUTHORITY_REACH,
    OWNER_ACTIONS,
    Authority,
    DepartmentReach,
    meets,
    resolve_authority,
)
from app.services.department_service import DepartmentHierarchy


@dataclass(frozen=True)
class DepartmentScope:
    department_ids: frozenset[str] = frozenset()
    all_departments: bool = False

    def is_all(self) -> bool:
        return self.all_departments

    def includes(self, department_id: str | None) -> bool:
        if self.all_departments:
            return True
        return department_id is not None and department_id in self.department_ids


def authority_of(user: UserProfile) -> Authority:
    return resolve_authority(user.role, user.is_hr_admin)


class AccessPolicy:
    """Visibility and mutation rules for one unit of work.

    The department tree is loaded once per policy instance, so build a policy per
    session rather than sharing one across requests.
    """

    def __init__(self, session: Session, hierarchy: DepartmentHierarchy | None = None) -> None:
        self._session = session
        self._hierarchy = hierarchy

    @property
    def hierarchy(self) -> DepartmentHierarchy:
        if self._hierarchy is None:
            self._hierarchy = DepartmentHierarchy.load(self._session)
        return self._hierarchy

    def visible_departments(self, user: UserProfile) -> DepartmentScope:
        reach = AUTHORITY_REACH[authority_of(user)]
        if reach == DepartmentReach.ALL:
            return DepartmentScope(all_departments=True)
        if reach == DepartmentReach.SUBTREE:
            subtree = self.hierarchy.subordinates(user.department_id)
            return DepartmentScope(department_ids=frozenset({user.department_id, *subtree}))
        return DepartmentScope(department_ids=frozenset({user.department_id}))

    def assignee_ids(self, task_id: str) -> list[str]:
        return sorted(
            self._session.exec(select(TaskAssignment.user_id).where(TaskAssignment.task_id == task_id)).all()
        )

    def _assignee_departments(self, task_id: str) -> set[str]:
        rows = self._session.exec(
            select(UserProfile.department_id)
            .join(TaskAssignment, col(TaskAssignment.user_id) == col(UserProfile.id))
            .where(TaskAssignment.task_id == task_id)
        ).all()
        return set(rows)

    def is_assignee(self, user: UserProfile, task: Task) -> bool:
        return self._session.get(TaskAssignment, (task.id, user.id)) is not None

    def is_task_visible(self, user: UserProfile, task: Task) -> bool:
        if task.owner_id == user.id:
            return True
        if self.is_assignee(user, task):
            return True
        scope = self.visible_departments(user)
        if scope.includes(task.department_id):
            return True
        return any(scope.includes(department_id) for department_id in self._assignee_departments(task.id))

    def is_project_visible(self, user: UserProfile, project: Project) -> bool:
        scope = self.visible_departments(user)
        if scope.includes(project.department_id):
            return True
        granted = self._session.exec(
            select(ProjectDepartmentAccess.department_id).where(ProjectDepartmentAccess.project_id == project.id)
        ).all()
        return any(scope.includes(department_id) for department_id in granted)

    def _allowed(self, user: UserProfile, action: str, *, is_owner: bool, visible: bool) -> bool:
        if is_owner and action in OWNER_ACTIONS:
            return True
        return visible and meets(authority_of(user), action)

    def can_edit(self, user: UserProfile, task: Task) -> bool:
        is_owner = task.owner_id == user.id
        return self._allowed(user, ACTION_EDIT, is_owner=is_owner, visible=is_owner or self.is_task_visible(user, task))

    def can_archive(self, user: UserProfile, task: Task) -> bool:
        return self._allowed(user, ACTION_ARCHIVE, is_owner=False, visible=self.is_task_visible(user, task))

    def can_comment(self, user: UserProfile, task: Task) -> bool:
        return self.is_task_visible(user, task)

    def can_add_assignee(self, user: UserProfile, task: Task) -> bool:
        if self.is_assignee(user, task):
            return True
        is_owner = task.owner_id == user.id
        return self._allowed(
            user, ACTION_ADD_ASSIGNEE, is_owner=is_owner, visible=is_owner or self.is_task_visible(user, task)
        )

    def can_remove_assignee(self, user: UserProfile, task: Task) -> bool:
        return self._allowed(user, ACTION_REMOVE_ASSIGNEE, is_owner=False, visible=self.is_task_visible(user, task))

    def can_grant_project_access(self, user: UserProfile, project: Project) -> bool:
        return self._allowed(
            user, ACTION_GRANT_PROJECT_ACCESS, is_owner=False, visible=self.is_project_visible(user, project)
        )

    def can_archive_project(self, user: UserProfile, project: Project) -> bool:
        is_owner = project.creator_id == user.id
        return self._allowed(
            user,
            ACTION_ARCHIVE_PROJECT,
            is_owner=is_owner,
            visible=is_owner or self.is_project_visible(user, project),
        )

    def task_filter(self, user: UserProfile) -> ColumnElement[bool]:
        """SQL condition matching exactly the tasks ``is_task_visible`` accepts."""
        scope = self.visible_departments(user)
        if scope.is_all():
            return true()
        department_ids = sorted(scope.department_ids)
        assigned_in_scope = (
            select(TaskAssignment.task_id)
            .join(UserProfile, col(TaskAssignment.user_id) == col(UserProfile.id))
            .where(col(UserProfile.department_id).in_(department_ids))
        )
        own_assignments = select(TaskAssignment.task_id).where(TaskAssignment.user_id == user.id)
        return or_(
            col(Task.owner_id) == user.id,
            col(Task.department_id).in_(department_ids),
            col(Task.id).in_(assigned_in_scope),
            col(Task.id).in_(own_assignments),
        )

    def project_filter(self, user: UserProfile) -> ColumnElement[bool]:
        scope = self.visible_departments(user)
        if scope.is_all():
            return true()
        if not scope.department_ids:
            return false()
        department_ids = sorted(scope.department_ids)
        granted = select(ProjectDepartmentAccess.project_id).where(
            col(ProjectDepartmentAccess.department_id).in_(department_ids)
        )
        return or_(col(Project.department_id).in_(department_ids), col(Project.id).in_(granted))
