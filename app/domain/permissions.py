from __future__ import annotations

from enum import IntEnum, StrEnum


class UserRole(StrEnum):
    STAFF = "STAFF"
    MANAGER = "MANAGER"
    HR_ADMIN = "HR_ADMIN"


class Authority(IntEnum):
    STAFF = 1
    MANAGER = 2
    ADMIN = 3


class DepartmentReach(StrEnum):
    HOME = "HOME"
    SUBTREE = "SUBTREE"
    ALL = "ALL"


ACTION_EDIT = "task.edit"
ACTION_ARCHIVE = "task.archive"
ACTION_ADD_ASSIGNEE = "task.assignee.add"
ACTION_REMOVE_ASSIGNEE = "task.assignee.remove"
ACTION_GRANT_PROJECT_ACCESS = "project.access.grant"
ACTION_ARCHIVE_PROJECT = "project.archive"
ACTION_MANAGE_DIRECTORY = "directory.manage"
ACTION_RUN_DEADLINE_SWEEP = "notifications.deadline_sweep"

# Minimum authority for a non-owner to act on a task or project it can see.
# Adding an assignee is also open to current assignees; that rule lives in the
# policy evaluator because it depends on the task, not the role.
ACTION_MIN_AUTHORITY: dict[str, Authority] = {
    ACTION_EDIT: Authority.MANAGER,
    ACTION_ARCHIVE: Authority.MANAGER,
    ACTION_ADD_ASSIGNEE: Authority.MANAGER,
    ACTION_REMOVE_ASSIGNEE: Authority.MANAGER,
    ACTION_GRANT_PROJECT_ACCESS: Authority.MANAGER,
    ACTION_ARCHIVE_PROJECT: Authority.MANAGER,
    ACTION_MANAGE_DIRECTORY: Authority.ADMIN,
    ACTION_RUN_DEADLINE_SWEEP: Authority.ADMIN,
}

# Owners (task owner, project creator) skip the authority floor for these actions only.
OWNER_ACTIONS = frozenset({ACTION_EDIT, ACTION_ADD_ASSIGNEE, ACTION_ARCHIVE_PROJECT})

AUTHORITY_REACH: dict[Authority, DepartmentReach] = {
    Authority.STAFF: DepartmentReach.HOME,
    Authority.MANAGER: DepartmentReach.SUBTREE,
    Authority.ADMIN: DepartmentReach.ALL,
}


def resolve_authority(role: UserRole, is_hr_admin: bool) -> Authority:
    if role == UserRole.HR_ADMIN or is_hr_admin:
        return Authority.ADMIN
    if role == UserRole.MANAGER:
        return Authority.MANAGER
    return Authority.STAFF


def meets(authority: Authority, action: str) -> bool:
    return authority >= ACTION_MIN_AUTHORITY[action]
