from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint, func, text
from sqlmodel import Field, SQLModel

from app.domain.permissions import UserRole
from app.domain.state_machine import ProjectStatus, TaskStatus

MAX_ASSIGNEES = 5
MIN_ASSIGNEES = 1
MIN_PRIORITY = 1
MAX_PRIORITY = 10
MAX_PROJECT_NAME_LENGTH = 100
UNREAD_NOTIFICATION_LIMIT = 10


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    subject_id: str | None = Field(default=None, index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Department(SQLModel, table=True):
    __tablename__ = "departments"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    parent_id: str | None = Field(default=None, foreign_key="departments.id", index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserProfile(SQLModel, table=True):
    __tablename__ = "user_profiles"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    role: UserRole = Field(default=UserRole.STAFF, index=True)
    is_hr_admin: bool = Field(default=False)
    department_id: str = Field(foreign_key="departments.id", index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Project(SQLModel, table=True):
    __tablename__ = "projects"
    __table_args__ = (Index("ix_projects_department_archived", "department_id", "is_archived"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    description: str | None = None
    department_id: str = Field(foreign_key="departments.id", index=True)
    creator_id: str = Field(foreign_key="user_profiles.id", index=True)
    priority: int = Field(default=5)
    status: ProjectStatus = Field(default=ProjectStatus.ACTIVE, index=True)
    is_archived: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


# Active project names are unique regardless of case; archived ones are free to repeat.
Index(
    "uq_projects_active_name",
    func.lower(Project.__table__.c.name),
    unique=True,
    postgresql_where=text("NOT is_archived"),
    sqlite_where=text("is_archived = 0"),
)


class ProjectDepartmentAccess(SQLModel, table=True):
    __tablename__ = "project_department_access"

    project_id: str = Field(foreign_key="projects.id", primary_key=True)
    department_id: str = Field(foreign_key="departments.id", primary_key=True, index=True)
    granted_by_id: str = Field(foreign_key="user_profiles.id")
    granted_at: datetime = Field(default_factory=now_utc)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("recurrence_source_id", name="uq_tasks_recurrence_source"),
        Index("ix_tasks_department_archived", "department_id", "is_archived"),
        Index("ix_tasks_status_due", "status", "due_date"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    title: str = Field(index=True)
    description: str = ""
    priority: int = Field(default=5)
    due_date: datetime = Field(index=True)
    status: TaskStatus = Field(default=TaskStatus.TO_DO, index=True)
    owner_id: str = Field(foreign_key="user_profiles.id", index=True)
    department_id: str = Field(foreign_key="departments.id", index=True)
    project_id: str | None = Field(default=None, foreign_key="projects.id", index=True)
    parent_task_id: str | None = Field(default=None, foreign_key="tasks.id", index=True)
    recurring_interval: int | None = None
    recurrence_source_id: str | None = Field(default=None, foreign_key="tasks.id")
    is_archived: bool = Field(default=False, index=True)
    start_date: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)

    def is_subtask(self) -> bool:
        return self.parent_task_id is not None

    def is_recurring(self) -> bool:
        return self.recurring_interval is not None


class TaskAssignment(SQLModel, table=True):
    __tablename__ = "task_assignments"

    task_id: str = Field(foreign_key="tasks.id", primary_key=True)
    user_id: str = Field(foreign_key="user_profiles.id", primary_key=True, index=True)
    assigned_by_id: str | None = Field(default=None, foreign_key="user_profiles.id")
    assigned_at: datetime = Field(default_factory=now_utc)


class TaskComment(SQLModel, table=True):
    __tablename__ = "task_comments"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    author_id: str = Field(foreign_key="user_profiles.id", index=True)
    content: str
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class NotificationType(StrEnum):
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_REASSIGNED = "TASK_REASSIGNED"
    TASK_UPDATED = "TASK_UPDATED"
    COMMENT_ADDED = "COMMENT_ADDED"
    COMMENT_UPDATED = "COMMENT_UPDATED"
    DEADLINE_REMINDER = "DEADLINE_REMINDER"
    TASK_OVERDUE = "TASK_OVERDUE"


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_user_read_created", "user_id", "is_read", "created_at"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="user_profiles.id", index=True)
    task_id: str | None = Field(default=None, foreign_key="tasks.id", index=True)
    type: NotificationType = Field(index=True)
    title: str
    message: str
    is_read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    subject_id: str | None = None
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class DepartmentCreate(BaseModel):
    name: str
    parent_id: str | None = None


class DepartmentRead(ORMReadModel):
    id: str
    name: str
    parent_id: str | None
    is_active: bool
    created_at: datetime


class UserProfileCreate(BaseModel):
    email: str
    name: str
    department_id: str
    role: UserRole = UserRole.STAFF
    is_hr_admin: bool = False


class UserProfileRead(ORMReadModel):
    id: str
    email: str
    name: str
    role: UserRole
    is_hr_admin: bool
    department_id: str
    is_active: bool


class ProjectCreate(BaseModel):
    name: str
    description: str | None = None
    priority: int = 5


class ProjectRead(ORMReadModel):
    id: str
    name: str
    description: str | None
    department_id: str
    creator_id: str
    priority: int
    status: ProjectStatus
    is_archived: bool
    created_at: datetime
    updated_at: datetime


class ProjectAccessGrantRead(ORMReadModel):
    project_id: str
    department_id: str
    granted_by_id: str
    granted_at: datetime


class TaskCreate(BaseModel):
    title: str
    description: str = ""
    priority: int = 5
    due_date: datetime
    assignee_ids: list[str] = PydanticField(default_factory=list)
    project_id: str | None = None
    parent_task_id: str | None = None
    recurring_interval: int | None = None


class TaskUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    priority: int | None = None
    due_date: datetime | None = None
    recurring_interval: int | None = None


class TaskStatusUpdateRequest(BaseModel):
    status: TaskStatus


class TaskAssigneeRequest(BaseModel):
    user_id: str


class TaskRead(ORMReadModel):
    id: str
    title: str
    description: str
    priority: int
    due_date: datetime
    status: TaskStatus
    owner_id: str
    department_id: str
    project_id: str | None
    parent_task_id: str | None
    recurring_interval: int | None
    recurrence_source_id: str | None
    is_archived: bool
    start_date: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    assignee_ids: list[str] = PydanticField(default_factory=list)
    can_edit: bool = False


class TaskStatusUpdateRead(BaseModel):
    task: TaskRead
    successor: TaskRead | None = None


class TaskCommentCreate(BaseModel):
    content: str


class TaskCommentRead(ORMReadModel):
    id: str
    task_id: str
    author_id: str
    content: str
    created_at: datetime
    updated_at: datetime


class TaskActivityRead(ORMReadModel):
    event_id: str
    event_type: str
    subject_id: str | None
    ts: datetime
    actor_id: str | None
    payload: dict[str, Any]


class NotificationRead(ORMReadModel):
    id: str
    user_id: str
    task_id: str | None
    type: NotificationType
    title: str
    message: str
    is_read: bool
    created_at: datetime


class NotificationMarkReadRequest(BaseModel):
    notification_ids: list[str]


class NotificationMarkReadRead(BaseModel):
    success: bool = True
    updated: int


class DeadlineSweepRead(BaseModel):
    reminders: int
    overdue: int


class DirectoryBootstrapRequest(BaseModel):
    department_name: str
    email: str
    name: str


class DirectoryBootstrapRead(BaseModel):
    department: DepartmentRead
    user: UserProfileRead


class DevLoginRequest(BaseModel):
    user_id: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserActiveUpdate(BaseModel):
    is_active: bool


class ProjectAccessGrantRequest(BaseModel):
    department_id: str


class SubordinateDepartmentsRead(BaseModel):
    department_id: str
    subordinate_ids: list[str]
