from __future__ import annotations

import structlog
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    MAX_PRIORITY,
    MAX_PROJECT_NAME_LENGTH,
    MIN_PRIORITY,
    Department,
    Project,
    ProjectCreate,
    ProjectDepartmentAccess,
    UserProfile,
    now_utc,
)
from app.infra.events import EventBus
from app.services.access_policy import AccessPolicy
from app.services.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError

logger = structlog.get_logger()


class ProjectService:
    def __init__(self, engine: Engine, event_bus: EventBus | None = None) -> None:
        self._engine = engine
        self._events = event_bus or EventBus()

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _actor(self, session: Session, actor_id: str) -> UserProfile:
        actor = session.get(UserProfile, actor_id)
        if actor is None:
            raise NotFoundError("user not found")
        if not actor.is_active:
            raise UnauthorizedError("user is inactive")
        return actor

    def _project(self, session: Session, project_id: str) -> Project:
        project = session.get(Project, project_id)
        if project is None:
            raise NotFoundError("project not found")
        return project

    def _name_taken(self, session: Session, name: str) -> bool:
        statement = (
            select(Project.id)
            .where(func.lower(Project.name) == name.lower())
            .where(col(Project.is_archived).is_(False))
        )
        return session.exec(statement).first() is not None

    def create_project(self, actor_id: str, payload: ProjectCreate) -> Project:
        name = payload.name.strip()
        if not name:
            raise ValidationError("project name is required")
        if len(name) > MAX_PROJECT_NAME_LENGTH:
            raise ValidationError(f"project name must be at most {MAX_PROJECT_NAME_LENGTH} characters")
        if payload.priority < MIN_PRIORITY or payload.priority > MAX_PRIORITY:
            raise ValidationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")

        with self._session() as session:
            actor = self._actor(session, actor_id)
            if self._name_taken(session, name):
                raise ConflictError(f'a project named "{name}" already exists')
            project = Project(
                name=name,
                description=payload.description.strip() if payload.description else None,
                department_id=actor.department_id,
                creator_id=actor.id,
                priority=payload.priority,
            )
            session.add(project)
            event = self._events.record_dict(
                session,
                "project.created",
                subject_id=project.id,
                actor_id=actor.id,
                payload={"name": name, "department_id": project.department_id},
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f'a project named "{name}" already exists') from exc
            session.refresh(project)
        self._events.dispatch([event])
        logger.info("project_created", project_id=project.id, department_id=project.department_id)
        return project

    def get_project(self, actor_id: str, project_id: str) -> Project:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            project = self._project(session, project_id)
            if not AccessPolicy(session).is_project_visible(actor, project):
                raise UnauthorizedError("project is not visible to this user")
            return project

    def get_visible_projects_for_user(self, actor_id: str) -> list[Project]:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            statement = (
                select(Project)
                .where(col(Project.is_archived).is_(False))
                .where(policy.project_filter(actor))
                .order_by(col(Project.priority).desc(), col(Project.created_at).desc())
            )
            return list(session.exec(statement).all())

    def grant_department_access(self, actor_id: str, project_id: str, department_id: str) -> ProjectDepartmentAccess:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            project = self._project(session, project_id)
            if session.get(Department, department_id) is None:
                raise NotFoundError("department not found")
            if not AccessPolicy(session).can_grant_project_access(actor, project):
                raise UnauthorizedError("not allowed to grant access to this project")

            existing = session.get(ProjectDepartmentAccess, (project.id, department_id))
            if existing is not None:
                return existing
            grant = ProjectDepartmentAccess(project_id=project.id, department_id=department_id, granted_by_id=actor.id)
            session.add(grant)
            event = self._events.record_dict(
                session,
                "project.access_granted",
                subject_id=project.id,
                actor_id=actor.id,
                payload={"department_id": department_id},
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.get(ProjectDepartmentAccess, (project_id, department_id))
                if existing is None:
                    raise ConflictError("could not record project access grant") from None
                return existing
            session.refresh(grant)
        self._events.dispatch([event])
        logger.info("project_access_granted", project_id=project_id, department_id=department_id)
        return grant

    def list_department_access(self, actor_id: str, project_id: str) -> list[ProjectDepartmentAccess]:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            project = self._project(session, project_id)
            if not AccessPolicy(session).is_project_visible(actor, project):
                raise UnauthorizedError("project is not visible to this user")
            statement = select(ProjectDepartmentAccess).where(ProjectDepartmentAccess.project_id == project.id)
            return list(session.exec(statement).all())

    def archive_project(self, actor_id: str, project_id: str) -> Project:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            project = self._project(session, project_id)
            if not AccessPolicy(session).can_archive_project(actor, project):
                raise UnauthorizedError("not allowed to archive this project")
            if project.is_archived:
                return project
            now = now_utc()
            project.is_archived = True
            project.updated_at = now
            session.add(project)
            event = self._events.record_dict(
                session,
                "project.archived",
                subject_id=project.id,
                actor_id=actor.id,
                payload={},
            )
            session.commit()
            session.refresh(project)
        self._events.dispatch([event])
        logger.info("project_archived", project_id=project_id)
        return project
