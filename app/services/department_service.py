from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    Department,
    DepartmentCreate,
    DirectoryBootstrapRequest,
    UserProfile,
    UserProfileCreate,
)
from app.domain.permissions import ACTION_MANAGE_DIRECTORY, UserRole, meets, resolve_authority
from app.services.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class DepartmentNode:
    id: str
    parent_id: str | None


class DepartmentHierarchy:
    """Department tree held as an arena of nodes indexed by id.

    Parent links come from stored data and may be malformed; every walk keeps a
    visited set so cycles terminate.
    """

    def __init__(self, nodes: Iterable[DepartmentNode]) -> None:
        self._nodes: dict[str, DepartmentNode] = {node.id: node for node in nodes}
        children: dict[str, list[str]] = defaultdict(list)
        for node in self._nodes.values():
            if node.parent_id is not None and node.parent_id != node.id:
                children[node.parent_id].append(node.id)
        self._children: dict[str, tuple[str, ...]] = {
            parent_id: tuple(sorted(child_ids)) for parent_id, child_ids in children.items()
        }

    @classmethod
    def from_parent_map(cls, parents: Mapping[str, str | None]) -> DepartmentHierarchy:
        return cls(DepartmentNode(id=dept_id, parent_id=parent_id) for dept_id, parent_id in parents.items())

    @classmethod
    def load(cls, session: Session) -> DepartmentHierarchy:
        rows = session.exec(
            select(Department.id, Department.parent_id).where(col(Department.is_active).is_(True))
        ).all()
        return cls(DepartmentNode(id=dept_id, parent_id=parent_id) for dept_id, parent_id in rows)

    def contains(self, department_id: str) -> bool:
        return department_id in self._nodes

    def children(self, department_id: str) -> tuple[str, ...]:
        return self._children.get(department_id, ())

    def subordinates(self, department_id: str) -> set[str]:
        """Every strict descendant of ``department_id``; unknown ids have none."""
        if department_id not in self._nodes:
            return set()
        visited = {department_id}
        found: set[str] = set()
        queue = deque(self.children(department_id))
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            found.add(current)
            queue.extend(self.children(current))
        return found


class DirectoryService:
    """Departments and user profiles, the directory the access policy reads from."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def hierarchy(self, session: Session | None = None) -> DepartmentHierarchy:
        if session is not None:
            return DepartmentHierarchy.load(session)
        with self._session() as own_session:
            return DepartmentHierarchy.load(own_session)

    def get_subordinate_departments(self, department_id: str) -> list[str]:
        return sorted(self.hierarchy().subordinates(department_id))

    def _require_admin(self, session: Session, actor_id: str) -> UserProfile:
        actor = session.get(UserProfile, actor_id)
        if actor is None:
            raise NotFoundError("user not found")
        if not actor.is_active or not meets(resolve_authority(actor.role, actor.is_hr_admin), ACTION_MANAGE_DIRECTORY):
            raise UnauthorizedError("directory changes require HR admin authority")
        return actor

    def bootstrap(self, payload: DirectoryBootstrapRequest) -> tuple[Department, UserProfile]:
        """Create the root department and its first HR admin on an empty directory."""
        department_name = payload.department_name.strip()
        email = payload.email.strip().lower()
        name = payload.name.strip()
        if not department_name or not email or not name:
            raise ValidationError("department name, email and name are required")
        with self._session() as session:
            if session.exec(select(UserProfile.id)).first() is not None:
                raise ConflictError("directory already initialized")
            department = Department(name=department_name)
            session.add(department)
            session.flush()
            admin = UserProfile(email=email, name=name, role=UserRole.HR_ADMIN, department_id=department.id)
            session.add(admin)
            session.commit()
            session.refresh(department)
            session.refresh(admin)
        logger.info("directory_bootstrapped", department_id=department.id, user_id=admin.id)
        return department, admin

    def create_department(self, actor_id: str, payload: DepartmentCreate) -> Department:
        name = payload.name.strip()
        if not name:
            raise ValidationError("department name is required")
        with self._session() as session:
            self._require_admin(session, actor_id)
            if payload.parent_id is not None and not self.hierarchy(session).contains(payload.parent_id):
                raise NotFoundError("parent department not found")
            department = Department(name=name, parent_id=payload.parent_id)
            session.add(department)
            session.commit()
            session.refresh(department)
        logger.info("department_created", department_id=department.id, parent_id=department.parent_id)
        return department

    def list_departments(self) -> list[Department]:
        with self._session() as session:
            rows = list(session.exec(select(Department).where(col(Department.is_active).is_(True))).all())
        return sorted(rows, key=lambda item: item.name)

    def get_department(self, department_id: str) -> Department:
        with self._session() as session:
            department = session.get(Department, department_id)
            if department is None:
                raise NotFoundError("department not found")
            return department

    def create_user(self, actor_id: str, payload: UserProfileCreate) -> UserProfile:
        email = payload.email.strip().lower()
        name = payload.name.strip()
        if not email or not name:
            raise ValidationError("email and name are required")
        with self._session() as session:
            self._require_admin(session, actor_id)
            if session.get(Department, payload.department_id) is None:
                raise NotFoundError("department not found")
            user = UserProfile(
                email=email,
                name=name,
                role=payload.role,
                is_hr_admin=payload.is_hr_admin,
                department_id=payload.department_id,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already registered") from exc
            session.refresh(user)
        logger.info("user_profile_created", user_id=user.id, role=user.role, department_id=user.department_id)
        return user

    def get_user(self, user_id: str) -> UserProfile:
        with self._session() as session:
            user = session.get(UserProfile, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def set_user_active(self, actor_id: str, user_id: str, is_active: bool) -> UserProfile:
        with self._session() as session:
            self._require_admin(session, actor_id)
            user = session.get(UserProfile, user_id)
            if user is None:
                raise NotFoundError("user not found")
            user.is_active = is_active
            session.add(user)
            session.commit()
            session.refresh(user)
        logger.info("user_profile_active_changed", user_id=user_id, is_active=is_active)
        return user
