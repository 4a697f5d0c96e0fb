from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import ActorId, get_project_service
from app.domain.models import ProjectAccessGrantRead, ProjectAccessGrantRequest, ProjectCreate, ProjectRead
from app.services.errors import ConflictError, NotFoundError, TrackerError, UnauthorizedError, ValidationError
from app.services.project_service import ProjectService

router = APIRouter()

Service = Annotated[ProjectService, Depends(get_project_service)]


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, UnauthorizedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(payload: ProjectCreate, actor_id: ActorId, service: Service) -> ProjectRead:
    try:
        return ProjectRead.model_validate(service.create_project(actor_id, payload))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("", response_model=list[ProjectRead])
def list_visible_projects(actor_id: ActorId, service: Service) -> list[ProjectRead]:
    try:
        rows = service.get_visible_projects_for_user(actor_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise
    return [ProjectRead.model_validate(item) for item in rows]


@router.get("/{project_id}", response_model=ProjectRead)
def get_project(project_id: str, actor_id: ActorId, service: Service) -> ProjectRead:
    try:
        return ProjectRead.model_validate(service.get_project(actor_id, project_id))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.post("/{project_id}/archive", response_model=ProjectRead)
def archive_project(project_id: str, actor_id: ActorId, service: Service) -> ProjectRead:
    try:
        return ProjectRead.model_validate(service.archive_project(actor_id, project_id))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.post(
    "/{project_id}/access",
    response_model=ProjectAccessGrantRead,
    status_code=status.HTTP_201_CREATED,
)
def grant_department_access(
    project_id: str,
    payload: ProjectAccessGrantRequest,
    actor_id: ActorId,
    service: Service,
) -> ProjectAccessGrantRead:
    try:
        grant = service.grant_department_access(actor_id, project_id, payload.department_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise
    return ProjectAccessGrantRead.model_validate(grant)


@router.get("/{project_id}/access", response_model=list[ProjectAccessGrantRead])
def list_department_access(project_id: str, actor_id: ActorId, service: Service) -> list[ProjectAccessGrantRead]:
    try:
        rows = service.list_department_access(actor_id, project_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise
    return [ProjectAccessGrantRead.model_validate(item) for item in rows]
