from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import ActorId, get_task_service
from app.domain.models import (
    TaskActivityRead,
    TaskAssigneeRequest,
    TaskCommentCreate,
    TaskCommentRead,
    TaskCreate,
    TaskRead,
    TaskStatusUpdateRead,
    TaskStatusUpdateRequest,
    TaskUpdate,
)
from app.domain.state_machine import TaskStatus
from app.services.errors import ConflictError, NotFoundError, TrackerError, UnauthorizedError, ValidationError
from app.services.task_service import TaskService

router = APIRouter()

Service = Annotated[TaskService, Depends(get_task_service)]


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


@router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreate, actor_id: ActorId, service: Service) -> TaskRead:
    try:
        return service.create_task(actor_id, payload)
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("", response_model=list[TaskRead])
def list_tasks(
    actor_id: ActorId,
    service: Service,
    department_id: Annotated[str | None, Query()] = None,
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
    project_id: Annotated[str | None, Query()] = None,
    include_archived: Annotated[bool, Query()] = False,
) -> list[TaskRead]:
    try:
        return service.list_visible_tasks(
            actor_id,
            department_id=department_id,
            status=status_filter,
            project_id=project_id,
            include_archived=include_archived,
        )
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("/{task_id}", response_model=TaskRead)
def get_task(task_id: str, actor_id: ActorId, service: Service) -> TaskRead:
    try:
        return service.get_task(actor_id, task_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.patch("/{task_id}", response_model=TaskRead)
def update_task(task_id: str, payload: TaskUpdate, actor_id: ActorId, service: Service) -> TaskRead:
    try:
        return service.update_task(actor_id, task_id, payload)
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.post("/{task_id}/status", response_model=TaskStatusUpdateRead)
def update_task_status(
    task_id: str,
    payload: TaskStatusUpdateRequest,
    actor_id: ActorId,
    service: Service,
) -> TaskStatusUpdateRead:
    try:
        return service.update_task_status(actor_id, task_id, payload.status)
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.post("/{task_id}/assignees", response_model=TaskRead)
def add_assignee(task_id: str, payload: TaskAssigneeRequest, actor_id: ActorId, service: Service) -> TaskRead:
    try:
        return service.add_assignee(actor_id, task_id, payload.user_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.delete("/{task_id}/assignees/{user_id}", response_model=TaskRead)
def remove_assignee(task_id: str, user_id: str, actor_id: ActorId, service: Service) -> TaskRead:
    try:
        return service.remove_assignee(actor_id, task_id, user_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.post("/{task_id}/archive", response_model=TaskRead)
def archive_task(task_id: str, actor_id: ActorId, service: Service) -> TaskRead:
    try:
        return service.archive_task(actor_id, task_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.post("/{task_id}/comments", response_model=TaskCommentRead, status_code=status.HTTP_201_CREATED)
def add_comment(task_id: str, payload: TaskCommentCreate, actor_id: ActorId, service: Service) -> TaskCommentRead:
    try:
        return TaskCommentRead.model_validate(service.add_comment(actor_id, task_id, payload))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("/{task_id}/comments", response_model=list[TaskCommentRead])
def list_comments(task_id: str, actor_id: ActorId, service: Service) -> list[TaskCommentRead]:
    try:
        rows = service.list_comments(actor_id, task_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise
    return [TaskCommentRead.model_validate(item) for item in rows]


@router.patch("/comments/{comment_id}", response_model=TaskCommentRead)
def update_comment(
    comment_id: str,
    payload: TaskCommentCreate,
    actor_id: ActorId,
    service: Service,
) -> TaskCommentRead:
    try:
        return TaskCommentRead.model_validate(service.update_comment(actor_id, comment_id, payload))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("/{task_id}/activity", response_model=list[TaskActivityRead])
def get_task_activity(task_id: str, actor_id: ActorId, service: Service) -> list[TaskActivityRead]:
    try:
        return service.get_task_activity(actor_id, task_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise
