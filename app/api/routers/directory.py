from __future__ import annotations

import os
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import ActorId, get_directory_service
from app.domain.models import (
    DepartmentCreate,
    DepartmentRead,
    DevLoginRequest,
    DirectoryBootstrapRead,
    DirectoryBootstrapRequest,
    SubordinateDepartmentsRead,
    TokenResponse,
    UserActiveUpdate,
    UserProfileCreate,
    UserProfileRead,
)
from app.infra.auth import create_access_token
from app.services.department_service import DirectoryService
from app.services.errors import ConflictError, NotFoundError, TrackerError, UnauthorizedError, ValidationError

DEV_LOGIN_ENABLED = os.getenv("DEV_LOGIN_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}

router = APIRouter()

Service = Annotated[DirectoryService, Depends(get_directory_service)]


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


@router.post("/bootstrap", response_model=DirectoryBootstrapRead, status_code=status.HTTP_201_CREATED)
def bootstrap_directory(payload: DirectoryBootstrapRequest, service: Service) -> DirectoryBootstrapRead:
    try:
        department, admin = service.bootstrap(payload)
    except TrackerError as exc:
        _handle_error(exc)
        raise
    return DirectoryBootstrapRead(
        department=DepartmentRead.model_validate(department),
        user=UserProfileRead.model_validate(admin),
    )


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    if not DEV_LOGIN_ENABLED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="dev login disabled")
    try:
        user = service.get_user(payload.user_id)
    except TrackerError as exc:
        _handle_error(exc)
        raise
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="user is inactive")
    return TokenResponse(access_token=create_access_token(user_id=user.id))


@router.post("/departments", response_model=DepartmentRead, status_code=status.HTTP_201_CREATED)
def create_department(payload: DepartmentCreate, actor_id: ActorId, service: Service) -> DepartmentRead:
    try:
        return DepartmentRead.model_validate(service.create_department(actor_id, payload))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("/departments", response_model=list[DepartmentRead])
def list_departments(actor_id: ActorId, service: Service) -> list[DepartmentRead]:
    return [DepartmentRead.model_validate(item) for item in service.list_departments()]


@router.get("/departments/{department_id}/subordinates", response_model=SubordinateDepartmentsRead)
def get_subordinate_departments(department_id: str, actor_id: ActorId, service: Service) -> SubordinateDepartmentsRead:
    return SubordinateDepartmentsRead(
        department_id=department_id,
        subordinate_ids=service.get_subordinate_departments(department_id),
    )


@router.post("/users", response_model=UserProfileRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserProfileCreate, actor_id: ActorId, service: Service) -> UserProfileRead:
    try:
        return UserProfileRead.model_validate(service.create_user(actor_id, payload))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("/users/me", response_model=UserProfileRead)
def get_me(actor_id: ActorId, service: Service) -> UserProfileRead:
    try:
        return UserProfileRead.model_validate(service.get_user(actor_id))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.get("/users/{user_id}", response_model=UserProfileRead)
def get_user(user_id: str, actor_id: ActorId, service: Service) -> UserProfileRead:
    try:
        return UserProfileRead.model_validate(service.get_user(user_id))
    except TrackerError as exc:
        _handle_error(exc)
        raise


@router.patch("/users/{user_id}/active", response_model=UserProfileRead)
def set_user_active(
    user_id: str,
    payload: UserActiveUpdate,
    actor_id: ActorId,
    service: Service,
) -> UserProfileRead:
    try:
        return UserProfileRead.model_validate(service.set_user_active(actor_id, user_id, payload.is_active))
    except TrackerError as exc:
        _handle_error(exc)
        raise
