from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.infra.auth import decode_access_token
from app.infra.db import get_engine
from app.infra.events import EventBus, log_event
from app.infra.realtime import NotificationDispatcher, RedisNotificationDispatcher
from app.services.department_service import DirectoryService
from app.services.notification_service import NotificationService
from app.services.project_service import ProjectService
from app.services.recurrence_service import RecurrenceEngine
from app.services.task_service import TaskService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/directory/dev-login")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    structlog.contextvars.bind_contextvars(actor_id=claims["sub"])
    return claims


def get_actor_id(claims: Annotated[dict[str, Any], Depends(get_current_claims)]) -> str:
    return str(claims["sub"])


@lru_cache(maxsize=1)
def get_event_bus() -> EventBus:
    bus = EventBus()
    bus.subscribe("*", log_event)
    return bus


@lru_cache(maxsize=1)
def get_notification_dispatcher() -> NotificationDispatcher:
    return RedisNotificationDispatcher()


def get_directory_service() -> DirectoryService:
    return DirectoryService(get_engine())


def get_notification_service(
    dispatcher: Annotated[NotificationDispatcher, Depends(get_notification_dispatcher)],
) -> NotificationService:
    return NotificationService(get_engine(), dispatcher)


def get_task_service(
    notifications: Annotated[NotificationService, Depends(get_notification_service)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
) -> TaskService:
    return TaskService(get_engine(), notifications, RecurrenceEngine(), event_bus)


def get_project_service(event_bus: Annotated[EventBus, Depends(get_event_bus)]) -> ProjectService:
    return ProjectService(get_engine(), event_bus)


ActorId = Annotated[str, Depends(get_actor_id)]
