from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import ActorId, get_notification_service
from app.domain.models import (
    DeadlineSweepRead,
    NotificationMarkReadRead,
    NotificationMarkReadRequest,
    NotificationRead,
)
from app.services.errors import NotFoundError, UnauthorizedError
from app.services.notification_service import NotificationService

router = APIRouter()

Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("/unread", response_model=list[NotificationRead])
def get_unread_notifications(actor_id: ActorId, service: Service) -> list[NotificationRead]:
    return [NotificationRead.model_validate(item) for item in service.get_unread_notifications(actor_id)]


@router.get("/unread/count")
def unread_count(actor_id: ActorId, service: Service) -> dict[str, int]:
    return {"count": service.unread_count(actor_id)}


@router.post("/read", response_model=NotificationMarkReadRead)
def mark_notifications_read(
    payload: NotificationMarkReadRequest,
    actor_id: ActorId,
    service: Service,
) -> NotificationMarkReadRead:
    updated = service.mark_notifications_read(actor_id, payload.notification_ids)
    return NotificationMarkReadRead(updated=updated)


@router.post("/read-all", response_model=NotificationMarkReadRead)
def mark_all_read(actor_id: ActorId, service: Service) -> NotificationMarkReadRead:
    return NotificationMarkReadRead(updated=service.mark_all_read(actor_id))


@router.post("/deadline-sweep", response_model=DeadlineSweepRead)
def notify_deadlines(
    actor_id: ActorId,
    service: Service,
    now: Annotated[datetime | None, Query()] = None,
) -> DeadlineSweepRead:
    try:
        return service.run_deadline_sweep(actor_id, now)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except UnauthorizedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
