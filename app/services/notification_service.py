from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.domain.models import (
    UNREAD_NOTIFICATION_LIMIT,
    DeadlineSweepRead,
    Notification,
    NotificationType,
    Task,
    TaskAssignment,
    UserProfile,
    ensure_utc,
    now_utc,
)
from app.domain.permissions import ACTION_RUN_DEADLINE_SWEEP, meets, resolve_authority
from app.domain.state_machine import TaskStatus
from app.infra.realtime import NotificationDispatcher, NullNotificationDispatcher
from app.services.errors import NotFoundError, UnauthorizedError

logger = structlog.get_logger()

REMINDER_WINDOW = timedelta(hours=24)
OVERDUE_WINDOW = timedelta(hours=48)
DEADLINE_TYPES = (NotificationType.DEADLINE_REMINDER, NotificationType.TASK_OVERDUE)

NOTIFICATION_TITLES: dict[NotificationType, str] = {
    NotificationType.TASK_ASSIGNED: "New Assignment",
    NotificationType.TASK_REASSIGNED: "Assignment Changed",
    NotificationType.TASK_UPDATED: "Task Updated",
    NotificationType.COMMENT_ADDED: "New Comment",
    NotificationType.COMMENT_UPDATED: "Comment Edited",
    NotificationType.DEADLINE_REMINDER: "Task Deadline Reminder",
    NotificationType.TASK_OVERDUE: "Task Overdue",
}


def display_name(user: UserProfile | None) -> str:
    if user is None:
        return "Someone"
    return user.name or user.email or "Someone"


class NotificationService:
    """Persists per-recipient notifications and pushes them to live listeners.

    Fanout writes into the caller's session; live dispatch happens only after the
    caller has committed, and a dispatch failure is logged without touching the
    stored rows.
    """

    def __init__(self, engine: Engine, dispatcher: NotificationDispatcher | None = None) -> None:
        self._engine = engine
        self._dispatcher: NotificationDispatcher = dispatcher or NullNotificationDispatcher()

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def fanout(
        self,
        session: Session,
        *,
        notification_type: NotificationType,
        actor_id: str | None,
        task: Task,
        recipient_ids: Iterable[str],
        message: str,
        title: str | None = None,
        created_at: datetime | None = None,
    ) -> list[Notification]:
        rows: list[Notification] = []
        for user_id in sorted(set(recipient_ids)):
            if actor_id is not None and user_id == actor_id:
                continue
            row = Notification(
                user_id=user_id,
                task_id=task.id,
                type=notification_type,
                title=title or NOTIFICATION_TITLES[notification_type],
                message=message,
                created_at=created_at or now_utc(),
            )
            session.add(row)
            rows.append(row)
        return rows

    def publish(self, notifications: Iterable[Notification]) -> None:
        for row in notifications:
            payload = {
                "id": row.id,
                "type": str(row.type),
                "title": row.title,
                "message": row.message,
                "task_id": row.task_id,
                "broadcast_at": now_utc().isoformat(),
            }
            try:
                self._dispatcher.send(row.user_id, payload)
            except Exception:
                logger.exception("notification_dispatch_failed", notification_id=row.id, user_id=row.user_id)

    def get_unread_notifications(self, user_id: str) -> list[Notification]:
        with self._session() as session:
            statement = (
                select(Notification)
                .where(Notification.user_id == user_id)
                .where(col(Notification.is_read).is_(False))
                .order_by(col(Notification.created_at).desc(), col(Notification.id).desc())
                .limit(UNREAD_NOTIFICATION_LIMIT)
            )
            return list(session.exec(statement).all())

    def unread_count(self, user_id: str) -> int:
        with self._session() as session:
            statement = (
                select(func.count())
                .select_from(Notification)
                .where(Notification.user_id == user_id)
                .where(col(Notification.is_read).is_(False))
            )
            return int(session.exec(statement).one())

    def mark_notifications_read(self, user_id: str, notification_ids: list[str]) -> int:
        ids = sorted({item for item in notification_ids if item})
        if not ids:
            return 0
        with self._session() as session:
            result = session.execute(
                update(Notification)
                .where(col(Notification.id).in_(ids))
                .where(col(Notification.user_id) == user_id)
                .where(col(Notification.is_read).is_(False))
                .values(is_read=True)
            )
            session.commit()
        updated = int(result.rowcount or 0)
        logger.info("notifications_marked_read", user_id=user_id, requested=len(ids), updated=updated)
        return updated

    def mark_all_read(self, user_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                update(Notification)
                .where(col(Notification.user_id) == user_id)
                .where(col(Notification.is_read).is_(False))
                .values(is_read=True)
            )
            session.commit()
        updated = int(result.rowcount or 0)
        logger.info("notifications_marked_read", user_id=user_id, updated=updated, all=True)
        return updated

    def run_deadline_sweep(self, actor_id: str, now: datetime | None = None) -> DeadlineSweepRead:
        with self._session() as session:
            actor = session.get(UserProfile, actor_id)
            if actor is None:
                raise NotFoundError("user not found")
            if not actor.is_active or not meets(resolve_authority(actor.role, actor.is_hr_admin), ACTION_RUN_DEADLINE_SWEEP):
                raise UnauthorizedError("deadline sweeps require HR admin authority")
        return self.notify_deadlines(now)

    def _already_notified(self, session: Session, task_ids: list[str], day_start: datetime) -> set[tuple[str, str, str]]:
        if not task_ids:
            return set()
        rows = session.exec(
            select(Notification.task_id, Notification.user_id, Notification.type)
            .where(col(Notification.task_id).in_(task_ids))
            .where(col(Notification.type).in_(DEADLINE_TYPES))
            .where(col(Notification.created_at) >= day_start)
            .where(col(Notification.created_at) < day_start + timedelta(days=1))
        ).all()
        return {(str(task_id), str(user_id), str(kind)) for task_id, user_id, kind in rows}

    def notify_deadlines(self, now: datetime | None = None) -> DeadlineSweepRead:
        """One sweep over open tasks due soon or recently overdue.

        Hours until due are truncated toward zero: (0, 24] is a reminder, (-24, 0]
        is due today, (-48, -24] is overdue. A (task, user, type) already notified
        on the same UTC day is skipped, so repeated sweeps are harmless.
        """
        current = ensure_utc(now or now_utc())
        reminders = 0
        overdue = 0
        created: list[Notification] = []
        with self._session() as session:
            tasks = session.exec(
                select(Task)
                .where(Task.status != TaskStatus.COMPLETED)
                .where(col(Task.is_archived).is_(False))
                .where(col(Task.due_date) >= current - OVERDUE_WINDOW)
                .where(col(Task.due_date) <= current + REMINDER_WINDOW)
            ).all()
            day_start = current.replace(hour=0, minute=0, second=0, microsecond=0)
            already = self._already_notified(session, [task.id for task in tasks], day_start)
            for task in tasks:
                hours_until_due = math.trunc((ensure_utc(task.due_date) - current).total_seconds() / 3600)
                if 0 < hours_until_due <= 24:
                    notification_type = NotificationType.DEADLINE_REMINDER
                    message = f'Your task "{task.title}" is due in less than 24 hours.'
                elif -24 < hours_until_due <= 0:
                    notification_type = NotificationType.DEADLINE_REMINDER
                    message = f'Your task "{task.title}" is due today.'
                elif -48 < hours_until_due <= -24:
                    notification_type = NotificationType.TASK_OVERDUE
                    message = f'Your task "{task.title}" was due yesterday.'
                else:
                    continue
                assignee_ids = session.exec(
                    select(TaskAssignment.user_id).where(TaskAssignment.task_id == task.id)
                ).all()
                recipients = [
                    user_id for user_id in assignee_ids if (task.id, user_id, str(notification_type)) not in already
                ]
                rows = self.fanout(
                    session,
                    notification_type=notification_type,
                    actor_id=None,
                    task=task,
                    recipient_ids=recipients,
                    message=message,
                    created_at=current,
                )
                created.extend(rows)
                if notification_type == NotificationType.TASK_OVERDUE:
                    overdue += len(rows)
                else:
                    reminders += len(rows)
            session.commit()
        self.publish(created)
        logger.info("deadline_sweep_completed", reminders=reminders, overdue=overdue, at=current.isoformat())
        return DeadlineSweepRead(reminders=reminders, overdue=overdue)
