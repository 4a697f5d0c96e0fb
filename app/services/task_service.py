from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    MAX_ASSIGNEES,
    MAX_PRIORITY,
    MIN_ASSIGNEES,
    MIN_PRIORITY,
    NotificationType,
    Project,
    Task,
    TaskActivityRead,
    TaskAssignment,
    TaskComment,
    TaskCommentCreate,
    TaskCreate,
    TaskRead,
    TaskStatusUpdateRead,
    TaskUpdate,
    UserProfile,
    ensure_utc,
    now_utc,
)
from app.domain.state_machine import TaskStatus, can_task_transition, is_completion, starts_work
from app.infra.events import EventBus, log_event
from app.services.access_policy import AccessPolicy
from app.services.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.services.notification_service import NotificationService, display_name
from app.services.recurrence_service import RecurrenceEngine

logger = structlog.get_logger()

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
MAX_TASK_ATTACHMENT_BYTES = 50 * 1024 * 1024
ALLOWED_ATTACHMENT_TYPES = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/jpg",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
    }
)


def validate_attachment(content_type: str, size_bytes: int, *, current_total_bytes: int = 0) -> None:
    """Check an upload against the attachment policy; storage itself lives elsewhere."""
    if content_type.strip().lower() not in ALLOWED_ATTACHMENT_TYPES:
        raise ValidationError(f"unsupported attachment type: {content_type}")
    if size_bytes <= 0:
        raise ValidationError("attachment is empty")
    if size_bytes > MAX_ATTACHMENT_BYTES:
        raise ValidationError("attachment exceeds 10MB")
    if current_total_bytes + size_bytes > MAX_TASK_ATTACHMENT_BYTES:
        raise ValidationError("task attachments would exceed 50MB")


def _clean_title(title: str) -> str:
    cleaned = title.strip()
    if not cleaned:
        raise ValidationError("title is required")
    return cleaned


def _check_priority(priority: int) -> None:
    if priority < MIN_PRIORITY or priority > MAX_PRIORITY:
        raise ValidationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")


def _check_interval(interval: int | None) -> None:
    if interval is not None and interval <= 0:
        raise ValidationError("recurring interval must be a positive number of days")


def _differs(current: object, proposed: object) -> bool:
    if isinstance(current, datetime) and isinstance(proposed, datetime):
        return ensure_utc(current) != ensure_utc(proposed)
    return current != proposed


class TaskService:
    def __init__(
        self,
        engine: Engine,
        notifications: NotificationService,
        recurrence: RecurrenceEngine | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._notifications = notifications
        self._recurrence = recurrence or RecurrenceEngine()
        if event_bus is None:
            event_bus = EventBus()
            event_bus.subscribe("*", log_event)
        self._events = event_bus

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _actor(self, session: Session, actor_id: str) -> UserProfile:
        actor = session.get(UserProfile, actor_id)
        if actor is None:
            raise NotFoundError("user not found")
        if not actor.is_active:
            raise UnauthorizedError("user is inactive")
        return actor

    def _task(self, session: Session, task_id: str) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("task not found")
        return task

    def _locked_task(self, session: Session, task_id: str) -> Task:
        task = session.exec(select(Task).where(Task.id == task_id).with_for_update()).first()
        if task is None:
            raise NotFoundError("task not found")
        return task

    def _visible_task(self, session: Session, policy: AccessPolicy, actor: UserProfile, task_id: str) -> Task:
        task = self._task(session, task_id)
        if not policy.is_task_visible(actor, task):
            raise UnauthorizedError("task is not visible to this user")
        return task

    def _read(self, policy: AccessPolicy, actor: UserProfile, task: Task) -> TaskRead:
        payload = task.model_dump()
        payload["assignee_ids"] = policy.assignee_ids(task.id)
        payload["can_edit"] = policy.can_edit(actor, task)
        return TaskRead.model_validate(payload)

    def _check_assignees(self, session: Session, user_ids: list[str]) -> None:
        if len(user_ids) < MIN_ASSIGNEES:
            raise ValidationError("a task needs at least one assignee")
        if len(user_ids) > MAX_ASSIGNEES:
            raise ValidationError(f"a task can have at most {MAX_ASSIGNEES} assignees")
        users = session.exec(select(UserProfile).where(col(UserProfile.id).in_(user_ids))).all()
        if len(users) != len(user_ids):
            raise NotFoundError("one or more assignees not found")
        if any(not user.is_active for user in users):
            raise ValidationError("one or more assignees are inactive")

    def _check_subtask_due(self, parent: Task, due_date: datetime) -> None:
        if ensure_utc(due_date) > ensure_utc(parent.due_date):
            raise ValidationError("subtask due date cannot be after the parent task due date")

    def _assignment_count(self, session: Session, task_id: str) -> int:
        statement = select(func.count()).select_from(TaskAssignment).where(TaskAssignment.task_id == task_id)
        return int(session.exec(statement).one())

    def _user_name(self, session: Session, user_id: str) -> str:
        return display_name(session.get(UserProfile, user_id))

    def create_task(self, actor_id: str, payload: TaskCreate) -> TaskRead:
        title = _clean_title(payload.title)
        _check_priority(payload.priority)
        _check_interval(payload.recurring_interval)
        assignee_ids = list(dict.fromkeys(payload.assignee_ids))

        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            if not assignee_ids:
                assignee_ids = [actor.id]
            self._check_assignees(session, assignee_ids)

            project_id = payload.project_id
            if payload.parent_task_id is not None:
                parent = self._task(session, payload.parent_task_id)
                if parent.is_subtask():
                    raise ValidationError("maximum subtask depth is 2 levels")
                if payload.recurring_interval is not None:
                    raise ValidationError("subtasks cannot be recurring")
                if not policy.is_task_visible(actor, parent):
                    raise UnauthorizedError("parent task is not visible to this user")
                self._check_subtask_due(parent, payload.due_date)
                project_id = parent.project_id
            elif project_id is not None:
                project = session.get(Project, project_id)
                if project is None or project.is_archived:
                    raise NotFoundError("project not found")
                if not policy.is_project_visible(actor, project):
                    raise UnauthorizedError("project is not visible to this user")

            task = Task(
                title=title,
                description=payload.description,
                priority=payload.priority,
                due_date=ensure_utc(payload.due_date),
                owner_id=actor.id,
                department_id=actor.department_id,
                project_id=project_id,
                parent_task_id=payload.parent_task_id,
                recurring_interval=payload.recurring_interval,
            )
            session.add(task)
            session.flush()
            for user_id in assignee_ids:
                session.add(TaskAssignment(task_id=task.id, user_id=user_id, assigned_by_id=actor.id))
            event = self._events.record_dict(
                session,
                "task.created",
                subject_id=task.id,
                actor_id=actor.id,
                payload={"title": title, "assignee_ids": assignee_ids, "parent_task_id": task.parent_task_id},
            )
            actor_name = display_name(actor)
            notifications = self._notifications.fanout(
                session,
                notification_type=NotificationType.TASK_ASSIGNED,
                actor_id=actor.id,
                task=task,
                recipient_ids=assignee_ids,
                message=f'{actor_name} assigned you to "{title}"',
            )
            session.commit()
            session.refresh(task)
            result = self._read(policy, actor, task)

        self._events.dispatch([event])
        self._notifications.publish(notifications)
        logger.info("task_created", task_id=result.id, owner_id=actor_id, assignees=len(result.assignee_ids))
        return result

    def get_task(self, actor_id: str, task_id: str) -> TaskRead:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._visible_task(session, policy, actor, task_id)
            return self._read(policy, actor, task)

    def list_visible_tasks(
        self,
        actor_id: str,
        *,
        department_id: str | None = None,
        status: TaskStatus | None = None,
        project_id: str | None = None,
        include_archived: bool = False,
    ) -> list[TaskRead]:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            statement = select(Task).where(policy.task_filter(actor))
            if department_id is not None:
                statement = statement.where(Task.department_id == department_id)
            if status is not None:
                statement = statement.where(Task.status == status)
            if project_id is not None:
                statement = statement.where(Task.project_id == project_id)
            if not include_archived:
                statement = statement.where(col(Task.is_archived).is_(False))
            statement = statement.order_by(col(Task.due_date).asc(), col(Task.priority).desc())
            return [self._read(policy, actor, task) for task in session.exec(statement).all()]

    def update_task_status(self, actor_id: str, task_id: str, target: TaskStatus) -> TaskStatusUpdateRead:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._visible_task(session, policy, actor, task_id)
            if not policy.can_edit(actor, task):
                raise UnauthorizedError("not allowed to edit this task")

            source = task.status
            if source == target:
                return TaskStatusUpdateRead(task=self._read(policy, actor, task))
            if not can_task_transition(source, target):
                raise ValidationError(f"cannot move task from {source} to {target}")

            assignee_ids = policy.assignee_ids(task.id)
            successor: Task | None = None
            if is_completion(source, target):
                if not self._recurrence.claim_completion(session, task.id):
                    session.rollback()
                    task = self._task(session, task_id)
                    return TaskStatusUpdateRead(task=self._read(policy, actor, task))
                session.refresh(task)
                successor = self._recurrence.spawn_successor(session, task, assignee_ids, actor_id=actor.id)
            else:
                now = now_utc()
                if starts_work(source, target) and task.start_date is None:
                    task.start_date = now
                if source == TaskStatus.COMPLETED:
                    task.completed_at = None
                task.status = target
                task.updated_at = now
                session.add(task)

            events = [
                self._events.record_dict(
                    session,
                    "task.status_changed",
                    subject_id=task.id,
                    actor_id=actor.id,
                    payload={"from": str(source), "to": str(target)},
                )
            ]
            if successor is not None:
                events.append(
                    self._events.record_dict(
                        session,
                        "task.recurrence_spawned",
                        subject_id=task.id,
                        actor_id=actor.id,
                        payload={"successor_id": successor.id, "due_date": successor.due_date.isoformat()},
                    )
                )
            notifications = self._notifications.fanout(
                session,
                notification_type=NotificationType.TASK_UPDATED,
                actor_id=actor.id,
                task=task,
                recipient_ids=assignee_ids,
                message=f'{display_name(actor)} changed the status of "{task.title}" to {target}',
            )
            session.commit()
            session.refresh(task)
            result = TaskStatusUpdateRead(
                task=self._read(policy, actor, task),
                successor=None if successor is None else self._read(policy, actor, successor),
            )

        self._events.dispatch(events)
        self._notifications.publish(notifications)
        logger.info(
            "task_status_changed",
            task_id=task_id,
            source=source,
            target=target,
            successor_id=None if result.successor is None else result.successor.id,
        )
        return result

    def update_task(self, actor_id: str, task_id: str, payload: TaskUpdate) -> TaskRead:
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._visible_task(session, policy, actor, task_id)
            if not policy.can_edit(actor, task):
                raise UnauthorizedError("not allowed to edit this task")

            if "title" in changes:
                if changes["title"] is None:
                    raise ValidationError("title is required")
                changes["title"] = _clean_title(changes["title"])
            if "priority" in changes:
                if changes["priority"] is None:
                    raise ValidationError("priority is required")
                _check_priority(changes["priority"])
            if "description" in changes and changes["description"] is None:
                changes["description"] = ""
            if "due_date" in changes:
                if changes["due_date"] is None:
                    raise ValidationError("due date is required")
                changes["due_date"] = ensure_utc(changes["due_date"])
                if task.parent_task_id is not None:
                    self._check_subtask_due(self._task(session, task.parent_task_id), changes["due_date"])
            if "recurring_interval" in changes:
                _check_interval(changes["recurring_interval"])
                if changes["recurring_interval"] is not None and task.is_subtask():
                    raise ValidationError("subtasks cannot be recurring")

            changed = {key: value for key, value in changes.items() if _differs(getattr(task, key), value)}
            if not changed:
                return self._read(policy, actor, task)
            for key, value in changed.items():
                setattr(task, key, value)
            task.updated_at = now_utc()
            session.add(task)

            event = self._events.record_dict(
                session,
                "task.updated",
                subject_id=task.id,
                actor_id=actor.id,
                payload={"fields": sorted(changed)},
            )
            notifications = self._notifications.fanout(
                session,
                notification_type=NotificationType.TASK_UPDATED,
                actor_id=actor.id,
                task=task,
                recipient_ids=policy.assignee_ids(task.id),
                message=f'{display_name(actor)} updated "{task.title}"',
            )
            session.commit()
            session.refresh(task)
            result = self._read(policy, actor, task)

        self._events.dispatch([event])
        self._notifications.publish(notifications)
        logger.info("task_updated", task_id=task_id, fields=sorted(changed))
        return result

    def add_assignee(self, actor_id: str, task_id: str, user_id: str) -> TaskRead:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._locked_task(session, task_id)
            if not policy.is_task_visible(actor, task):
                raise UnauthorizedError("task is not visible to this user")
            already_assigned = session.get(TaskAssignment, (task.id, user_id)) is not None
            # Count bounds hold for every caller role.
            if not already_assigned and self._assignment_count(session, task.id) + 1 > MAX_ASSIGNEES:
                raise ConflictError(f"a task can have at most {MAX_ASSIGNEES} assignees")
            if not policy.can_add_assignee(actor, task):
                raise UnauthorizedError("not allowed to add assignees to this task")
            assignee = session.get(UserProfile, user_id)
            if assignee is None:
                raise NotFoundError("user not found")
            if not assignee.is_active:
                raise ValidationError("user is inactive")
            if already_assigned:
                return self._read(policy, actor, task)

            session.add(TaskAssignment(task_id=task.id, user_id=user_id, assigned_by_id=actor.id))
            task.updated_at = now_utc()
            session.add(task)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                task = self._task(session, task_id)
                return self._read(policy, actor, task)

            event = self._events.record_dict(
                session,
                "task.assignee_added",
                subject_id=task.id,
                actor_id=actor.id,
                payload={"user_id": user_id},
            )
            notifications = self._notifications.fanout(
                session,
                notification_type=NotificationType.TASK_REASSIGNED,
                actor_id=actor.id,
                task=task,
                recipient_ids=policy.assignee_ids(task.id),
                title="New Assignment",
                message=f'{display_name(actor)} added {display_name(assignee)} to "{task.title}"',
            )
            session.commit()
            session.refresh(task)
            result = self._read(policy, actor, task)

        self._events.dispatch([event])
        self._notifications.publish(notifications)
        logger.info("task_assignee_added", task_id=task_id, user_id=user_id, actor_id=actor_id)
        return result

    def remove_assignee(self, actor_id: str, task_id: str, user_id: str) -> TaskRead:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._locked_task(session, task_id)
            if not policy.is_task_visible(actor, task):
                raise UnauthorizedError("task is not visible to this user")
            if self._assignment_count(session, task.id) - 1 < MIN_ASSIGNEES:
                raise ConflictError("a task needs at least one assignee")
            if not policy.can_remove_assignee(actor, task):
                raise UnauthorizedError("not allowed to remove assignees from this task")
            assignment = session.get(TaskAssignment, (task.id, user_id))
            if assignment is None:
                raise NotFoundError("user is not assigned to this task")

            removed_name = self._user_name(session, user_id)
            session.delete(assignment)
            task.updated_at = now_utc()
            session.add(task)
            session.flush()

            event = self._events.record_dict(
                session,
                "task.assignee_removed",
                subject_id=task.id,
                actor_id=actor.id,
                payload={"user_id": user_id},
            )
            notifications = self._notifications.fanout(
                session,
                notification_type=NotificationType.TASK_REASSIGNED,
                actor_id=actor.id,
                task=task,
                recipient_ids=policy.assignee_ids(task.id),
                title="Assignment Removed",
                message=f'{display_name(actor)} removed {removed_name} from "{task.title}"',
            )
            session.commit()
            session.refresh(task)
            result = self._read(policy, actor, task)

        self._events.dispatch([event])
        self._notifications.publish(notifications)
        logger.info("task_assignee_removed", task_id=task_id, user_id=user_id, actor_id=actor_id)
        return result

    def add_comment(self, actor_id: str, task_id: str, payload: TaskCommentCreate) -> TaskComment:
        content = payload.content.strip()
        if not content:
            raise ValidationError("comment cannot be empty")
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._visible_task(session, policy, actor, task_id)
            if not policy.can_comment(actor, task):
                raise UnauthorizedError("not allowed to comment on this task")

            comment = TaskComment(task_id=task.id, author_id=actor.id, content=content)
            session.add(comment)
            session.flush()
            event = self._events.record_dict(
                session,
                "task.comment_added",
                subject_id=task.id,
                actor_id=actor.id,
                payload={"comment_id": comment.id},
            )
            notifications = self._notifications.fanout(
                session,
                notification_type=NotificationType.COMMENT_ADDED,
                actor_id=actor.id,
                task=task,
                recipient_ids=policy.assignee_ids(task.id),
                message=f'{display_name(actor)} commented on "{task.title}"',
            )
            session.commit()
            session.refresh(comment)

        self._events.dispatch([event])
        self._notifications.publish(notifications)
        logger.info("task_comment_added", task_id=task_id, comment_id=comment.id, author_id=actor_id)
        return comment

    def update_comment(self, actor_id: str, comment_id: str, payload: TaskCommentCreate) -> TaskComment:
        content = payload.content.strip()
        if not content:
            raise ValidationError("comment cannot be empty")
        with self._session() as session:
            actor = self._actor(session, actor_id)
            comment = session.get(TaskComment, comment_id)
            if comment is None:
                raise NotFoundError("comment not found")
            if comment.author_id != actor.id:
                raise UnauthorizedError("only the author can edit this comment")
            task = self._task(session, comment.task_id)
            policy = AccessPolicy(session)

            comment.content = content
            comment.updated_at = now_utc()
            session.add(comment)
            event = self._events.record_dict(
                session,
                "task.comment_updated",
                subject_id=task.id,
                actor_id=actor.id,
                payload={"comment_id": comment.id},
            )
            notifications = self._notifications.fanout(
                session,
                notification_type=NotificationType.COMMENT_UPDATED,
                actor_id=actor.id,
                task=task,
                recipient_ids=policy.assignee_ids(task.id),
                message=f'{display_name(actor)} edited a comment on "{task.title}"',
            )
            session.commit()
            session.refresh(comment)

        self._events.dispatch([event])
        self._notifications.publish(notifications)
        logger.info("task_comment_updated", task_id=comment.task_id, comment_id=comment_id)
        return comment

    def list_comments(self, actor_id: str, task_id: str) -> list[TaskComment]:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._visible_task(session, policy, actor, task_id)
            statement = (
                select(TaskComment)
                .where(TaskComment.task_id == task.id)
                .order_by(col(TaskComment.created_at).asc())
            )
            return list(session.exec(statement).all())

    def archive_task(self, actor_id: str, task_id: str) -> TaskRead:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._visible_task(session, policy, actor, task_id)
            if not policy.can_archive(actor, task):
                raise UnauthorizedError("not allowed to archive this task")
            if task.is_archived:
                return self._read(policy, actor, task)

            now = now_utc()
            subtasks = list(
                session.exec(
                    select(Task).where(Task.parent_task_id == task.id).where(col(Task.is_archived).is_(False))
                ).all()
            )
            for row in [task, *subtasks]:
                row.is_archived = True
                row.updated_at = now
                session.add(row)
            event = self._events.record_dict(
                session,
                "task.archived",
                subject_id=task.id,
                actor_id=actor.id,
                payload={"subtask_ids": sorted(row.id for row in subtasks)},
            )
            session.commit()
            session.refresh(task)
            result = self._read(policy, actor, task)

        self._events.dispatch([event])
        logger.info("task_archived", task_id=task_id, subtasks=len(subtasks))
        return result

    def get_task_activity(self, actor_id: str, task_id: str) -> list[TaskActivityRead]:
        with self._session() as session:
            actor = self._actor(session, actor_id)
            policy = AccessPolicy(session)
            task = self._visible_task(session, policy, actor, task_id)
            return [TaskActivityRead.model_validate(row) for row in self._events.history(session, task.id)]

