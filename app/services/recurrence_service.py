from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import Task, TaskAssignment, ensure_utc, now_utc
from app.domain.state_machine import TaskStatus

logger = structlog.get_logger()


def next_due_date(due_date: datetime, interval_days: int) -> datetime:
    return ensure_utc(due_date) + timedelta(days=interval_days)


class RecurrenceEngine:
    """Completion bookkeeping and successor spawning for recurring tasks.

    Both steps run inside the caller's transaction. ``claim_completion`` is a
    conditional UPDATE, so of several requests completing the same task only one
    sees a row count of 1; only that request may spawn.
    """

    def claim_completion(self, session: Session, task_id: str, *, at: datetime | None = None) -> bool:
        completed_at = at or now_utc()
        result = session.execute(
            update(Task)
            .where(col(Task.id) == task_id)
            .where(col(Task.status) != TaskStatus.COMPLETED)
            .values(status=TaskStatus.COMPLETED, completed_at=completed_at, updated_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def should_spawn(self, task: Task) -> bool:
        return task.is_recurring() and not task.is_subtask() and (task.recurring_interval or 0) > 0

    def existing_successor(self, session: Session, source_id: str) -> Task | None:
        return session.exec(select(Task).where(Task.recurrence_source_id == source_id)).first()

    def spawn_successor(
        self,
        session: Session,
        source: Task,
        assignee_ids: Iterable[str],
        *,
        actor_id: str | None = None,
    ) -> Task | None:
        if not self.should_spawn(source) or source.recurring_interval is None:
            return None
        if self.existing_successor(session, source.id) is not None:
            logger.info("recurrence_already_spawned", task_id=source.id)
            return None

        successor = Task(
            title=source.title,
            description=source.description,
            priority=source.priority,
            due_date=next_due_date(source.due_date, source.recurring_interval),
            status=TaskStatus.TO_DO,
            owner_id=source.owner_id,
            department_id=source.department_id,
            project_id=source.project_id,
            recurring_interval=source.recurring_interval,
            recurrence_source_id=source.id,
        )
        try:
            with session.begin_nested():
                session.add(successor)
                session.flush()
                for user_id in sorted(set(assignee_ids)):
                    session.add(TaskAssignment(task_id=successor.id, user_id=user_id, assigned_by_id=actor_id))
                session.flush()
        except IntegrityError:
            logger.info("recurrence_spawn_lost_race", task_id=source.id)
            return None

        logger.info(
            "recurrence_spawned",
            task_id=source.id,
            successor_id=successor.id,
            due_date=successor.due_date.isoformat(),
        )
        return successor
