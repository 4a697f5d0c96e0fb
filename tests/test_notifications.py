from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from conftest import Org, RecordingDispatcher, seed_org
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, select

from app.domain.models import (
    UNREAD_NOTIFICATION_LIMIT,
    Notification,
    NotificationType,
    Task,
    TaskAssignment,
    TaskCommentCreate,
    TaskCreate,
)
from app.domain.state_machine import TaskStatus
from app.infra.db import create_db_engine
from app.infra.realtime import RedisNotificationDispatcher
from app.services.errors import NotFoundError, UnauthorizedError
from app.services.notification_service import NotificationService, display_name
from app.services.task_service import TaskService

NOW = datetime(2026, 5, 10, 9, 0, tzinfo=UTC)


def _seed_notifications(engine: Engine, user_id: str, count: int) -> list[str]:
    ids: list[str] = []
    with Session(engine) as session:
        for index in range(count):
            row = Notification(
                user_id=user_id,
                type=NotificationType.TASK_UPDATED,
                title="Task Updated",
                message=f"update {index}",
                created_at=NOW + timedelta(minutes=index),
            )
            session.add(row)
            ids.append(row.id)
        session.commit()
    return ids


def _make_task(engine: Engine, owner_id: str, department_id: str, assignees: list[str], due: datetime) -> str:
    with Session(engine) as session:
        task = Task(title=f"due {due.isoformat()}", due_date=due, owner_id=owner_id, department_id=department_id)
        session.add(task)
        session.flush()
        for user_id in assignees:
            session.add(TaskAssignment(task_id=task.id, user_id=user_id))
        session.commit()
        return task.id


def test_fanout_excludes_actor(task_service: TaskService, engine: Engine, org: Org) -> None:
    task = task_service.create_task(
        org.eng_manager,
        TaskCreate(title="Plan", due_date=NOW, assignee_ids=[org.eng_manager, org.platform_staff, org.platform_staff2]),
    )
    task_service.add_comment(org.platform_staff, task.id, TaskCommentCreate(content="hi"))

    with Session(engine) as session:
        rows = session.exec(select(Notification).where(Notification.type == NotificationType.COMMENT_ADDED)).all()
    assert sorted(row.user_id for row in rows) == sorted([org.eng_manager, org.platform_staff2])
    assert all(row.message == 'Pat Staff commented on "Plan"' for row in rows)
    assert all(row.title == "New Comment" for row in rows)


def test_unread_is_capped_and_newest_first(notifications: NotificationService, engine: Engine, org: Org) -> None:
    _seed_notifications(engine, org.platform_staff, 12)

    unread = notifications.get_unread_notifications(org.platform_staff)

    assert len(unread) == UNREAD_NOTIFICATION_LIMIT
    assert [row.message for row in unread] == [f"update {index}" for index in range(11, 1, -1)]
    assert notifications.unread_count(org.platform_staff) == 12


def test_mark_read_is_idempotent_and_scoped(notifications: NotificationService, engine: Engine, org: Org) -> None:
    mine = _seed_notifications(engine, org.platform_staff, 3)
    theirs = _seed_notifications(engine, org.sales_staff, 1)

    assert notifications.mark_notifications_read(org.platform_staff, mine[:2] + theirs) == 2
    assert notifications.mark_notifications_read(org.platform_staff, mine[:2]) == 0
    assert notifications.mark_notifications_read(org.platform_staff, []) == 0

    assert [row.id for row in notifications.get_unread_notifications(org.platform_staff)] == [mine[2]]
    assert notifications.unread_count(org.sales_staff) == 1

    assert notifications.mark_all_read(org.platform_staff) == 1
    assert notifications.get_unread_notifications(org.platform_staff) == []


def test_concurrent_mark_read_both_succeed(tmp_path: Path) -> None:
    file_engine = create_db_engine(f"sqlite:///{tmp_path / 'notifications.db'}")
    SQLModel.metadata.create_all(file_engine)
    org = seed_org(file_engine)
    ids = _seed_notifications(file_engine, org.platform_staff, 4)
    service = NotificationService(file_engine, RecordingDispatcher())

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: service.mark_notifications_read(org.platform_staff, ids), range(2)))

    assert sum(results) == 4
    assert service.unread_count(org.platform_staff) == 0
    file_engine.dispose()


def test_deadline_sweep_classifies_windows(
    notifications: NotificationService,
    dispatcher: RecordingDispatcher,
    engine: Engine,
    org: Org,
) -> None:
    staff = [org.platform_staff, org.platform_staff2]
    soon = _make_task(engine, org.platform_staff, org.platform, staff, NOW + timedelta(hours=5))
    today = _make_task(engine, org.platform_staff, org.platform, staff, NOW - timedelta(hours=3))
    late = _make_task(engine, org.platform_staff, org.platform, staff, NOW - timedelta(hours=30))
    _make_task(engine, org.platform_staff, org.platform, staff, NOW - timedelta(hours=60))
    _make_task(engine, org.platform_staff, org.platform, staff, NOW + timedelta(hours=40))
    finished = _make_task(engine, org.platform_staff, org.platform, staff, NOW + timedelta(hours=2))
    with Session(engine) as session:
        task = session.get(Task, finished)
        assert task is not None
        task.status = TaskStatus.COMPLETED
        session.add(task)
        session.commit()

    result = notifications.notify_deadlines(NOW)

    assert result.reminders == 4
    assert result.overdue == 2
    with Session(engine) as session:
        rows = session.exec(select(Notification).where(Notification.user_id == org.platform_staff)).all()
    by_task = {row.task_id: row for row in rows}
    assert set(by_task) == {soon, today, late}
    assert by_task[soon].message.endswith("is due in less than 24 hours.")
    assert by_task[today].message.endswith("is due today.")
    assert by_task[late].type == NotificationType.TASK_OVERDUE
    assert by_task[late].title == "Task Overdue"
    assert len(dispatcher.sent) == 6


def test_dispatch_failure_is_swallowed(engine: Engine, org: Org) -> None:
    class BrokenDispatcher:
        def send(self, user_id: str, payload: dict[str, object]) -> None:
            raise TimeoutError("no redis")

    service = NotificationService(engine, BrokenDispatcher())
    _make_task(engine, org.platform_staff, org.platform, [org.platform_staff], NOW + timedelta(hours=1))

    assert service.notify_deadlines(NOW).reminders == 1
    assert service.unread_count(org.platform_staff) == 1


def test_repeated_sweep_skips_same_day_notifications(
    notifications: NotificationService,
    dispatcher: RecordingDispatcher,
    engine: Engine,
    org: Org,
) -> None:
    staff = [org.platform_staff, org.platform_staff2]
    _make_task(engine, org.platform_staff, org.platform, staff, NOW + timedelta(hours=5))
    _make_task(engine, org.platform_staff, org.platform, staff, NOW - timedelta(hours=30))

    first = notifications.notify_deadlines(NOW)
    second = notifications.notify_deadlines(NOW + timedelta(hours=2))

    assert (first.reminders, first.overdue) == (2, 2)
    assert (second.reminders, second.overdue) == (0, 0)
    assert notifications.unread_count(org.platform_staff) == 2
    assert len(dispatcher.sent) == 4

    next_day = notifications.notify_deadlines(NOW + timedelta(hours=16))
    assert (next_day.reminders, next_day.overdue) == (2, 2)
    assert notifications.unread_count(org.platform_staff2) == 4


def test_deadline_sweep_requires_admin(notifications: NotificationService, engine: Engine, org: Org) -> None:
    _make_task(engine, org.platform_staff, org.platform, [org.platform_staff], NOW + timedelta(hours=1))

    for user_id in [org.platform_staff, org.eng_manager]:
        with pytest.raises(UnauthorizedError):
            notifications.run_deadline_sweep(user_id, NOW)
    with pytest.raises(NotFoundError):
        notifications.run_deadline_sweep("missing", NOW)
    assert notifications.unread_count(org.platform_staff) == 0

    assert notifications.run_deadline_sweep(org.hr_flag_staff, NOW).reminders == 1
    assert notifications.run_deadline_sweep(org.admin, NOW).reminders == 0


def test_display_name_falls_back() -> None:
    assert display_name(None) == "Someone"


def test_redis_dispatcher_publishes_per_user_channel() -> None:
    class FakeRedis:
        def __init__(self) -> None:
            self.published: list[tuple[str, str]] = []

        def publish(self, channel: str, message: str) -> int:
            self.published.append((channel, message))
            return 1

    client = FakeRedis()
    dispatcher = RedisNotificationDispatcher(lambda: client, channel_prefix="tracker")  # type: ignore[arg-type,return-value]

    dispatcher.send("user-1", {"id": "n-1", "broadcast_at": NOW})

    assert client.published == [("tracker:user-1", '{"id": "n-1", "broadcast_at": "2026-05-10 09:00:00+00:00"}')]
