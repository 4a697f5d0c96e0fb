from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    TO_DO = "TO_DO"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


class ProjectStatus(StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"


# Any status may move to any other; a completed task can be reopened.
TASK_ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    source: {target for target in TaskStatus if target != source} for source in TaskStatus
}


def can_task_transition(source: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_ALLOWED_TRANSITIONS.get(source, set())


def is_completion(source: TaskStatus, target: TaskStatus) -> bool:
    return target == TaskStatus.COMPLETED and source != TaskStatus.COMPLETED


def starts_work(source: TaskStatus, target: TaskStatus) -> bool:
    return target == TaskStatus.IN_PROGRESS and source != TaskStatus.IN_PROGRESS
