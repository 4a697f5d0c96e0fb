from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog
from sqlmodel import Session, col, select

from app.domain.models import EventEnvelope, EventRecord

EventHandler = Callable[[EventEnvelope], None]

logger = structlog.get_logger()


class EventBus:
    """Append-only activity log with in-process subscribers.

    Records are written into the caller's session so they commit or roll back
    together with the mutation they describe.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def record(self, session: Session, event: EventEnvelope) -> EventRecord:
        row = EventRecord(
            event_id=event.event_id,
            event_type=event.event_type,
            subject_id=event.subject_id,
            ts=event.ts,
            actor_id=event.actor_id,
            payload=event.payload,
        )
        session.add(row)
        return row

    def record_dict(
        self,
        session: Session,
        event_type: str,
        *,
        subject_id: str | None,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            subject_id=subject_id,
            actor_id=actor_id,
            payload=payload,
        )
        self.record(session, event)
        return event

    def dispatch(self, events: list[EventEnvelope]) -> None:
        """Hand committed events to subscribers; a failing handler never affects the caller."""
        for event in events:
            handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception("event_handler_failed", event_type=event.event_type, event_id=event.event_id)

    def history(self, session: Session, subject_id: str) -> list[EventRecord]:
        return list(
            session.exec(
                select(EventRecord)
                .where(EventRecord.subject_id == subject_id)
                .order_by(col(EventRecord.ts).asc())
            ).all()
        )


def log_event(event: EventEnvelope) -> None:
    logger.info(
        "domain_event",
        event_type=event.event_type,
        subject_id=event.subject_id,
        actor_id=event.actor_id,
    )
