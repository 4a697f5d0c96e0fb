from __future__ import annotations

import json
import os
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Protocol

import structlog
from redis import Redis
from redis.exceptions import RedisError

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
NOTIFICATION_CHANNEL_PREFIX = os.getenv("NOTIFICATION_CHANNEL_PREFIX", "notifications")

logger = structlog.get_logger()


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True, socket_timeout=2.0)


def check_redis_ready(client_factory: Callable[[], Redis] = get_redis) -> bool:
    """Report whether the live notification channel is reachable."""
    try:
        return bool(client_factory().ping())
    except RedisError as exc:
        logger.warning("redis_not_ready", error=str(exc))
        return False


class NotificationDispatcher(Protocol):
    def send(self, user_id: str, payload: dict[str, Any]) -> None: ...


class RedisNotificationDispatcher:
    """Publish live notification payloads on a per-user Redis channel."""

    def __init__(
        self,
        client_factory: Callable[[], Redis] = get_redis,
        channel_prefix: str = NOTIFICATION_CHANNEL_PREFIX,
    ) -> None:
        self._client_factory = client_factory
        self._channel_prefix = channel_prefix

    def channel_for(self, user_id: str) -> str:
        return f"{self._channel_prefix}:{user_id}"

    def send(self, user_id: str, payload: dict[str, Any]) -> None:
        self._client_factory().publish(self.channel_for(user_id), json.dumps(payload, default=str))


class NullNotificationDispatcher:
    def send(self, user_id: str, payload: dict[str, Any]) -> None:
        return None
