from __future__ import annotations

import redis

from ..dispatcher import EventQueue, LocalEventQueue, RedisEventQueue
from .settings import QUEUE_NAME, REDIS_URL


def event_queue(url: str | None = REDIS_URL, name: str = QUEUE_NAME) -> EventQueue:
    """Redis-backed queue when REDIS_URL is configured, in-process otherwise."""
    if not url:
        return LocalEventQueue()
    return RedisEventQueue(redis.from_url(url), name=name)
