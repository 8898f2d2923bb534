"""RQ queues for fire-and-forget background jobs."""

from functools import lru_cache

import rq
from redis import Redis

from extraction_queue.core.config import get_settings

NOTIFICATIONS_QUEUE = "notifications"


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(get_settings().REDIS_URL)


def get_queue(name: str = NOTIFICATIONS_QUEUE) -> rq.Queue:
    return rq.Queue(name, connection=get_redis())
