"""Notification collaborator backed by the rq queue."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from redis.exceptions import RedisError
from rq import Queue

from extraction_queue.workers.queue import get_queue

if TYPE_CHECKING:
    from extraction_queue.workers.aggregator import EmailCompletion

logger = logging.getLogger(__name__)


class QueueNotifier:
    def __init__(self, queue_factory: Callable[[], Queue] | None = None) -> None:
        self._queue_factory = queue_factory or get_queue

    def notify(self, completion: EmailCompletion) -> None:
        from extraction_queue.workers.jobs import send_completion_notification

        try:
            job = self._queue_factory().enqueue(send_completion_notification, completion.email_id)
        except RedisError as e:
            logger.error("[EMAIL-%s] Failed to enqueue completion notification: %s", completion.email_id, e)
            return
        logger.info("[EMAIL-%s] Completion notification queued as job %s", completion.email_id, job.get_id())
