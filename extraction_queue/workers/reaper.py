"""Stuck-work reaper.

A task left in PROCESSING longer than the threshold (its worker died or
hung) goes through the normal retry-or-fail path. Webhook events stranded
in SENDING by a crashed dispatcher are treated as a failed delivery.
Emails whose tasks all finished but whose completion was never emitted
are handed to the aggregator again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from extraction_queue.core.config import Settings, get_settings
from extraction_queue.db.crud.emails import find_unnotified_finished_email_ids
from extraction_queue.db.crud.tasks import find_stuck_tasks
from extraction_queue.db.crud.webhook_events import find_stale_sending_events
from extraction_queue.db.models import TaskStatus
from extraction_queue.db.session import SessionLocal
from extraction_queue.db.types import utcnow
from extraction_queue.workers.aggregator import CompletionAggregator

logger = logging.getLogger(__name__)


@dataclass
class ReaperRunSummary:
    tasks_retried: int = 0
    tasks_failed: int = 0
    events_recovered: int = 0
    emails_completed: int = 0


class StuckTaskReaper:
    def __init__(
        self,
        *,
        aggregator: CompletionAggregator,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Settings | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    def run_once(self, now: datetime | None = None) -> ReaperRunSummary:
        now = now or utcnow()
        summary = ReaperRunSummary()
        threshold = self._settings.STUCK_TASK_THRESHOLD_MINUTES
        cutoff = now - timedelta(minutes=threshold)

        failed_email_ids: set[int] = set()
        db = self._session_factory()
        try:
            for task in find_stuck_tasks(db, started_before=cutoff):
                logger.warning(
                    "[TASK-%s] Recovering stuck task (started at %s)",
                    task.id,
                    task.started_at.isoformat() if task.started_at else None,
                )
                task.mark_for_retry(
                    f"Recovered stuck task: PROCESSING for more than {threshold} minutes",
                    self._settings.WORKER_RETRY_DELAY_SECONDS,
                    now,
                )
                if task.status == TaskStatus.FAILED:
                    summary.tasks_failed += 1
                    failed_email_ids.add(task.email_id)
                else:
                    summary.tasks_retried += 1

            for event in find_stale_sending_events(db, attempted_before=cutoff):
                logger.warning("[WEBHOOK-%s] Recovering event stuck in SENDING", event.id)
                event.mark_delivery_failed(
                    f"Delivery interrupted: SENDING for more than {threshold} minutes",
                    self._settings.WEBHOOK_RETRY_DELAY_SECONDS,
                    now,
                )
                summary.events_recovered += 1

            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        for email_id in sorted(failed_email_ids | set(self._unnotified_emails())):
            try:
                if self._aggregator.check_email_completion(email_id) is not None:
                    summary.emails_completed += 1
            except Exception:
                logger.exception("[EMAIL-%s] Completion check failed", email_id)

        if summary.tasks_retried or summary.tasks_failed or summary.events_recovered or summary.emails_completed:
            logger.info(
                "Reaper recovered %d task(s) for retry, failed %d, recovered %d webhook event(s), "
                "completed %d email(s)",
                summary.tasks_retried,
                summary.tasks_failed,
                summary.events_recovered,
                summary.emails_completed,
            )
        return summary

    def _unnotified_emails(self) -> list[int]:
        db = self._session_factory()
        try:
            return find_unnotified_finished_email_ids(db)
        finally:
            db.close()
