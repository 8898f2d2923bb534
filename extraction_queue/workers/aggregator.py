"""Completion Aggregator.

When every sibling task of an email is terminal, one consolidated
``extraction_email_completed`` outbox event is written and the completion
is handed to the notification consumers. The aggregator can be invoked any
number of times for the same email: the ``completion_notified_at`` stamp is
taken with a conditional UPDATE, so only one invocation ever emits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from extraction_queue.core.config import Settings, get_settings
from extraction_queue.db.crud.emails import claim_completion, get_email_with_tenant
from extraction_queue.db.crud.tasks import list_tasks_for_email
from extraction_queue.db.crud.tenants import is_webhook_enabled
from extraction_queue.db.crud.webhook_events import create_event
from extraction_queue.db.models import ENTITY_EMAIL, EVENT_EMAIL_COMPLETED
from extraction_queue.db.session import SessionLocal
from extraction_queue.db.types import utcnow
from extraction_queue.notify.base import Notifier
from extraction_queue.workers.payloads import CompletionStats, build_email_payload, completion_stats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailCompletion:
    email_id: int
    tenant_id: int
    task_ids: tuple[int, ...]
    stats: CompletionStats
    webhook_event_id: int | None = None


class CompletionAggregator:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        notifiers: Sequence[Notifier] = (),
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifiers = list(notifiers)
        self._settings = settings or get_settings()

    def check_email_completion(self, email_id: int) -> EmailCompletion | None:
        """Emit the completion for ``email_id`` if all its tasks are terminal.

        Returns the completion when this call emitted it, ``None`` otherwise.
        """
        db = self._session_factory()
        try:
            completion = self._complete(db, email_id)
        except IntegrityError:
            # Another aggregator committed the same consolidated event first.
            db.rollback()
            logger.info("[EMAIL-%s] Completion already recorded concurrently", email_id)
            return None
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if completion is not None:
            self._dispatch(completion)
        return completion

    def _complete(self, db: Session, email_id: int) -> EmailCompletion | None:
        email = get_email_with_tenant(db, email_id)
        if email is None:
            logger.error("[EMAIL-%s] Email not found", email_id)
            return None

        tasks = list_tasks_for_email(db, email_id)
        if not tasks or not all(t.is_terminal for t in tasks):
            logger.info("[EMAIL-%s] Not all tasks completed yet", email_id)
            return None

        now = utcnow()
        if not claim_completion(db, email_id, now):
            logger.debug("[EMAIL-%s] Completion already emitted", email_id)
            db.rollback()
            return None

        stats = completion_stats(tasks)
        logger.info(
            "[EMAIL-%s] All extraction tasks finished: %d/%d successful, %d failed, %d cancelled",
            email_id,
            stats.completed,
            stats.total,
            stats.failed,
            stats.cancelled,
        )

        event_id = None
        if is_webhook_enabled(db, email.tenant_id):
            event, created = create_event(
                db,
                tenant_id=email.tenant_id,
                event_type=EVENT_EMAIL_COMPLETED,
                entity_type=ENTITY_EMAIL,
                entity_id=email.id,
                payload=build_email_payload(email, tasks, now),
                max_attempts=self._settings.WEBHOOK_MAX_ATTEMPTS,
            )
            event_id = event.id
            if created:
                logger.info("[EMAIL-%s] Consolidated webhook event created: %s", email_id, event.id)

        db.commit()
        return EmailCompletion(
            email_id=email.id,
            tenant_id=email.tenant_id,
            task_ids=tuple(t.id for t in tasks),
            stats=stats,
            webhook_event_id=event_id,
        )

    def _dispatch(self, completion: EmailCompletion) -> None:
        for notifier in self._notifiers:
            try:
                notifier.notify(completion)
            except Exception:
                logger.exception(
                    "[EMAIL-%s] Notifier %s failed", completion.email_id, type(notifier).__name__
                )
