"""Extraction Worker.

Each run claims a batch of runnable tasks and processes them on a bounded
thread pool, one thread per task:

1. the claim (PROCESSING, attempts + 1, started_at) is committed before any
   external work;
2. template lookup, document conversion and field extraction run outside
   any open transaction;
3. the outcome is written back only if the row still carries this claim
   (status PROCESSING, same attempt number); a task reclaimed by the
   reaper or cancelled in the meantime is left alone;
4. a completed task and its ``extraction_task_completed`` outbox event are
   committed together;
5. every terminal transition hands the email to the completion aggregator.
"""

from __future__ import annotations

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.orm import Session

from extraction_queue.core.config import Settings, get_settings
from extraction_queue.core.errors import (
    ExtractionQueueError,
    ExtractionValidationError,
    TemplateNotFoundError,
)
from extraction_queue.core.logging import bind_correlation_id
from extraction_queue.db.crud.emails import get_email_with_tenant
from extraction_queue.db.crud.tasks import claim_next_tasks, lock_task
from extraction_queue.db.crud.tenants import find_active_template, is_webhook_enabled
from extraction_queue.db.crud.webhook_events import create_event
from extraction_queue.db.models import (
    ENTITY_TASK,
    EVENT_TASK_COMPLETED,
    ExtractionTask,
    ExtractionTemplate,
    ProcessedAttachment,
    TaskStatus,
    Tenant,
)
from extraction_queue.db.session import SessionLocal
from extraction_queue.db.types import utcnow
from extraction_queue.extract.base import DocumentConverter, ExtractionOptions, FieldExtractor
from extraction_queue.workers.aggregator import CompletionAggregator
from extraction_queue.workers.payloads import build_task_payload, task_filename

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[\\/\r\n\t]")

TemplateLookup = Callable[[Session, int, str], Optional[ExtractionTemplate]]


@dataclass(frozen=True)
class ClaimedTask:
    task_id: int
    email_id: int
    attempts: int
    correlation_id: str


@dataclass
class WorkerRunSummary:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    discarded: int = 0

    def record(self, outcome: TaskStatus | None) -> None:
        if outcome is None:
            self.discarded += 1
        elif outcome == TaskStatus.COMPLETED:
            self.completed += 1
        elif outcome == TaskStatus.RETRYING:
            self.retried += 1
        elif outcome == TaskStatus.FAILED:
            self.failed += 1


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, ExtractionQueueError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


def save_extraction_result(tenant: Tenant, attachment: ProcessedAttachment, result_json: str) -> str:
    """Write the result under ``{storage}/{tenant}/process/extractions/``."""
    if not tenant.storage_base_path:
        raise ValueError("Tenant storage_base_path is missing")
    directory = Path(tenant.storage_base_path, tenant.tenant_code, "process", "extractions")
    directory.mkdir(parents=True, exist_ok=True)

    normalized = attachment.normalized_filename or attachment.original_filename or "attachment"
    normalized = _UNSAFE_FILENAME.sub("_", normalized)
    path = (directory / f"{attachment.email_id}_{attachment.id}_{normalized}.extraction.json").resolve()
    if directory.resolve() not in path.parents:
        raise ValueError("Invalid filename produced a path outside the target directory")

    path.write_text(result_json, encoding="utf-8")
    return str(path)


class ExtractionWorker:
    def __init__(
        self,
        *,
        converter: DocumentConverter,
        extractor: FieldExtractor,
        aggregator: CompletionAggregator,
        session_factory: Callable[[], Session] = SessionLocal,
        template_lookup: TemplateLookup = find_active_template,
        settings: Settings | None = None,
    ) -> None:
        self._converter = converter
        self._extractor = extractor
        self._aggregator = aggregator
        self._session_factory = session_factory
        self._template_lookup = template_lookup
        self._settings = settings or get_settings()

    @property
    def batch_size(self) -> int:
        return self._settings.WORKER_BATCH_SIZE

    def run_once(self, now: datetime | None = None) -> WorkerRunSummary:
        summary = WorkerRunSummary()
        if not self._settings.WORKER_ENABLED:
            return summary

        claimed = self._claim(now or utcnow())
        summary.claimed = len(claimed)
        if not claimed:
            return summary

        logger.info("Claimed %d extraction task(s)", len(claimed))
        with ThreadPoolExecutor(max_workers=len(claimed), thread_name_prefix="extraction") as pool:
            futures = {pool.submit(self.process_task, claim): claim for claim in claimed}
            for future in as_completed(futures):
                claim = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.exception("[TASK-%s] Worker error", claim.task_id)
                    outcome = self._handle_worker_error(claim, e)
                summary.record(outcome)

        logger.info(
            "Extraction run finished: completed=%d retried=%d failed=%d discarded=%d",
            summary.completed,
            summary.retried,
            summary.failed,
            summary.discarded,
        )
        return summary

    def _claim(self, now: datetime) -> list[ClaimedTask]:
        db = self._session_factory()
        try:
            tasks = claim_next_tasks(db, limit=self.batch_size, now=now)
            claimed = [ClaimedTask(t.id, t.email_id, t.attempts, t.correlation_id) for t in tasks]
            db.commit()
            return claimed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def process_task(self, claim: ClaimedTask) -> TaskStatus | None:
        with bind_correlation_id(claim.correlation_id):
            db = self._session_factory()
            try:
                return self._process(db, claim)
            finally:
                db.close()

    def _process(self, db: Session, claim: ClaimedTask) -> TaskStatus | None:
        task = db.get(ExtractionTask, claim.task_id)
        if not self._still_claimed(task, claim):
            return None
        email = get_email_with_tenant(db, task.email_id)
        tenant = email.tenant
        attachment = task.attachment

        logger.info(
            "[TASK-%s] Processing %s (tenant=%s, source=%s, attempt %d/%d)",
            task.id,
            task_filename(task),
            tenant.tenant_code,
            task.source,
            claim.attempts,
            task.max_attempts,
        )

        try:
            template = self._template_lookup(db, tenant.id, task.source)
            if template is None:
                raise TemplateNotFoundError(tenant.id, task.source)
            # End the read transaction before the blocking work.
            db.commit()
            result_path, raw_result = self._extract(task, template, tenant, attachment)
        except Exception as e:
            db.rollback()
            logger.error("[TASK-%s] Extraction failed: %s", claim.task_id, describe_error(e))
            return self._finish_failure(db, claim, describe_error(e))

        return self._finish_success(db, claim, result_path, raw_result)

    def _extract(
        self,
        task: ExtractionTask,
        template: ExtractionTemplate,
        tenant: Tenant,
        attachment: ProcessedAttachment,
    ) -> tuple[str, str]:
        logger.info("[TASK-%s] Using template %s (%s)", task.id, template.template_name, template.template_path)
        template_json = json.loads(Path(template.template_path).read_text(encoding="utf-8"))

        document = Path(task.pdf_path).read_bytes()
        logger.info("[TASK-%s] Converting %s (%d bytes)", task.id, task.pdf_path, len(document))
        structured = self._converter.convert(document, task_filename(task))

        options = ExtractionOptions(include_meta=True, include_evidence=False, fail_on_validation=False)
        result = self._extractor.extract(structured, template_json, options)
        if result.errors:
            raise ExtractionValidationError(result.errors)

        raw_result = json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str)
        result_path = save_extraction_result(tenant, attachment, raw_result)
        logger.info("[TASK-%s] Extraction result saved to %s", task.id, result_path)
        return result_path, raw_result

    def _still_claimed(self, task: ExtractionTask | None, claim: ClaimedTask) -> bool:
        if task is None or task.status != TaskStatus.PROCESSING or task.attempts != claim.attempts:
            logger.warning(
                "[TASK-%s] Task changed while processing (status=%s); discarding outcome",
                claim.task_id,
                task.status.value if task else None,
            )
            return False
        return True

    def _finish_success(
        self, db: Session, claim: ClaimedTask, result_path: str, raw_result: str
    ) -> TaskStatus | None:
        now = utcnow()
        task = lock_task(db, claim.task_id)
        if not self._still_claimed(task, claim):
            db.rollback()
            return None

        task.mark_completed(result_path, raw_result, now)
        db.flush()

        email = get_email_with_tenant(db, task.email_id)
        if is_webhook_enabled(db, email.tenant_id):
            event, _ = create_event(
                db,
                tenant_id=email.tenant_id,
                event_type=EVENT_TASK_COMPLETED,
                entity_type=ENTITY_TASK,
                entity_id=task.id,
                payload=build_task_payload(task, email, now),
                max_attempts=self._settings.WEBHOOK_MAX_ATTEMPTS,
            )
            logger.info("[TASK-%s] Webhook event %s recorded", task.id, event.id)
        db.commit()

        logger.info("[TASK-%s] Extraction completed successfully", task.id)
        self._check_completion(claim.email_id)
        return TaskStatus.COMPLETED

    def _finish_failure(self, db: Session, claim: ClaimedTask, error_message: str) -> TaskStatus | None:
        now = utcnow()
        task = lock_task(db, claim.task_id)
        if not self._still_claimed(task, claim):
            db.rollback()
            return None

        task.mark_for_retry(error_message, self._settings.WORKER_RETRY_DELAY_SECONDS, now)
        db.commit()

        if task.status == TaskStatus.FAILED:
            logger.error("[TASK-%s] Max attempts exceeded, marked as FAILED", task.id)
            self._check_completion(claim.email_id)
        else:
            logger.warning(
                "[TASK-%s] Marked for retry (attempts: %d/%d, next retry at %s)",
                task.id,
                task.attempts,
                task.max_attempts,
                task.next_retry_at.isoformat() if task.next_retry_at else None,
            )
        return task.status

    def _check_completion(self, email_id: int) -> None:
        # The task outcome is already committed; the reaper picks up missed completions.
        try:
            self._aggregator.check_email_completion(email_id)
        except Exception:
            logger.exception("[EMAIL-%s] Completion check failed", email_id)

    def _handle_worker_error(self, claim: ClaimedTask, exc: Exception) -> TaskStatus | None:
        """Route a worker-level fault into the task's retry-or-fail path."""
        db = self._session_factory()
        try:
            return self._finish_failure(db, claim, f"Worker error: {describe_error(exc)}")
        except Exception:
            db.rollback()
            logger.exception("[TASK-%s] Failed to record worker error; left for the reaper", claim.task_id)
            return None
        finally:
            db.close()
