"""Webhook wire format.

Payloads are rendered once, when the outbox row is written, from rows
already flushed in the same transaction. The dispatcher posts them as-is.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from extraction_queue.db.models import (
    EVENT_EMAIL_COMPLETED,
    EVENT_TASK_COMPLETED,
    ExtractionTask,
    ProcessedEmail,
    TaskStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionStats:
    completed: int
    failed: int
    cancelled: int
    total: int

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed * 100.0 / self.total, 2)


def completion_stats(tasks: Sequence[ExtractionTask]) -> CompletionStats:
    return CompletionStats(
        completed=sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        failed=sum(1 for t in tasks if t.status == TaskStatus.FAILED),
        cancelled=sum(1 for t in tasks if t.status == TaskStatus.CANCELLED),
        total=len(tasks),
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def task_filename(task: ExtractionTask) -> str:
    attachment = task.attachment
    if attachment is not None and (attachment.original_filename or attachment.normalized_filename):
        return attachment.original_filename or attachment.normalized_filename  # type: ignore[return-value]
    return os.path.basename(task.pdf_path)


def _extracted_data(task: ExtractionTask) -> Any:
    if not task.raw_result:
        return None
    try:
        return json.loads(task.raw_result)
    except ValueError:
        logger.warning("Failed to parse extraction result for task %s", task.id)
        return None


def task_to_payload(task: ExtractionTask) -> dict[str, Any]:
    item: dict[str, Any] = {
        "task_id": task.id,
        "correlation_id": task.correlation_id,
        "filename": task_filename(task),
        "source": task.source,
        "status": task.status.value,
        "attempts": task.attempts,
    }
    if task.status == TaskStatus.COMPLETED:
        item["extracted_data"] = _extracted_data(task)
    else:
        item["error_message"] = task.error_message
    return item


def build_task_payload(task: ExtractionTask, email: ProcessedEmail, now: datetime) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event_type": EVENT_TASK_COMPLETED,
        "timestamp": now.isoformat(),
        "email_id": email.id,
        "correlation_id": email.correlation_id,
        "task_correlation_id": task.correlation_id,
        "sender_email": email.from_address,
        "subject": email.subject,
        "tenant_code": email.tenant.tenant_code if email.tenant else None,
        "task_id": task.id,
        "filename": task_filename(task),
        "source": task.source,
        "status": task.status.value,
        "attempts": task.attempts,
        "result_path": task.result_path,
        "extracted_data": _extracted_data(task),
    }
    return payload


def build_email_payload(
    email: ProcessedEmail, tasks: Sequence[ExtractionTask], now: datetime
) -> dict[str, Any]:
    stats = completion_stats(tasks)
    payload: dict[str, Any] = {
        "event_type": EVENT_EMAIL_COMPLETED,
        "timestamp": now.isoformat(),
        "email_id": email.id,
        "correlation_id": email.correlation_id,
        "sender_email": email.from_address,
        "subject": email.subject,
        "received_date": _iso(email.received_date),
        "tenant_code": email.tenant.tenant_code if email.tenant else None,
        "total_files": stats.total,
        "extracted_files": stats.completed,
        "failed_files": stats.failed,
        "cancelled_files": stats.cancelled,
        "success_rate": stats.success_rate,
        "extractions": [task_to_payload(t) for t in tasks],
    }
    logger.info(
        "Webhook payload built: email=%s total=%d completed=%d failed=%d cancelled=%d success_rate=%.2f%%",
        email.id,
        stats.total,
        stats.completed,
        stats.failed,
        stats.cancelled,
        stats.success_rate,
    )
    return payload
