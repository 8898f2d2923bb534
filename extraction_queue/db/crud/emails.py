"""Processed email access helpers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session, joinedload

from extraction_queue.db.models import TERMINAL_TASK_STATUSES, ExtractionTask, ProcessedEmail


def get_email_with_tenant(db: Session, email_id: int) -> ProcessedEmail | None:
    return (
        db.query(ProcessedEmail)
        .options(joinedload(ProcessedEmail.tenant))
        .filter(ProcessedEmail.id == email_id)
        .one_or_none()
    )


def claim_completion(db: Session, email_id: int, now: datetime) -> bool:
    """Stamp the email as completion-notified; True only for the first caller."""
    result = db.execute(
        update(ProcessedEmail)
        .where(ProcessedEmail.id == email_id, ProcessedEmail.completion_notified_at.is_(None))
        .values(completion_notified_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def find_unnotified_finished_email_ids(db: Session, *, limit: int = 100) -> list[int]:
    """Emails whose tasks are all terminal but whose completion was never emitted."""
    has_tasks = exists().where(ExtractionTask.email_id == ProcessedEmail.id)
    has_open_tasks = exists().where(
        ExtractionTask.email_id == ProcessedEmail.id,
        ExtractionTask.status.not_in(TERMINAL_TASK_STATUSES),
    )
    return list(
        db.scalars(
            select(ProcessedEmail.id)
            .where(ProcessedEmail.completion_notified_at.is_(None), has_tasks, ~has_open_tasks)
            .order_by(ProcessedEmail.id.asc())
            .limit(limit)
        ).all()
    )
