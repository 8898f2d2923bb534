"""Extraction task queue: enqueue, exclusive claim, recovery and operator actions."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from extraction_queue.core.errors import InvalidTransitionError, TaskNotFoundError
from extraction_queue.db.models import ExtractionTask, TaskStatus


def _claimable(now: datetime):
    return or_(
        ExtractionTask.status == TaskStatus.PENDING,
        and_(ExtractionTask.status == TaskStatus.RETRYING, ExtractionTask.next_retry_at <= now),
    )


def create_task(
    db: Session,
    *,
    email_id: int,
    attachment_id: int,
    pdf_path: str,
    source: str,
    priority: int = 0,
    max_attempts: int = 3,
) -> ExtractionTask:
    task = ExtractionTask(
        email_id=email_id,
        attachment_id=attachment_id,
        pdf_path=pdf_path,
        source=source,
        priority=priority,
        max_attempts=max_attempts,
        status=TaskStatus.PENDING,
        attempts=0,
    )
    db.add(task)
    db.flush()
    return task


def claim_next_tasks(db: Session, *, limit: int, now: datetime) -> list[ExtractionTask]:
    """Claim up to ``limit`` runnable tasks, marking them PROCESSING.

    Candidates are row-locked with SKIP LOCKED where the backend supports
    it, and each one is taken with a conditional UPDATE, so a task is only
    returned to the caller whose UPDATE actually moved it to PROCESSING.
    The caller commits.
    """
    candidate_ids = db.scalars(
        select(ExtractionTask.id)
        .where(_claimable(now))
        .order_by(ExtractionTask.priority.desc(), ExtractionTask.created_at.asc(), ExtractionTask.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()

    claimed: list[int] = []
    for task_id in candidate_ids:
        result = db.execute(
            update(ExtractionTask)
            .where(ExtractionTask.id == task_id, _claimable(now))
            .values(
                status=TaskStatus.PROCESSING,
                attempts=ExtractionTask.attempts + 1,
                started_at=now,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(task_id)

    if not claimed:
        return []
    return list(
        db.scalars(
            select(ExtractionTask)
            .where(ExtractionTask.id.in_(claimed))
            .order_by(ExtractionTask.priority.desc(), ExtractionTask.created_at.asc(), ExtractionTask.id.asc())
            .execution_options(populate_existing=True)
        ).all()
    )


def lock_task(db: Session, task_id: int) -> Optional[ExtractionTask]:
    return db.scalars(
        select(ExtractionTask)
        .where(ExtractionTask.id == task_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one_or_none()


def get_task(db: Session, task_id: int) -> Optional[ExtractionTask]:
    return db.get(ExtractionTask, task_id)


def list_tasks_for_email(db: Session, email_id: int) -> list[ExtractionTask]:
    return (
        db.query(ExtractionTask)
        .filter(ExtractionTask.email_id == email_id)
        .order_by(ExtractionTask.created_at.asc(), ExtractionTask.id.asc())
        .populate_existing()
        .all()
    )


def list_tasks(
    db: Session,
    *,
    status: TaskStatus | None = None,
    email_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ExtractionTask]:
    q = db.query(ExtractionTask)
    if status is not None:
        q = q.filter(ExtractionTask.status == status)
    if email_id is not None:
        q = q.filter(ExtractionTask.email_id == email_id)
    return q.order_by(ExtractionTask.created_at.desc(), ExtractionTask.id.desc()).limit(limit).offset(offset).all()


def find_stuck_tasks(db: Session, *, started_before: datetime) -> list[ExtractionTask]:
    return list(
        db.scalars(
            select(ExtractionTask)
            .where(ExtractionTask.status == TaskStatus.PROCESSING, ExtractionTask.started_at < started_before)
            .order_by(ExtractionTask.started_at.asc())
            .with_for_update(skip_locked=True)
        ).all()
    )


def retry_task(db: Session, task_id: int) -> ExtractionTask:
    """Operator retry: a FAILED task goes back to PENDING with a fresh attempt budget."""
    task = lock_task(db, task_id)
    if task is None:
        raise TaskNotFoundError(f"Task not found: {task_id}")
    if task.status != TaskStatus.FAILED:
        raise InvalidTransitionError(f"Task {task_id} is not in FAILED state, cannot retry")
    task.reset_for_retry()
    db.flush()
    return task


def cancel_task(db: Session, task_id: int, now: datetime) -> ExtractionTask:
    task = lock_task(db, task_id)
    if task is None:
        raise TaskNotFoundError(f"Task not found: {task_id}")
    if task.is_terminal:
        raise InvalidTransitionError(f"Task {task_id} is already in terminal state: {task.status.value}")
    task.cancel(now)
    db.flush()
    return task


def count_by_status(db: Session) -> dict[str, int]:
    rows = db.query(ExtractionTask.status, func.count(ExtractionTask.id)).group_by(ExtractionTask.status).all()
    counts = {s.value.lower(): 0 for s in TaskStatus}
    for status, count in rows:
        counts[status.value.lower()] = int(count)
    return counts
