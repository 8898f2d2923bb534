"""Webhook outbox: idempotent insert, exclusive claim and operator redelivery."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from extraction_queue.core.errors import InvalidTransitionError, WebhookEventNotFoundError
from extraction_queue.db.models import WebhookEvent, WebhookEventStatus


def _claimable(now: datetime):
    return (WebhookEvent.status == WebhookEventStatus.PENDING) & or_(
        WebhookEvent.next_retry_at.is_(None), WebhookEvent.next_retry_at <= now
    )


def find_event(db: Session, *, entity_type: str, entity_id: int, event_type: str) -> Optional[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(
            WebhookEvent.entity_type == entity_type,
            WebhookEvent.entity_id == entity_id,
            WebhookEvent.event_type == event_type,
        )
        .one_or_none()
    )


def create_event(
    db: Session,
    *,
    tenant_id: int,
    event_type: str,
    entity_type: str,
    entity_id: int,
    payload: dict,
    max_attempts: int = 5,
) -> tuple[WebhookEvent, bool]:
    """Insert an outbox row in the caller's transaction.

    Returns ``(event, created)``. An event already recorded for the same
    (entity_type, entity_id, event_type) is returned untouched; the unique
    constraint backs this check against concurrent inserts.
    """
    existing = find_event(db, entity_type=entity_type, entity_id=entity_id, event_type=event_type)
    if existing is not None:
        return existing, False
    event = WebhookEvent(
        tenant_id=tenant_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
        status=WebhookEventStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
    )
    db.add(event)
    db.flush()
    return event, True


def claim_pending_events(db: Session, *, limit: int, now: datetime) -> list[WebhookEvent]:
    """Claim due PENDING events, moving them to SENDING. The caller commits."""
    candidate_ids = db.scalars(
        select(WebhookEvent.id)
        .where(_claimable(now))
        .order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()

    claimed: list[int] = []
    for event_id in candidate_ids:
        result = db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id, _claimable(now))
            .values(
                status=WebhookEventStatus.SENDING,
                attempts=WebhookEvent.attempts + 1,
                last_attempt_at=now,
                next_retry_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(event_id)

    if not claimed:
        return []
    return list(
        db.scalars(
            select(WebhookEvent)
            .where(WebhookEvent.id.in_(claimed))
            .order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
            .execution_options(populate_existing=True)
        ).all()
    )


def lock_event(db: Session, event_id: int) -> Optional[WebhookEvent]:
    return db.scalars(
        select(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one_or_none()


def find_stale_sending_events(db: Session, *, attempted_before: datetime) -> list[WebhookEvent]:
    return list(
        db.scalars(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.SENDING,
                WebhookEvent.last_attempt_at < attempted_before,
            )
            .with_for_update(skip_locked=True)
        ).all()
    )


def get_event(db: Session, event_id: int) -> Optional[WebhookEvent]:
    return db.get(WebhookEvent, event_id)


def list_events(
    db: Session,
    *,
    status: WebhookEventStatus | None = None,
    tenant_id: int | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[WebhookEvent], int]:
    q = db.query(WebhookEvent)
    if status is not None:
        q = q.filter(WebhookEvent.status == status)
    if tenant_id is not None:
        q = q.filter(WebhookEvent.tenant_id == tenant_id)
    total = q.count()
    items = q.order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc()).limit(limit).offset(offset).all()
    return items, total


def list_events_for_entity(db: Session, entity_type: str, entity_id: int) -> list[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(WebhookEvent.entity_type == entity_type, WebhookEvent.entity_id == entity_id)
        .order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
        .all()
    )


def retry_event(db: Session, event_id: int) -> WebhookEvent:
    """Operator redelivery of a FAILED event."""
    event = lock_event(db, event_id)
    if event is None:
        raise WebhookEventNotFoundError(f"Webhook event not found: {event_id}")
    if event.status != WebhookEventStatus.FAILED:
        raise InvalidTransitionError(
            f"Webhook event {event_id} is {event.status.value}, only FAILED events can be retried"
        )
    event.reset_for_retry()
    db.flush()
    return event


def retry_all_failed(db: Session) -> int:
    failed = list(
        db.scalars(
            select(WebhookEvent)
            .where(WebhookEvent.status == WebhookEventStatus.FAILED)
            .with_for_update(skip_locked=True)
        ).all()
    )
    for event in failed:
        event.reset_for_retry()
    db.flush()
    return len(failed)


def count_by_status(db: Session, tenant_id: int | None = None) -> dict[str, int]:
    q = db.query(WebhookEvent.status, func.count(WebhookEvent.id))
    if tenant_id is not None:
        q = q.filter(WebhookEvent.tenant_id == tenant_id)
    counts = {s.value.lower(): 0 for s in WebhookEventStatus}
    for status, count in q.group_by(WebhookEvent.status).all():
        counts[status.value.lower()] = int(count)
    return counts
