from datetime import datetime
from typing import Any

from pydantic import BaseModel

from extraction_queue.db.models import ExtractionTask, TaskStatus, WebhookEvent, WebhookEventStatus


class TaskResponse(BaseModel):
    id: int
    email_id: int
    attachment_id: int
    correlation_id: str
    pdf_path: str
    source: str
    status: TaskStatus
    priority: int
    attempts: int
    max_attempts: int
    result_path: str | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None

    @classmethod
    def from_model(cls, t: ExtractionTask) -> "TaskResponse":
        return cls(
            id=int(t.id),
            email_id=int(t.email_id),
            attachment_id=int(t.attachment_id),
            correlation_id=t.correlation_id,
            pdf_path=t.pdf_path,
            source=t.source,
            status=t.status,
            priority=t.priority,
            attempts=t.attempts,
            max_attempts=t.max_attempts,
            result_path=t.result_path,
            error_message=t.error_message,
            created_at=t.created_at,
            started_at=t.started_at,
            completed_at=t.completed_at,
            next_retry_at=t.next_retry_at,
        )


class TaskStats(BaseModel):
    pending: int = 0
    processing: int = 0
    retrying: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0


class WebhookEventResponse(BaseModel):
    id: int
    tenant_id: int
    event_type: str
    entity_type: str
    entity_id: int
    status: WebhookEventStatus
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None
    payload: dict[str, Any] | None = None

    @classmethod
    def from_model(cls, e: WebhookEvent, *, include_payload: bool = False) -> "WebhookEventResponse":
        return cls(
            id=int(e.id),
            tenant_id=int(e.tenant_id),
            event_type=e.event_type,
            entity_type=e.entity_type,
            entity_id=int(e.entity_id),
            status=e.status,
            attempts=e.attempts,
            max_attempts=e.max_attempts,
            next_retry_at=e.next_retry_at,
            last_error=e.last_error,
            last_attempt_at=e.last_attempt_at,
            sent_at=e.sent_at,
            created_at=e.created_at,
            updated_at=e.updated_at,
            payload=e.payload if include_payload else None,
        )


class WebhookEventPage(BaseModel):
    items: list[WebhookEventResponse]
    total: int
    limit: int
    offset: int


class WebhookStats(BaseModel):
    pending: int = 0
    sending: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0


class RetryAllResponse(BaseModel):
    retried: int
