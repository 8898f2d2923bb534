from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from extraction_queue.db.base import Base
from extraction_queue.db.types import BigIntPK, JSONType, UTCDateTime, utcnow
from extraction_queue.workers.backoff import next_retry_at


class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class WebhookEventStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


EVENT_TASK_COMPLETED = "extraction_task_completed"
EVENT_EMAIL_COMPLETED = "extraction_email_completed"
ENTITY_TASK = "ExtractionTask"
ENTITY_EMAIL = "ProcessedEmail"


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    tenant_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    storage_base_path: Mapped[str] = mapped_column(Text, default="/tmp/process-mails", nullable=False)
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    emails: Mapped[List[ProcessedEmail]] = relationship(back_populates="tenant")  # type: ignore[name-defined]


class ProcessedEmail(Base):
    __tablename__ = "processed_emails"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), default=_new_correlation_id, nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    # Set exactly once, by the aggregator run that emits the completion event.
    completion_notified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    tenant: Mapped[Tenant] = relationship(back_populates="emails")
    attachments: Mapped[List[ProcessedAttachment]] = relationship(
        back_populates="email", cascade="all, delete-orphan"
    )  # type: ignore[name-defined]
    tasks: Mapped[List[ExtractionTask]] = relationship(back_populates="email")  # type: ignore[name-defined]


class ProcessedAttachment(Base):
    __tablename__ = "processed_attachments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email_id: Mapped[int] = mapped_column(ForeignKey("processed_emails.id", ondelete="CASCADE"), nullable=False)
    original_filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    normalized_filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    email: Mapped[ProcessedEmail] = relationship(back_populates="attachments")


class ExtractionTemplate(Base):
    __tablename__ = "extraction_templates"
    __table_args__ = (Index("idx_template_tenant_source", "tenant_id", "source", "is_active"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    template_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    template_path: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class ExtractionTask(Base):
    __tablename__ = "extraction_tasks"
    __table_args__ = (
        Index("idx_task_status", "status"),
        Index("idx_task_email", "email_id"),
        Index("idx_task_next_retry", "next_retry_at"),
        Index("idx_task_priority_created", "priority", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    attachment_id: Mapped[int] = mapped_column(
        ForeignKey("processed_attachments.id", ondelete="CASCADE"), nullable=False
    )
    email_id: Mapped[int] = mapped_column(ForeignKey("processed_emails.id", ondelete="CASCADE"), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), default=_new_correlation_id, nullable=False)
    pdf_path: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, native_enum=False, length=20), default=TaskStatus.PENDING, nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    result_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    email: Mapped[ProcessedEmail] = relationship(back_populates="tasks")
    attachment: Mapped[ProcessedAttachment] = relationship()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def mark_completed(self, result_path: str | None, raw_result: str | None, now: datetime) -> None:
        self.status = TaskStatus.COMPLETED
        self.result_path = result_path
        self.raw_result = raw_result
        self.error_message = None
        self.next_retry_at = None
        self.completed_at = now

    def mark_failed(self, error_message: str, now: datetime) -> None:
        self.status = TaskStatus.FAILED
        self.error_message = error_message
        self.next_retry_at = None
        self.completed_at = now

    def mark_for_retry(self, error_message: str, base_delay_seconds: int, now: datetime) -> None:
        """Retry-or-fail: schedule the next attempt, or fail once attempts are used up."""
        if self.attempts >= self.max_attempts:
            self.mark_failed(f"Max attempts exceeded: {error_message}", now)
            return
        self.status = TaskStatus.RETRYING
        self.error_message = error_message
        self.next_retry_at = next_retry_at(base_delay_seconds, self.attempts, now)

    def cancel(self, now: datetime) -> None:
        self.status = TaskStatus.CANCELLED
        self.next_retry_at = None
        self.completed_at = now

    def reset_for_retry(self) -> None:
        self.status = TaskStatus.PENDING
        self.attempts = 0
        self.error_message = None
        self.next_retry_at = None
        self.completed_at = None


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "event_type", name="uq_webhook_event_entity"),
        Index("idx_webhook_status_retry", "status", "next_retry_at"),
        Index("idx_webhook_tenant", "tenant_id"),
        Index("idx_webhook_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus, native_enum=False, length=20),
        default=WebhookEventStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def mark_sent(self, now: datetime) -> None:
        self.status = WebhookEventStatus.SENT
        self.sent_at = now
        self.next_retry_at = None

    def mark_delivery_failed(self, error: str, base_delay_seconds: int, now: datetime) -> None:
        self.last_error = error
        if self.attempts >= self.max_attempts:
            self.status = WebhookEventStatus.FAILED
            self.next_retry_at = None
            return
        self.status = WebhookEventStatus.PENDING
        self.next_retry_at = next_retry_at(base_delay_seconds, self.attempts, now)

    def reset_for_retry(self) -> None:
        self.status = WebhookEventStatus.PENDING
        self.attempts = 0
        self.next_retry_at = None
        self.last_error = None
