"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # tenants
    op.create_table(
        "tenants",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_code", sa.String(50), nullable=False, unique=True),
        sa.Column("tenant_name", sa.Text(), nullable=True),
        sa.Column("contact_email", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("storage_base_path", sa.Text(), nullable=False, server_default="/tmp/process-mails"),
        sa.Column("webhook_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # processed_emails
    op.create_table(
        "processed_emails",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column("from_address", sa.Text(), nullable=True),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("received_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # processed_attachments
    op.create_table(
        "processed_attachments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "email_id", sa.BigInteger(), sa.ForeignKey("processed_emails.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("original_filename", sa.Text(), nullable=True),
        sa.Column("normalized_filename", sa.Text(), nullable=True),
        sa.Column("file_path", sa.Text(), nullable=True),
        sa.Column("mime_type", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # extraction_templates
    op.create_table(
        "extraction_templates",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("template_name", sa.Text(), nullable=True),
        sa.Column("template_path", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_template_tenant_source", "extraction_templates", ["tenant_id", "source", "is_active"])

    # extraction_tasks
    op.create_table(
        "extraction_tasks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "attachment_id",
            sa.BigInteger(),
            sa.ForeignKey("processed_attachments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "email_id", sa.BigInteger(), sa.ForeignKey("processed_emails.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column("pdf_path", sa.Text(), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("result_path", sa.Text(), nullable=True),
        sa.Column("raw_result", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_task_status", "extraction_tasks", ["status"])
    op.create_index("idx_task_email", "extraction_tasks", ["email_id"])
    op.create_index("idx_task_next_retry", "extraction_tasks", ["next_retry_at"])
    op.create_index("idx_task_priority_created", "extraction_tasks", ["priority", "created_at"])

    # webhook_events (transactional outbox)
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("entity_type", "entity_id", "event_type", name="uq_webhook_event_entity"),
    )
    op.create_index("idx_webhook_status_retry", "webhook_events", ["status", "next_retry_at"])
    op.create_index("idx_webhook_tenant", "webhook_events", ["tenant_id"])
    op.create_index("idx_webhook_created", "webhook_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("extraction_tasks")
    op.drop_table("extraction_templates")
    op.drop_table("processed_attachments")
    op.drop_table("processed_emails")
    op.drop_table("tenants")
