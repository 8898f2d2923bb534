"""Enqueue extraction tasks from local .eml files.

A development stand-in for the mail intake: every attachment of every
message becomes one PENDING extraction task for the given tenant.
"""

from __future__ import annotations

import logging
from email import message_from_bytes
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import Iterator

from sqlalchemy.orm import Session

from extraction_queue.core.config import get_settings
from extraction_queue.db.crud.tasks import create_task
from extraction_queue.db.models import ProcessedAttachment, ProcessedEmail, Tenant

logger = logging.getLogger(__name__)


def _safe_filename(name: str | None) -> str:
    if not name:
        return "attachment"
    keep = "-_.() "
    sanitized = "".join(c for c in name if c.isalnum() or c in keep)
    return sanitized.strip() or "attachment"


def _walk_attachments(msg: Message) -> Iterator[tuple[str, str | None, bytes]]:
    for part in msg.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename()
        if not filename:
            continue
        payload = part.get_payload(decode=True)
        if not payload:
            continue
        yield filename, part.get_content_type() or None, payload


def _received_date(msg: Message):
    date_hdr = msg.get("Date")
    if not date_hdr:
        return None
    try:
        return parsedate_to_datetime(date_hdr)
    except (TypeError, ValueError):
        logger.warning("Unparseable Date header: %r", date_hdr)
        return None


def ingest_message(
    db: Session,
    tenant: Tenant,
    msg: Message,
    *,
    source: str,
    priority: int = 0,
) -> tuple[ProcessedEmail, int]:
    """Persist one message and enqueue a task per attachment. Caller commits."""
    email = ProcessedEmail(
        tenant_id=tenant.id,
        from_address=parseaddr(msg.get("From") or "")[1] or None,
        subject=msg.get("Subject"),
        received_date=_received_date(msg),
    )
    db.add(email)
    db.flush()

    base_dir = Path(tenant.storage_base_path, tenant.tenant_code, "process", "attachments", str(email.id))
    base_dir.mkdir(parents=True, exist_ok=True)

    max_attempts = get_settings().TASK_MAX_ATTEMPTS
    created = 0
    for filename, mime_type, payload in _walk_attachments(msg):
        safe_name = _safe_filename(filename)
        local_path = base_dir / safe_name
        local_path.write_bytes(payload)

        attachment = ProcessedAttachment(
            email_id=email.id,
            original_filename=filename,
            normalized_filename=safe_name,
            file_path=str(local_path),
            mime_type=mime_type,
        )
        db.add(attachment)
        db.flush()

        create_task(
            db,
            email_id=email.id,
            attachment_id=attachment.id,
            pdf_path=str(local_path),
            source=source,
            priority=priority,
            max_attempts=max_attempts,
        )
        created += 1
    return email, created


def ingest_eml_files(
    db: Session,
    *,
    tenant_code: str,
    directory: str = "sample",
    pattern: str = "*.eml",
    source: str = "default",
    priority: int = 0,
) -> dict[str, int]:
    """Process .eml files from `directory`, one committed email per file.

    Returns counts: {"emails": X, "tasks": Y}
    """
    tenant = db.query(Tenant).filter_by(tenant_code=tenant_code).one_or_none()
    if tenant is None:
        raise ValueError(f"Unknown tenant: {tenant_code}")

    saved_emails = 0
    created_tasks = 0
    for f in sorted(Path(directory).glob(pattern)):
        try:
            raw = f.read_bytes()
        except OSError as e:
            logger.warning("Skipping %s: %s", f, e)
            continue

        email, created = ingest_message(db, tenant, message_from_bytes(raw), source=source, priority=priority)
        if created == 0:
            logger.info("No attachments in %s", f.name)
        db.commit()
        logger.info("Ingested %s as email %s with %d task(s)", f.name, email.id, created)
        saved_emails += 1
        created_tasks += created

    return {"emails": saved_emails, "tasks": created_tasks}
