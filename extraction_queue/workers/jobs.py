"""RQ job definitions for background processing."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from extraction_queue.core.config import get_settings
from extraction_queue.db.crud.emails import get_email_with_tenant
from extraction_queue.db.crud.tasks import list_tasks_for_email
from extraction_queue.db.session import SessionLocal
from extraction_queue.notify.summary import render_summary

logger = logging.getLogger(__name__)


def send_completion_notification(email_id: int) -> dict:
    """Background job: tell the sender how their attachments were processed."""
    settings = get_settings()
    db = SessionLocal()
    try:
        email = get_email_with_tenant(db, email_id)
        if email is None:
            return {"email_id": email_id, "sent": False, "reason": "email-not-found"}
        tasks = list_tasks_for_email(db, email_id)
        subject, body = render_summary(email, tasks)
    finally:
        db.close()

    if not email.from_address:
        return {"email_id": email_id, "sent": False, "reason": "no-recipient"}
    if not settings.SMTP_HOST:
        logger.info("[EMAIL-%s] SMTP not configured; summary for %s:\n%s", email_id, email.from_address, body)
        return {"email_id": email_id, "sent": False, "reason": "smtp-not-configured"}

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.SMTP_FROM
    msg["To"] = email.from_address
    msg.set_content(body)
    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("[EMAIL-%s] Failed to send completion notification: %s", email_id, e)
        return {"email_id": email_id, "sent": False, "reason": str(e)}
    logger.info("[EMAIL-%s] Completion notification sent to %s", email_id, email.from_address)
    return {"email_id": email_id, "sent": True}
