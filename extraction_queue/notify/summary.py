"""Plain-text completion summary sent to the email's sender."""

from __future__ import annotations

from typing import Sequence

from extraction_queue.db.models import ExtractionTask, ProcessedEmail, TaskStatus
from extraction_queue.workers.payloads import completion_stats, task_filename


def render_summary(email: ProcessedEmail, tasks: Sequence[ExtractionTask]) -> tuple[str, str]:
    stats = completion_stats(tasks)
    subject = f"Processed: {email.subject or '(no subject)'}"
    lines = [
        f"Your email \"{email.subject or '(no subject)'}\" has been processed.",
        "",
        f"Files: {stats.total}  extracted: {stats.completed}  failed: {stats.failed}  "
        f"cancelled: {stats.cancelled}  success rate: {stats.success_rate:.2f}%",
        "",
    ]
    for task in tasks:
        line = f"- {task_filename(task)} [{task.source}]: {task.status.value}"
        if task.status == TaskStatus.FAILED and task.error_message:
            line += f" ({task.error_message})"
        lines.append(line)
    lines += ["", f"Reference: {email.correlation_id}"]
    return subject, "\n".join(lines)
