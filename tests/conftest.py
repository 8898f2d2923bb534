from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from extraction_queue.core.config import get_settings
from extraction_queue.db import models  # noqa: F401
from extraction_queue.db.base import Base
from extraction_queue.db.crud.tasks import create_task
from extraction_queue.db.models import (
    ExtractionTemplate,
    ProcessedAttachment,
    ProcessedEmail,
    Tenant,
)
from extraction_queue.extract.base import ExtractionResult

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

TEST_ENV = {
    "API_KEY": "test-key",
    "OPENAI_API_KEY": "",
    "SMTP_HOST": "",
    "WORKER_ENABLED": "true",
    "WORKER_BATCH_SIZE": "5",
    "WORKER_RETRY_DELAY_SECONDS": "60",
    "TASK_MAX_ATTEMPTS": "3",
    "STUCK_TASK_THRESHOLD_MINUTES": "30",
    "WEBHOOK_ENABLED": "true",
    "WEBHOOK_BATCH_SIZE": "10",
    "WEBHOOK_MAX_ATTEMPTS": "5",
    "WEBHOOK_RETRY_DELAY_SECONDS": "60",
}


@pytest.fixture()
def settings(monkeypatch):
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture()
def session_factory(tmp_path, settings):
    engine = create_engine(f"sqlite:///{tmp_path / 'queue.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class Seeder:
    """Builds tenants, emails, attachments, templates and tasks on disk and in the DB."""

    def __init__(self, db, root: Path) -> None:
        self.db = db
        self.root = root

    def tenant(self, code: str = "acme", *, webhook_url: str | None = "https://hooks.example.com/acme", **kw) -> Tenant:
        tenant = Tenant(
            tenant_code=code,
            tenant_name=code.title(),
            storage_base_path=str(self.root / "storage"),
            webhook_url=webhook_url,
            **kw,
        )
        self.db.add(tenant)
        self.db.flush()
        return tenant

    def template(self, tenant: Tenant, source: str = "invoice", schema: dict[str, Any] | None = None) -> ExtractionTemplate:
        schema = schema or {
            "type": "object",
            "properties": {"invoice_number": {"type": "string"}, "total": {"type": "number"}},
            "required": ["invoice_number"],
        }
        path = self.root / f"template_{tenant.tenant_code}_{source}.json"
        path.write_text(json.dumps({"name": f"{source} template", "schema": schema}))
        template = ExtractionTemplate(
            tenant_id=tenant.id, source=source, template_name=f"{source} template", template_path=str(path)
        )
        self.db.add(template)
        self.db.flush()
        return template

    def email(self, tenant: Tenant, subject: str = "Invoices for October") -> ProcessedEmail:
        email = ProcessedEmail(
            tenant_id=tenant.id,
            from_address="billing@vendor.example.com",
            subject=subject,
            received_date=NOW,
        )
        self.db.add(email)
        self.db.flush()
        return email

    def task(
        self,
        email: ProcessedEmail,
        filename: str = "invoice.txt",
        *,
        content: str = "Invoice INV-1 total 10.00",
        source: str = "invoice",
        priority: int = 0,
        max_attempts: int = 3,
        created_at: datetime | None = None,
    ):
        doc_dir = self.root / "docs" / str(email.id)
        doc_dir.mkdir(parents=True, exist_ok=True)
        path = doc_dir / filename
        path.write_text(content)
        attachment = ProcessedAttachment(
            email_id=email.id,
            original_filename=filename,
            normalized_filename=filename,
            file_path=str(path),
            mime_type="text/plain",
        )
        self.db.add(attachment)
        self.db.flush()
        task = create_task(
            self.db,
            email_id=email.id,
            attachment_id=attachment.id,
            pdf_path=str(path),
            source=source,
            priority=priority,
            max_attempts=max_attempts,
        )
        if created_at is not None:
            task.created_at = created_at
            self.db.flush()
        return task


@pytest.fixture()
def seed(db, tmp_path):
    return Seeder(db, tmp_path)


class FakeConverter:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.calls: list[str] = []

    def convert(self, document: bytes, filename: str) -> dict[str, Any]:
        from extraction_queue.core.errors import ConversionError

        self.calls.append(filename)
        if filename in self.fail_for:
            raise ConversionError(f"Cannot read {filename}")
        text = document.decode("utf-8")
        return {"filename": filename, "pages": [{"page": 1, "text": text}], "text": text}


class FakeExtractor:
    def __init__(self, validations: list[dict[str, Any]] | None = None) -> None:
        self.validations = validations or []

    def extract(self, structured, template, options) -> ExtractionResult:
        return ExtractionResult(
            data={"invoice_number": "INV-1", "source_text": structured["text"]},
            validations=list(self.validations),
            meta={"template": template.get("name")},
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.completions = []

    def notify(self, completion) -> None:
        self.completions.append(completion)


@pytest.fixture()
def fakes():
    return SimpleNamespace(
        converter=FakeConverter(),
        extractor=FakeExtractor(),
        notifier=RecordingNotifier(),
        Converter=FakeConverter,
        Extractor=FakeExtractor,
    )


@pytest.fixture()
def now():
    return NOW
