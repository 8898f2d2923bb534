"""Tenant-owned lookups consumed by the worker and dispatcher."""

from __future__ import annotations

from sqlalchemy.orm import Session

from extraction_queue.core.config import get_settings
from extraction_queue.db.models import ExtractionTemplate, Tenant


def find_active_template(db: Session, tenant_id: int, source: str) -> ExtractionTemplate | None:
    return (
        db.query(ExtractionTemplate)
        .filter(
            ExtractionTemplate.tenant_id == tenant_id,
            ExtractionTemplate.source == source,
            ExtractionTemplate.is_active.is_(True),
        )
        .order_by(ExtractionTemplate.id.desc())
        .first()
    )


def get_webhook_url(db: Session, tenant_id: int) -> str | None:
    tenant = db.get(Tenant, tenant_id)
    if tenant is None or not tenant.webhook_url or not tenant.webhook_url.strip():
        return None
    return tenant.webhook_url.strip()


def is_webhook_enabled(db: Session, tenant_id: int) -> bool:
    """Global switch, tenant switch and a configured URL must all hold."""
    if not get_settings().WEBHOOK_ENABLED:
        return False
    tenant = db.get(Tenant, tenant_id)
    if tenant is None or not tenant.webhook_enabled:
        return False
    return get_webhook_url(db, tenant_id) is not None
