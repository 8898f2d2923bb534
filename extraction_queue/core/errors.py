"""Failure taxonomy for the extraction queue and webhook outbox.

Task-level failures (routing, conversion, extraction) all feed the task
retry ladder; the class only shapes the stored error message. Delivery
failures feed the outbox ladder.
"""

from __future__ import annotations


class ExtractionQueueError(Exception):
    """Base exception for the package."""


class TemplateNotFoundError(ExtractionQueueError):
    """No active extraction template for (tenant, source)."""

    def __init__(self, tenant_id: int, source: str) -> None:
        super().__init__(f"No active template found for tenant={tenant_id}, source={source}")
        self.tenant_id = tenant_id
        self.source = source


class ConversionError(ExtractionQueueError):
    """Document could not be turned into structured data."""


class FieldExtractionError(ExtractionQueueError):
    """Structured data could not be mapped to template fields."""


class ExtractionValidationError(FieldExtractionError):
    """Extraction succeeded but reported validation errors."""

    def __init__(self, validations: list[dict]) -> None:
        details = " ".join(
            f"[{v.get('path', '')}/{v.get('type', '')}: {v.get('message', '')}]" for v in validations
        )
        super().__init__(f"Extraction validation failed: {details}".strip())
        self.validations = validations


class WebhookDeliveryError(ExtractionQueueError):
    """Webhook POST did not succeed."""


class TaskNotFoundError(ExtractionQueueError):
    pass


class WebhookEventNotFoundError(ExtractionQueueError):
    pass


class InvalidTransitionError(ExtractionQueueError):
    """Requested state change is not legal from the current status."""
