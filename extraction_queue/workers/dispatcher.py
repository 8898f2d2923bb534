"""Outbox Dispatcher: at-least-once delivery of webhook events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from extraction_queue.core.config import Settings, get_settings
from extraction_queue.core.errors import WebhookDeliveryError
from extraction_queue.db.crud.tenants import get_webhook_url
from extraction_queue.db.crud.webhook_events import claim_pending_events, lock_event
from extraction_queue.db.models import WebhookEventStatus
from extraction_queue.db.session import SessionLocal
from extraction_queue.db.types import utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "extraction-queue-webhooks/1.0"


@dataclass(frozen=True)
class ClaimedEvent:
    event_id: int
    tenant_id: int
    event_type: str
    attempts: int
    payload: dict


@dataclass
class DispatchRunSummary:
    claimed: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0


class OutboxDispatcher:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        client: httpx.Client | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._settings = settings or get_settings()
        self._client = client or httpx.Client(timeout=self._settings.WEBHOOK_TIMEOUT_SECONDS)

    def close(self) -> None:
        self._client.close()

    def run_once(self, now: datetime | None = None) -> DispatchRunSummary:
        summary = DispatchRunSummary()
        if not self._settings.WEBHOOK_ENABLED:
            return summary

        claimed = self._claim(now or self._clock())
        summary.claimed = len(claimed)
        if not claimed:
            return summary

        logger.info("Processing %d pending webhook event(s)", len(claimed))
        for claim in claimed:
            try:
                status = self._deliver(claim)
            except Exception:
                # Left in SENDING; the reaper returns it to the ladder.
                logger.exception("[WEBHOOK-%s] Failed to record delivery outcome", claim.event_id)
                continue
            if status == WebhookEventStatus.SENT:
                summary.sent += 1
            elif status == WebhookEventStatus.PENDING:
                summary.retrying += 1
            elif status == WebhookEventStatus.FAILED:
                summary.failed += 1
        return summary

    def _claim(self, now: datetime) -> list[ClaimedEvent]:
        db = self._session_factory()
        try:
            events = claim_pending_events(db, limit=self._settings.WEBHOOK_BATCH_SIZE, now=now)
            claimed = [ClaimedEvent(e.id, e.tenant_id, e.event_type, e.attempts, dict(e.payload)) for e in events]
            db.commit()
            return claimed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _resolve_url(self, tenant_id: int) -> str | None:
        db = self._session_factory()
        try:
            return get_webhook_url(db, tenant_id)
        finally:
            db.close()

    def send(self, url: str, claim: ClaimedEvent) -> None:
        """POST the stored payload.

        Transport errors, malformed URLs and non-2xx answers all raise
        ``WebhookDeliveryError``.
        """
        headers = {
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": claim.event_type,
            "X-Webhook-Event-Id": str(claim.event_id),
        }
        try:
            resp = self._client.post(url, json=claim.payload, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise WebhookDeliveryError(f"{type(e).__name__}: {e}") from e
        if not resp.is_success:
            raise WebhookDeliveryError(f"Webhook returned status {resp.status_code}")

    def _deliver(self, claim: ClaimedEvent) -> WebhookEventStatus | None:
        error: str | None = None
        try:
            url = self._resolve_url(claim.tenant_id)
            if url is None:
                raise WebhookDeliveryError(f"No webhook URL configured for tenant {claim.tenant_id}")
            logger.info(
                "[WEBHOOK-%s] Sending %s to %s (attempt %d)", claim.event_id, claim.event_type, url, claim.attempts
            )
            self.send(url, claim)
        except WebhookDeliveryError as e:
            error = str(e)

        db = self._session_factory()
        try:
            now = self._clock()
            event = lock_event(db, claim.event_id)
            if event is None or event.status != WebhookEventStatus.SENDING or event.attempts != claim.attempts:
                logger.warning("[WEBHOOK-%s] Event changed during delivery; outcome discarded", claim.event_id)
                db.rollback()
                return None

            if error is None:
                event.mark_sent(now)
                logger.info("[WEBHOOK-%s] Sent successfully", claim.event_id)
            else:
                event.mark_delivery_failed(error, self._settings.WEBHOOK_RETRY_DELAY_SECONDS, now)
                if event.status == WebhookEventStatus.FAILED:
                    logger.error(
                        "[WEBHOOK-%s] Max attempts reached, marked as FAILED: %s", claim.event_id, error
                    )
                else:
                    logger.warning(
                        "[WEBHOOK-%s] Delivery failed (%s), retry %d/%d at %s",
                        claim.event_id,
                        error,
                        event.attempts,
                        event.max_attempts,
                        event.next_retry_at.isoformat() if event.next_retry_at else None,
                    )
            db.commit()
            return event.status
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
