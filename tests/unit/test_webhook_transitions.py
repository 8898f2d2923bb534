from datetime import timedelta

from extraction_queue.db.models import WebhookEvent, WebhookEventStatus


def _event(**kw) -> WebhookEvent:
    defaults = dict(
        tenant_id=1,
        event_type="extraction_task_completed",
        entity_type="ExtractionTask",
        entity_id=7,
        payload={"task_id": 7},
        status=WebhookEventStatus.SENDING,
        attempts=1,
        max_attempts=5,
    )
    defaults.update(kw)
    return WebhookEvent(**defaults)


def test_failed_delivery_returns_to_pending_with_backoff(now):
    event = _event()
    event.mark_delivery_failed("Webhook returned status 500", 60, now)
    assert event.status == WebhookEventStatus.PENDING
    assert event.next_retry_at == now + timedelta(seconds=60)
    assert event.last_error == "Webhook returned status 500"

    event.attempts = 2
    event.mark_delivery_failed("Webhook returned status 500", 60, now)
    assert event.next_retry_at == now + timedelta(seconds=120)


def test_exhausted_delivery_is_failed_without_retry(now):
    event = _event(attempts=5)
    event.mark_delivery_failed("timeout", 60, now)
    assert event.status == WebhookEventStatus.FAILED
    assert event.next_retry_at is None


def test_sent_clears_retry(now):
    event = _event(next_retry_at=now)
    event.mark_sent(now)
    assert event.status == WebhookEventStatus.SENT
    assert event.sent_at == now
    assert event.next_retry_at is None


def test_reset_for_retry():
    event = _event(status=WebhookEventStatus.FAILED, attempts=5, last_error="boom")
    event.reset_for_retry()
    assert event.status == WebhookEventStatus.PENDING
    assert event.attempts == 0
    assert event.last_error is None
