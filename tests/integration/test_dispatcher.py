import json
from datetime import timedelta

import httpx
import pytest

from extraction_queue.db.crud.webhook_events import claim_pending_events, create_event
from extraction_queue.db.models import Tenant, WebhookEvent, WebhookEventStatus
from extraction_queue.workers.dispatcher import OutboxDispatcher


class Endpoint:
    """Scripted webhook receiver."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status < 400})


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture()
def outbox(db, seed):
    tenant = seed.tenant()
    event, _ = create_event(
        db,
        tenant_id=tenant.id,
        event_type="extraction_email_completed",
        entity_type="ProcessedEmail",
        entity_id=99,
        payload={"event_type": "extraction_email_completed", "email_id": 99, "success_rate": 66.67},
    )
    db.commit()
    return event


def _dispatcher(session_factory, settings, handler, clock):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OutboxDispatcher(session_factory=session_factory, client=client, settings=settings, clock=clock)


def _reload(db, event):
    db.expire_all()
    return db.get(WebhookEvent, event.id)


def test_server_errors_back_off_until_delivery_succeeds(session_factory, db, settings, outbox, now):
    endpoint = Endpoint([500, 500, 500, 200])
    clock = Clock(now)
    dispatcher = _dispatcher(session_factory, settings, endpoint, clock)

    for expected_delay in (60, 120, 240):
        assert dispatcher.run_once().retrying == 1
        event = _reload(db, outbox)
        assert event.status == WebhookEventStatus.PENDING
        assert event.last_error == "Webhook returned status 500"
        assert event.next_retry_at == clock.now + timedelta(seconds=expected_delay)
        # Not due yet: nothing is claimed.
        assert dispatcher.run_once().claimed == 0
        clock.now = event.next_retry_at

    assert dispatcher.run_once().sent == 1
    event = _reload(db, outbox)
    assert event.status == WebhookEventStatus.SENT
    assert event.attempts == 4
    assert event.sent_at == clock.now
    assert event.next_retry_at is None
    assert len(endpoint.requests) == 4

    request = endpoint.requests[-1]
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/acme"
    assert request.headers["X-Webhook-Event"] == "extraction_email_completed"
    assert request.headers["X-Webhook-Event-Id"] == str(outbox.id)
    assert request.headers["User-Agent"].startswith("extraction-queue-webhooks")
    assert json.loads(request.content) == outbox.payload

    # Delivered events are never picked up again.
    clock.now += timedelta(days=1)
    assert dispatcher.run_once().claimed == 0


def test_exhausted_event_is_failed(session_factory, db, settings, outbox, now):
    clock = Clock(now)
    dispatcher = _dispatcher(session_factory, settings, Endpoint([503] * 5), clock)

    for _ in range(5):
        dispatcher.run_once()
        clock.now += timedelta(days=1)

    event = _reload(db, outbox)
    assert event.status == WebhookEventStatus.FAILED
    assert event.attempts == 5
    assert event.next_retry_at is None
    assert event.last_error == "Webhook returned status 503"
    assert dispatcher.run_once().claimed == 0


def test_missing_url_is_a_delivery_failure(session_factory, db, settings, outbox, now):
    db.get(Tenant, outbox.tenant_id).webhook_url = "   "
    db.commit()

    endpoint = Endpoint([])
    _dispatcher(session_factory, settings, endpoint, Clock(now)).run_once()

    event = _reload(db, outbox)
    assert event.status == WebhookEventStatus.PENDING
    assert "No webhook URL configured" in event.last_error
    assert endpoint.requests == []


def test_transport_error_is_a_delivery_failure(session_factory, db, settings, outbox, now):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    _dispatcher(session_factory, settings, refuse, Clock(now)).run_once()

    event = _reload(db, outbox)
    assert event.status == WebhookEventStatus.PENDING
    assert event.last_error.startswith("ConnectError:")


def test_globally_disabled_webhooks_leave_the_outbox_alone(session_factory, db, settings, outbox, now):
    settings.WEBHOOK_ENABLED = False
    endpoint = Endpoint([])
    assert _dispatcher(session_factory, settings, endpoint, Clock(now)).run_once().claimed == 0
    assert _reload(db, outbox).status == WebhookEventStatus.PENDING


def test_retried_event_is_claimed_without_a_pending_retry_time(session_factory, db, settings, outbox, now):
    clock = Clock(now)
    _dispatcher(session_factory, settings, Endpoint([500]), clock).run_once()
    event = _reload(db, outbox)
    assert event.next_retry_at == now + timedelta(seconds=60)

    claimed = claim_pending_events(db, limit=10, now=event.next_retry_at)
    db.commit()

    assert [e.id for e in claimed] == [outbox.id]
    event = _reload(db, outbox)
    assert event.status == WebhookEventStatus.SENDING
    assert event.attempts == 2
    assert event.next_retry_at is None


def test_malformed_url_follows_the_retry_ladder(session_factory, db, settings, outbox, now):
    db.get(Tenant, outbox.tenant_id).webhook_url = "https://hooks.example.com/\tacme"
    db.commit()

    endpoint = Endpoint([])
    summary = _dispatcher(session_factory, settings, endpoint, Clock(now)).run_once()

    assert (summary.claimed, summary.retrying) == (1, 1)
    event = _reload(db, outbox)
    assert event.status == WebhookEventStatus.PENDING
    assert event.last_error.startswith("InvalidURL:")
    assert event.next_retry_at == now + timedelta(seconds=60)
    assert endpoint.requests == []
