from datetime import timedelta

from extraction_queue.db.models import ExtractionTask, ProcessedEmail, TaskStatus, WebhookEvent, WebhookEventStatus
from extraction_queue.workers.aggregator import CompletionAggregator
from extraction_queue.workers.reaper import StuckTaskReaper


def _reaper(session_factory, settings, fakes):
    aggregator = CompletionAggregator(session_factory=session_factory, notifiers=[fakes.notifier], settings=settings)
    return StuckTaskReaper(aggregator=aggregator, session_factory=session_factory, settings=settings)


def _stick(task, now, attempts):
    task.status = TaskStatus.PROCESSING
    task.attempts = attempts
    task.started_at = now - timedelta(minutes=45)


def test_stuck_task_is_returned_to_the_retry_ladder(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    stuck = seed.task(email, "stuck.txt")
    fresh = seed.task(email, "fresh.txt")
    _stick(stuck, now, attempts=1)
    fresh.status = TaskStatus.PROCESSING
    fresh.attempts = 1
    fresh.started_at = now - timedelta(minutes=10)
    db.commit()

    summary = _reaper(session_factory, settings, fakes).run_once(now)

    assert (summary.tasks_retried, summary.tasks_failed) == (1, 0)
    db.expire_all()
    recovered = db.get(ExtractionTask, stuck.id)
    assert recovered.status == TaskStatus.RETRYING
    assert recovered.error_message == "Recovered stuck task: PROCESSING for more than 30 minutes"
    assert recovered.next_retry_at == now + timedelta(seconds=60)
    assert db.get(ExtractionTask, fresh.id).status == TaskStatus.PROCESSING
    assert fakes.notifier.completions == []


def test_exhausted_stuck_task_fails_and_completes_the_email(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    stuck = seed.task(email)
    _stick(stuck, now, attempts=3)
    db.commit()

    summary = _reaper(session_factory, settings, fakes).run_once(now)

    assert summary.tasks_failed == 1
    db.expire_all()
    failed = db.get(ExtractionTask, stuck.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_message.startswith("Max attempts exceeded: Recovered stuck task")
    assert failed.next_retry_at is None
    assert len(fakes.notifier.completions) == 1
    assert fakes.notifier.completions[0].stats.failed == 1


def test_stale_sending_event_is_recovered(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant()
    stale = WebhookEvent(
        tenant_id=tenant.id,
        event_type="extraction_task_completed",
        entity_type="ExtractionTask",
        entity_id=1,
        payload={},
        status=WebhookEventStatus.SENDING,
        attempts=1,
        max_attempts=5,
        last_attempt_at=now - timedelta(hours=1),
    )
    db.add(stale)
    db.commit()

    summary = _reaper(session_factory, settings, fakes).run_once(now)

    assert summary.events_recovered == 1
    db.expire_all()
    event = db.get(WebhookEvent, stale.id)
    assert event.status == WebhookEventStatus.PENDING
    assert event.next_retry_at == now + timedelta(seconds=60)
    assert event.last_error.startswith("Delivery interrupted")


def test_finished_email_without_completion_is_completed(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    done = seed.task(email, "done.txt")
    cancelled = seed.task(email, "cancelled.txt")
    done.mark_completed("/out/done.json", "{}", now)
    cancelled.cancel(now)
    open_email = seed.email(tenant, subject="Still running")
    seed.task(open_email)
    db.commit()

    reaper = _reaper(session_factory, settings, fakes)
    summary = reaper.run_once(now)

    assert summary.emails_completed == 1
    assert [c.email_id for c in fakes.notifier.completions] == [email.id]
    db.expire_all()
    assert db.get(ProcessedEmail, email.id).completion_notified_at is not None
    assert db.get(ProcessedEmail, open_email.id).completion_notified_at is None
    events = db.query(WebhookEvent).filter(WebhookEvent.event_type == "extraction_email_completed").all()
    assert [e.entity_id for e in events] == [email.id]

    assert reaper.run_once(now).emails_completed == 0
    assert len(fakes.notifier.completions) == 1
