from extraction_queue.db.models import ProcessedEmail, TaskStatus, WebhookEvent
from extraction_queue.workers.aggregator import CompletionAggregator


def _finish(task, status, now, raw_result='{"data": {}}'):
    task.attempts = task.max_attempts if status == TaskStatus.FAILED else 1
    if status == TaskStatus.COMPLETED:
        task.mark_completed("/out/r.json", raw_result, now)
    elif status == TaskStatus.FAILED:
        task.mark_failed("Max attempts exceeded: ConversionError: unreadable", now)
    else:
        task.cancel(now)


def _email_events(db):
    return db.query(WebhookEvent).filter(WebhookEvent.event_type == "extraction_email_completed").all()


def test_partial_success_is_reported_once(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    tasks = [seed.task(email, f"f{i}.txt") for i in range(3)]
    _finish(tasks[0], TaskStatus.COMPLETED, now)
    _finish(tasks[1], TaskStatus.COMPLETED, now)
    _finish(tasks[2], TaskStatus.FAILED, now)
    db.commit()

    aggregator = CompletionAggregator(session_factory=session_factory, notifiers=[fakes.notifier], settings=settings)
    completion = aggregator.check_email_completion(email.id)

    assert completion is not None
    assert completion.stats.total == 3
    assert completion.stats.success_rate == 66.67
    assert completion.task_ids == tuple(t.id for t in tasks)

    events = _email_events(db)
    assert len(events) == 1
    payload = events[0].payload
    assert (payload["total_files"], payload["extracted_files"], payload["failed_files"]) == (3, 2, 1)
    assert payload["success_rate"] == 66.67
    assert completion.webhook_event_id == events[0].id

    assert aggregator.check_email_completion(email.id) is None
    assert aggregator.check_email_completion(email.id) is None
    db.expire_all()
    assert len(_email_events(db)) == 1
    assert len(fakes.notifier.completions) == 1


def test_waits_while_any_sibling_is_open(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    done = seed.task(email, "a.txt")
    open_task = seed.task(email, "b.txt")
    _finish(done, TaskStatus.COMPLETED, now)
    open_task.status = TaskStatus.RETRYING
    db.commit()

    aggregator = CompletionAggregator(session_factory=session_factory, notifiers=[fakes.notifier], settings=settings)
    assert aggregator.check_email_completion(email.id) is None
    assert _email_events(db) == []
    db.expire_all()
    assert db.get(ProcessedEmail, email.id).completion_notified_at is None


def test_cancelled_tasks_count_as_terminal(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    a, b = seed.task(email, "a.txt"), seed.task(email, "b.txt")
    _finish(a, TaskStatus.COMPLETED, now)
    _finish(b, TaskStatus.CANCELLED, now)
    db.commit()

    completion = CompletionAggregator(session_factory=session_factory, settings=settings).check_email_completion(
        email.id
    )
    assert completion.stats.cancelled == 1
    assert _email_events(db)[0].payload["cancelled_files"] == 1


def test_notifiers_run_without_webhook(session_factory, db, seed, settings, fakes, now):
    tenant = seed.tenant(webhook_enabled=False)
    email = seed.email(tenant)
    _finish(seed.task(email), TaskStatus.COMPLETED, now)
    db.commit()

    class BrokenNotifier:
        def notify(self, completion):
            raise RuntimeError("smtp down")

    aggregator = CompletionAggregator(
        session_factory=session_factory, notifiers=[BrokenNotifier(), fakes.notifier], settings=settings
    )
    completion = aggregator.check_email_completion(email.id)

    assert completion.webhook_event_id is None
    assert _email_events(db) == []
    assert fakes.notifier.completions == [completion]
