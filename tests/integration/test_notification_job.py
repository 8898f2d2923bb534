from extraction_queue.db.models import TaskStatus
from extraction_queue.notify.summary import render_summary
from extraction_queue.workers import jobs


def test_summary_lists_each_file(db, seed, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    ok = seed.task(email, "a.pdf")
    ok.mark_completed("/out/a.json", "{}", now)
    bad = seed.task(email, "b.pdf")
    bad.mark_failed("Max attempts exceeded: ConversionError: unreadable", now)
    db.commit()

    subject, body = render_summary(email, [ok, bad])
    assert subject == "Processed: Invoices for October"
    assert "success rate: 50.00%" in body
    assert "- a.pdf [invoice]: COMPLETED" in body
    assert "- b.pdf [invoice]: FAILED (Max attempts exceeded: ConversionError: unreadable)" in body
    assert email.correlation_id in body


def test_job_logs_summary_without_smtp(monkeypatch, session_factory, db, seed, now, caplog):
    tenant = seed.tenant()
    email = seed.email(tenant)
    seed.task(email).mark_completed("/out/a.json", "{}", now)
    db.commit()
    monkeypatch.setattr(jobs, "SessionLocal", session_factory)

    with caplog.at_level("INFO"):
        result = jobs.send_completion_notification(email.id)

    assert result == {"email_id": email.id, "sent": False, "reason": "smtp-not-configured"}
    assert "billing@vendor.example.com" in caplog.text


def test_job_sends_over_smtp(monkeypatch, session_factory, db, seed, settings, now):
    tenant = seed.tenant()
    email = seed.email(tenant)
    seed.task(email).mark_completed("/out/a.json", "{}", now)
    db.commit()
    monkeypatch.setattr(jobs, "SessionLocal", session_factory)
    settings.SMTP_HOST = "smtp.example.com"
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            assert (host, port) == ("smtp.example.com", 25)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def send_message(self, msg):
            sent.append(msg)

    monkeypatch.setattr(jobs.smtplib, "SMTP", FakeSMTP)

    assert jobs.send_completion_notification(email.id)["sent"] is True
    assert sent[0]["To"] == "billing@vendor.example.com"
    assert sent[0]["Subject"] == "Processed: Invoices for October"


def test_job_for_unknown_email(monkeypatch, session_factory):
    monkeypatch.setattr(jobs, "SessionLocal", session_factory)
    assert jobs.send_completion_notification(404)["reason"] == "email-not-found"
