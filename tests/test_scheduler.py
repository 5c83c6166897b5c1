"""Daily reminder run."""

from __future__ import annotations

from datetime import date, datetime, timezone

from taxminder import db
from taxminder.engine.scheduler import BATCH_LOCK, due_for_sending, in_send_window, process_reminders

from .conftest import HOLIDAYS

TODAY = date(2026, 10, 19)
NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


def _run(c, settings, today=TODAY, now=NOW):
    return process_reminders(c, today, now, HOLIDAYS, settings)


def test_due_reminders_become_pending_with_rendered_content(c, settings, add_client):
    add_client()
    result = _run(c, settings)
    assert result.errors == []
    # Two Companies House steps and two CT payment steps are due by 19 Oct
    assert result.queued == 4
    assert result.build.created == 7

    due = due_for_sending(c)
    assert len(due) == 4
    subjects = {e.resolved_subject for e in due}
    assert "Final reminder: annual accounts due 31/10/2026" in subjects
    assert "Follow-up: Corporation Tax Payment due 01/11/2026" in subjects
    for e in due:
        assert "{{" not in e.resolved_body
        assert "Acme Ltd" in e.resolved_body
        assert e.queued_at is not None


def test_second_run_queues_nothing_new(c, settings, add_client):
    add_client()
    _run(c, settings)
    again = _run(c, settings)
    assert again.queued == 0
    assert again.build.created == 0
    assert len(due_for_sending(c)) == 4


def test_sender_write_back(c, settings, add_client):
    add_client()
    _run(c, settings)
    first = due_for_sending(c)[0]
    db.update_queue_status(c, first.id, "sent")
    assert first.id not in {e.id for e in due_for_sending(c)}


def test_run_skipped_when_batch_lock_held(c, settings, add_client):
    add_client()
    assert db.acquire_lock(c, BATCH_LOCK, 60, "other-run")
    result = _run(c, settings)
    assert result.queued == 0
    assert result.build is None
    assert "already held" in result.errors[0]


def test_send_hour_gate(c, settings, add_client):
    add_client()
    settings.send_hour = 9
    # 07:00 UTC is 08:00 in London during BST
    early = _run(c, settings, now=datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc))
    assert early.skipped_wrong_hour
    assert db.queue_entries(c) == []

    on_time = _run(c, settings)
    assert not on_time.skipped_wrong_hour
    assert on_time.queued == 4


def test_in_send_window_without_hour():
    from taxminder.config import Settings
    assert in_send_window(NOW, Settings(send_hour=None))


def test_auto_rollover(c, settings, add_client):
    add_client(year_end_date=date(2025, 1, 31))
    db.update_client(c, "acme", records_received_for=["corporation_tax_payment"])
    settings.auto_rollover = True
    result = _run(c, settings)
    assert result.rolled_over == 1
    assert db.get_client(c, "acme").year_end_date == date(2026, 1, 31)
