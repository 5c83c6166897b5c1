"""Reminder queue reconciliation and status transitions."""

from __future__ import annotations

from datetime import date

import pytest

from taxminder import db
from taxminder.engine.queue_builder import (
    build_reminder_queue,
    compute_send_date,
    cancel_reminders_for_received_records,
    handle_unpause_client,
    mark_completed,
    mark_records_received,
    pause_client,
    rebuild_queue_for_client,
    unmark_completed,
    unmark_records_received,
)
from taxminder.engine.working_days import is_working_day
from taxminder.errors import NotFoundError, TaxminderError
from taxminder.models import ClientTemplateOverride, DeadlineOverride, StepFields

from .conftest import HOLIDAYS

TODAY = date(2026, 6, 1)


def _build(c, settings, today=TODAY):
    return build_reminder_queue(c, today, HOLIDAYS, settings)


def _by_status(c, client_id="acme"):
    out: dict[str, int] = {}
    for e in db.queue_entries(c, client_id=client_id):
        out[e.status.value] = out.get(e.status.value, 0) + 1
    return out


# ── Send dates ───────────────────────────────────────────────────────────────

def test_send_date_moves_forward_onto_working_day():
    # 1 Nov 2026 (Sunday) - 7 = 25 Oct (Sunday)
    assert compute_send_date(date(2026, 11, 1), 7, HOLIDAYS) == date(2026, 10, 26)


def test_send_date_never_passes_deadline():
    # 27 Dec 2025 is a Saturday; the day before is Boxing Day
    assert compute_send_date(date(2025, 12, 27), 1, HOLIDAYS) == date(2025, 12, 24)


def test_send_date_unshifted():
    assert compute_send_date(date(2026, 11, 1), 7, HOLIDAYS, shift=False) == date(2026, 10, 25)


# ── Build ────────────────────────────────────────────────────────────────────

def test_build_creates_one_entry_per_step(c, settings, add_client):
    add_client()
    result = _build(c, settings)
    # CT payment 3 steps, CT600 2 steps, Companies House 2 steps
    assert result.created == 7
    assert result.errors == []
    entries = db.queue_entries(c, client_id="acme")
    assert len(entries) == 7
    for e in entries:
        assert e.status.value == "scheduled"
        assert e.send_date <= e.deadline_date
        assert is_working_day(e.send_date, HOLIDAYS)


def test_rebuild_is_idempotent(c, settings, add_client):
    add_client()
    _build(c, settings)
    second = _build(c, settings)
    assert (second.created, second.updated, second.retired) == (0, 0, 0)
    assert len(db.queue_entries(c, client_id="acme")) == 7


def test_client_without_year_end_gets_nothing(c, settings, add_client):
    add_client(year_end_date=None)
    result = _build(c, settings)
    assert result.created == 0
    assert result.skipped == 3


def test_template_override_updates_in_place(c, settings, add_client):
    add_client()
    _build(c, settings)
    db.upsert_template_override(c, ClientTemplateOverride(
        client_id="acme", template_id="tpl-companies-house", step_index=0,
        overridden_fields=StepFields(delay_days=45),
    ))
    result = rebuild_queue_for_client(c, "acme", TODAY, HOLIDAYS, settings)
    assert (result.created, result.updated, result.retired) == (0, 1, 0)
    ch = db.queue_entries(c, client_id="acme", filing_type_id="companies_house")
    assert ch[0].send_date == date(2026, 9, 16)


def test_deadline_override_retires_old_cycle_entries(c, settings, add_client):
    add_client()
    _build(c, settings)
    db.upsert_deadline_override(c, DeadlineOverride(
        client_id="acme", filing_type_id="companies_house", override_date=date(2026, 12, 1)))
    result = rebuild_queue_for_client(c, "acme", TODAY, HOLIDAYS, settings)
    assert result.retired == 2
    assert result.created == 2
    ch = db.queue_entries(c, client_id="acme", filing_type_id="companies_house")
    assert {e.deadline_date for e in ch} == {date(2026, 12, 1)}


def test_passed_deadlines_are_not_rescheduled(c, settings, add_client):
    add_client()
    _build(c, settings)
    # Companies House (31 Oct) and CT payment (1 Nov) are both over
    result = _build(c, settings, today=date(2026, 11, 5))
    assert result.retired == 5
    assert result.created == 0
    assert {e.filing_type_id for e in db.queue_entries(c, client_id="acme")} == {"ct600_filing"}


def test_paused_client_is_skipped(c, settings, add_client):
    add_client()
    pause_client(c, "acme")
    result = _build(c, settings)
    assert result.created == 0
    assert result.skipped == 1
    assert db.queue_entries(c, client_id="acme") == []


def test_failing_client_does_not_stop_batch(c, settings, add_client):
    add_client()
    add_client("broken", company_name="Broken Ltd")
    c.execute("INSERT INTO template_overrides(client_id, template_id, step_index, overridden_fields)"
              " VALUES('broken', 'tpl-companies-house', 0, 'not json')")
    result = _build(c, settings)
    assert len(result.errors) == 1
    assert result.errors[0].startswith("broken:")
    assert result.created == 7
    assert db.queue_entries(c, client_id="broken") == []


def test_rebuild_unknown_client(c, settings):
    with pytest.raises(NotFoundError):
        rebuild_queue_for_client(c, "ghost", TODAY, HOLIDAYS, settings)


# ── Records received ─────────────────────────────────────────────────────────

def test_records_received_stops_reminders(c, settings, add_client):
    add_client()
    _build(c, settings)
    moved = mark_records_received(c, "acme", "companies_house", settings)
    assert moved == 2
    assert db.get_client(c, "acme").records_received_for == ["companies_house"]

    again = _build(c, settings)
    assert again.created == 0
    assert _by_status(c) == {"scheduled": 5, "records_received": 2}


def test_records_received_is_idempotent(c, settings, add_client):
    add_client()
    _build(c, settings)
    mark_records_received(c, "acme", "companies_house", settings)
    assert mark_records_received(c, "acme", "companies_house", settings) == 0
    actions = [r["action"] for r in db.audit_rows(c, "acme")]
    assert actions.count("records_received") == 1


def test_records_received_requires_assignment(c, settings, add_client):
    add_client()
    with pytest.raises(TaxminderError):
        mark_records_received(c, "acme", "self_assessment", settings)


def test_unmark_records_received_reschedules(c, settings, add_client):
    add_client()
    _build(c, settings)
    mark_records_received(c, "acme", "companies_house", settings)
    result = unmark_records_received(c, "acme", "companies_house", TODAY, HOLIDAYS, settings)
    assert result.created == 2
    assert _by_status(c) == {"scheduled": 7}
    assert db.get_client(c, "acme").records_received_for == []


def test_mark_completed(c, add_client):
    add_client()
    assert mark_completed(c, "acme", "ct600_filing")
    assert not mark_completed(c, "acme", "ct600_filing")
    assert db.get_client(c, "acme").completed_for == ["ct600_filing"]


# ── Pause / resume ───────────────────────────────────────────────────────────

def test_unpause_cancels_missed_reminders(c, settings, add_client):
    add_client()
    _build(c, settings)
    pause_client(c, "acme")
    # CH step 1 (1 Sep) and CT payment step 1 (2 Sep) were missed while paused
    result = handle_unpause_client(c, "acme", date(2026, 9, 10), HOLIDAYS, settings)
    assert result.created == 0
    assert _by_status(c) == {"scheduled": 5, "cancelled": 2}
    assert not db.get_client(c, "acme").reminders_paused
    resumed = [r for r in db.audit_rows(c, "acme") if r["action"] == "reminders_resumed"]
    assert resumed[0]["detail"] == {"missed_cancelled": 2}


def test_unmark_completed(c, add_client):
    add_client()
    mark_completed(c, "acme", "ct600_filing")
    assert unmark_completed(c, "acme", "ct600_filing")
    assert not unmark_completed(c, "acme", "ct600_filing")
    assert db.get_client(c, "acme").completed_for == []


def test_cancel_reminders_for_one_filing(c, settings, add_client):
    add_client()
    _build(c, settings)
    assert cancel_reminders_for_received_records(c, "acme", "ct600_filing") == 2
    assert _by_status(c) == {"scheduled": 5, "cancelled": 2}
