"""Storage: locks, transactions, keyed inserts, set columns."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from taxminder import db
from taxminder.errors import LockHeldError
from taxminder.models import ClientTemplateOverride, DeadlineOverride, ReminderQueueEntry, StepFields


def test_lock_is_exclusive_until_released(c):
    assert db.acquire_lock(c, "client:acme", 60, "a")
    assert not db.acquire_lock(c, "client:acme", 60, "b")
    db.release_lock(c, "client:acme", "b")  # not the owner
    assert not db.acquire_lock(c, "client:acme", 60, "b")
    db.release_lock(c, "client:acme", "a")
    assert db.acquire_lock(c, "client:acme", 60, "b")


def test_expired_lock_is_reclaimed(c):
    start = datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)
    assert db.acquire_lock(c, "cron_reminders", 60, "a", now=start)
    assert not db.acquire_lock(c, "cron_reminders", 60, "b", now=start + timedelta(seconds=30))
    assert db.acquire_lock(c, "cron_reminders", 60, "b", now=start + timedelta(seconds=61))


def test_lock_context_manager(c):
    with db.lock(c, "client:acme"):
        with pytest.raises(LockHeldError):
            with db.lock(c, "client:acme"):
                pass
    with db.lock(c, "client:acme"):
        pass


def test_transaction_rolls_back_on_error(c, add_client):
    add_client()
    with pytest.raises(RuntimeError):
        with db.transaction(c):
            db.update_client(c, "acme", company_name="Renamed Ltd")
            raise RuntimeError("boom")
    assert db.get_client(c, "acme").company_name == "Acme Ltd"


def test_nested_transaction_keeps_outer_work(c, add_client):
    add_client()
    with db.transaction(c):
        db.update_client(c, "acme", email="new@acme.example")
        with pytest.raises(RuntimeError):
            with db.transaction(c):
                db.update_client(c, "acme", company_name="Renamed Ltd")
                raise RuntimeError("boom")
    client = db.get_client(c, "acme")
    assert client.email == "new@acme.example"
    assert client.company_name == "Acme Ltd"


def test_queue_insert_is_keyed(c):
    e = ReminderQueueEntry(client_id="acme", filing_type_id="vat_return", template_id="tpl-vat-return",
                           step_index=0, deadline_date=date(2026, 6, 7), send_date=date(2026, 5, 18))
    assert db.insert_queue_entry(c, e)
    assert not db.insert_queue_entry(c, e.model_copy(update={"send_date": date(2026, 5, 19)}))
    entries = db.queue_entries(c, client_id="acme")
    assert len(entries) == 1
    assert entries[0].send_date == date(2026, 5, 18)


def test_set_columns_do_not_duplicate(c, add_client):
    add_client()
    assert db.add_to_set(c, "acme", "completed_for", "ct600_filing")
    assert not db.add_to_set(c, "acme", "completed_for", "ct600_filing")
    assert db.remove_from_set(c, "acme", "completed_for", "ct600_filing")
    assert not db.remove_from_set(c, "acme", "completed_for", "ct600_filing")


def test_migrations_are_repeatable(tmp_path):
    path = tmp_path / "m.db"
    with db.conn(path):
        pass
    with db.conn(path) as c:
        cols = {r["name"] for r in c.execute("PRAGMA table_info(reminder_queue)")}
    assert "queued_at" in cols


def test_deadline_override_upsert_and_delete(c, add_client):
    add_client()
    o = DeadlineOverride(client_id="acme", filing_type_id="companies_house",
                         override_date=date(2026, 12, 1), reason="Extension granted")
    db.upsert_deadline_override(c, o)
    db.upsert_deadline_override(c, o.model_copy(update={"override_date": date(2026, 12, 15)}))
    stored = db.deadline_overrides(c, "acme")
    assert stored[("acme", "companies_house")].override_date == date(2026, 12, 15)
    db.delete_deadline_override(c, "acme", "companies_house")
    assert db.deadline_overrides(c, "acme") == {}


def test_template_override_stores_only_set_fields(c, add_client):
    add_client()
    db.upsert_template_override(c, ClientTemplateOverride(
        client_id="acme", template_id="tpl-vat-return", step_index=1,
        overridden_fields=StepFields(subject="Custom subject"),
    ))
    [o] = db.list_template_overrides(c, "acme", "tpl-vat-return")
    assert o.overridden_fields.present() == {"subject": "Custom subject"}
    db.delete_template_override(c, "acme", "tpl-vat-return", 1)
    assert db.list_template_overrides(c, "acme") == []


def test_seeded_templates_are_readable(c):
    t = db.get_template(c, "tpl-self-assessment")
    assert t.filing_type_id.value == "self_assessment"
    assert [s.delay_days for s in t.steps] == [90, 30, 7]
    assert db.get_template(c, "missing") is None
