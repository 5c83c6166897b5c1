"""Reminder queue builder.

Reconciles the persisted reminder queue with what should exist given the
current clients, filing assignments, deadlines and resolved templates.

Each queue entry is keyed by (client, filing type, deadline date, step
index). A rebuild computes the desired key set per client and diffs it
against the stored entries:

* desired keys with no stored entry (in any status) are inserted,
* stored ``scheduled``/``rescheduled`` entries whose send date or content
  drifted are updated in place,
* stored ``scheduled``/``pending``/``rescheduled`` entries whose key is no
  longer desired (deadline moved, assignment deactivated, deadline passed)
  are deleted.

Sent, cancelled, failed and records-received entries are never touched, so
they also block their key from being recreated.

Every client is built under its advisory lock and inside its own savepoint:
a failure leaves that client exactly as it was and the batch moves on.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Collection
from dataclasses import dataclass
from datetime import date, timedelta

from taxminder import db
from taxminder.config import Settings, get_settings
from taxminder.engine.deadlines import effective_deadline
from taxminder.engine.templates import resolve_template_for_client
from taxminder.engine.working_days import next_working_day, previous_working_day, utc_today
from taxminder.errors import NotFoundError, TaxminderError
from taxminder.integrations.bank_holidays import load_holidays
from taxminder.models import (
    MUTABLE_STATUSES,
    REWRITABLE_STATUSES,
    BuildResult,
    Client,
    OverrideEntry,
    ReminderQueueEntry,
    ReminderStatus,
    ReminderTemplate,
)

logger = logging.getLogger("taxminder.engine.queue_builder")


@dataclass
class BuildContext:
    """Inputs shared by every client in one build run."""

    templates: dict[str, ReminderTemplate]  # filing_type_id -> active template
    holidays: Collection[str]
    today: date
    shift_send_dates: bool = True
    lock_ttl_seconds: int = 300


def make_context(c, today: date | None = None, holidays: Collection[str] | None = None,
                 settings: Settings | None = None) -> BuildContext:
    settings = settings or get_settings()
    if holidays is None:
        holidays = load_holidays(c, settings)
    templates: dict[str, ReminderTemplate] = {}
    for t in db.list_templates(c, active_only=True):
        templates.setdefault(t.filing_type_id.value, t)
    return BuildContext(
        templates=templates,
        holidays=holidays,
        today=today or utc_today(),
        shift_send_dates=settings.shift_send_dates,
        lock_ttl_seconds=settings.lock_ttl_seconds,
    )


def compute_send_date(deadline: date, delay_days: int, holidays: Collection[str],
                      shift: bool = True) -> date:
    """``deadline - delay_days``, moved onto a working day when ``shift`` is on.

    The forward shift never carries a reminder past its deadline: if it
    would, the reminder goes out on the last working day before instead.
    """
    send = deadline - timedelta(days=delay_days)
    if not shift:
        return send
    shifted = next_working_day(send, holidays)
    if shifted > deadline:
        shifted = previous_working_day(send, holidays)
    return shifted


# ── Desired state ────────────────────────────────────────────────────────────

def desired_entries(c, client: Client, ctx: BuildContext) -> tuple[list[ReminderQueueEntry], int]:
    """Entries that should exist for a client, plus how many filings were skipped."""
    overrides = db.deadline_overrides(c, client.id)
    tpl_overrides: dict[str, list[OverrideEntry]] = defaultdict(list)
    for o in db.list_template_overrides(c, client.id):
        tpl_overrides[o.template_id].append(
            OverrideEntry(step_index=o.step_index, overridden_fields=o.overridden_fields))

    entries: list[ReminderQueueEntry] = []
    skipped = 0
    for a in db.list_assignments(c, client.id, active_only=True):
        ft = a.filing_type_id.value
        if ft in client.records_received_for:
            skipped += 1
            continue

        override = overrides.get((client.id, ft))
        deadline = effective_deadline(
            ft, client.year_end_date, client.vat_stagger_group,
            override.override_date if override else None, ctx.today,
        )
        if deadline is None:
            logger.debug("No deadline for %s/%s (missing client facts)", client.id, ft)
            skipped += 1
            continue
        if deadline < ctx.today:
            # Cycle is over; it waits for rollover rather than new reminders
            skipped += 1
            continue

        template = ctx.templates.get(ft)
        if template is None:
            skipped += 1
            continue

        steps = resolve_template_for_client(template.steps, tpl_overrides.get(template.id, []))
        for i, step in enumerate(steps):
            entries.append(ReminderQueueEntry(
                client_id=client.id,
                filing_type_id=ft,
                template_id=template.id,
                step_index=i,
                deadline_date=deadline,
                send_date=compute_send_date(deadline, step.delay_days, ctx.holidays,
                                            ctx.shift_send_dates),
                subject=step.subject,
                body=step.body,
            ))
    return entries, skipped


# ── Reconciliation ───────────────────────────────────────────────────────────

def _drifted(current: ReminderQueueEntry, wanted: ReminderQueueEntry) -> bool:
    return (current.send_date, current.subject, current.body, current.template_id) != \
        (wanted.send_date, wanted.subject, wanted.body, wanted.template_id)


def reconcile_client(c, client: Client, ctx: BuildContext) -> BuildResult:
    """Diff desired vs stored entries for one client. Caller holds lock and transaction."""
    result = BuildResult(clients=1)
    existing = {e.key: e for e in db.queue_entries(c, client_id=client.id)}
    wanted, result.skipped = desired_entries(c, client, ctx)
    wanted_keys = {e.key for e in wanted}

    for e in wanted:
        current = existing.get(e.key)
        if current is None:
            if db.insert_queue_entry(c, e):
                result.created += 1
            else:
                result.skipped += 1
        elif current.status.value in REWRITABLE_STATUSES and _drifted(current, e):
            db.update_queue_entry(c, current.id, send_date=e.send_date, subject=e.subject,
                                  body=e.body, template_id=e.template_id)
            result.updated += 1
        else:
            result.skipped += 1

    stale = [e.id for key, e in existing.items()
             if key not in wanted_keys and e.status.value in MUTABLE_STATUSES]
    result.retired = db.delete_queue_entries(c, stale)
    return result


def _build_client(c, client: Client, ctx: BuildContext) -> BuildResult:
    with db.lock(c, db.client_lock_name(client.id), ctx.lock_ttl_seconds):
        with db.transaction(c):
            return reconcile_client(c, client, ctx)


def build_reminder_queue(c, today: date | None = None, holidays: Collection[str] | None = None,
                         settings: Settings | None = None) -> BuildResult:
    """Rebuild the queue for every client; per-client failures are logged and collected."""
    ctx = make_context(c, today, holidays, settings)
    result = BuildResult()
    for client in db.list_clients(c):
        if client.reminders_paused:
            result.skipped += 1
            continue
        try:
            result.merge(_build_client(c, client, ctx))
        except Exception as e:
            logger.exception("Queue build failed for client %s", client.id)
            result.errors.append(f"{client.id}: {e}")
    logger.info("Queue build: %d created, %d updated, %d retired, %d skipped, %d errors",
                result.created, result.updated, result.retired, result.skipped, len(result.errors))
    return result


def _require_client(c, client_id: str) -> Client:
    client = db.get_client(c, client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")
    return client


def rebuild_queue_for_client(c, client_id: str, today: date | None = None,
                             holidays: Collection[str] | None = None,
                             settings: Settings | None = None) -> BuildResult:
    """Reconcile one client's entries after its facts, assignments or overrides change."""
    client = _require_client(c, client_id)
    if client.reminders_paused:
        return BuildResult(skipped=1)
    return _build_client(c, client, make_context(c, today, holidays, settings))


# ── Status transitions ───────────────────────────────────────────────────────

def mark_records_received(c, client_id: str, filing_type_id: str,
                          settings: Settings | None = None) -> int:
    """Record that documents arrived; scheduled reminders become ``records_received``.

    Returns the number of reminders moved. Repeating the call is a no-op.
    """
    settings = settings or get_settings()
    _require_client(c, client_id)
    assignment = db.get_assignment(c, client_id, filing_type_id)
    if assignment is None:
        raise TaxminderError(f"Client {client_id} does not have {filing_type_id} assigned")
    if not assignment.is_active:
        raise TaxminderError(f"Filing assignment {filing_type_id} is inactive for {client_id}")

    with db.lock(c, db.client_lock_name(client_id), settings.lock_ttl_seconds):
        with db.transaction(c):
            added = db.add_to_set(c, client_id, "records_received_for", filing_type_id)
            moved = db.set_queue_status(c, client_id, filing_type_id,
                                        ReminderStatus.SCHEDULED.value,
                                        ReminderStatus.RECORDS_RECEIVED.value)
            if added:
                db.log(c, client_id, "records_received", filing_type_id,
                       {"reminders_stopped": moved})
    logger.info("Records received for %s/%s: %d reminders stopped", client_id, filing_type_id, moved)
    return moved


def unmark_records_received(c, client_id: str, filing_type_id: str, today: date | None = None,
                            holidays: Collection[str] | None = None,
                            settings: Settings | None = None) -> BuildResult:
    """Undo a records-received marker and regenerate the schedule from scratch."""
    settings = settings or get_settings()
    client = _require_client(c, client_id)
    ctx = make_context(c, today, holidays, settings)
    with db.lock(c, db.client_lock_name(client_id), ctx.lock_ttl_seconds):
        with db.transaction(c):
            removed = db.remove_from_set(c, client_id, "records_received_for", filing_type_id)
            dropped = db.delete_queue_by_status(c, client_id, filing_type_id,
                                                ReminderStatus.RECORDS_RECEIVED.value)
            if removed:
                db.log(c, client_id, "records_unreceived", filing_type_id,
                       {"entries_dropped": dropped})
            client = _require_client(c, client_id)
            if client.reminders_paused:
                return BuildResult(skipped=1)
            return reconcile_client(c, client, ctx)


def mark_completed(c, client_id: str, filing_type_id: str) -> bool:
    """Accountant has finished the filing; returns False if already marked."""
    _require_client(c, client_id)
    with db.transaction(c):
        added = db.add_to_set(c, client_id, "completed_for", filing_type_id)
        if added:
            db.log(c, client_id, "filing_completed", filing_type_id)
    return added


def unmark_completed(c, client_id: str, filing_type_id: str) -> bool:
    _require_client(c, client_id)
    with db.transaction(c):
        removed = db.remove_from_set(c, client_id, "completed_for", filing_type_id)
        if removed:
            db.log(c, client_id, "filing_uncompleted", filing_type_id)
    return removed


def cancel_reminders_for_received_records(c, client_id: str, filing_type_id: str) -> int:
    """Cancel every scheduled reminder for one client filing."""
    return db.set_queue_status(c, client_id, filing_type_id, ReminderStatus.SCHEDULED.value,
                               ReminderStatus.CANCELLED.value)


def pause_client(c, client_id: str):
    _require_client(c, client_id)
    with db.transaction(c):
        db.update_client(c, client_id, reminders_paused=True)
        db.log(c, client_id, "reminders_paused")


def handle_unpause_client(c, client_id: str, today: date | None = None,
                          holidays: Collection[str] | None = None,
                          settings: Settings | None = None) -> BuildResult:
    """Resume reminders: missed sends are cancelled rather than sent late."""
    _require_client(c, client_id)
    ctx = make_context(c, today, holidays, settings)
    with db.lock(c, db.client_lock_name(client_id), ctx.lock_ttl_seconds):
        with db.transaction(c):
            db.update_client(c, client_id, reminders_paused=False)
            missed = db.set_queue_status(c, client_id, "", ReminderStatus.SCHEDULED.value,
                                         ReminderStatus.CANCELLED.value, send_before=ctx.today)
            db.log(c, client_id, "reminders_resumed", detail={"missed_cancelled": missed})
            return reconcile_client(c, _require_client(c, client_id), ctx)
