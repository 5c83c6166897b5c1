"""Rollover detection and execution.

A filing is ready to roll over once its records have been received and its
deadline has passed. Rolling over advances the client to the next cycle:

1. annual filings move ``year_end_date`` forward one year,
2. the filing type is cleared from ``records_received_for`` and ``completed_for``,
3. the cycle's remaining scheduled reminders are deleted,
4. the client's queue is rebuilt for the new cycle,
5. an audit record captures the year-end change.

Steps 1-3 commit together or not at all. A failed rebuild does not undo them;
it is reported on the result as ``queue_error``.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Collection, Iterable
from datetime import date

from dateutil.relativedelta import relativedelta

from taxminder import db
from taxminder.config import Settings, get_settings
from taxminder.engine.deadlines import effective_deadline, rollover_deadline
from taxminder.engine.queue_builder import rebuild_queue_for_client
from taxminder.engine.working_days import utc_today
from taxminder.errors import NotFoundError, RolloverError
from taxminder.integrations.bank_holidays import load_holidays
from taxminder.models import (
    ANNUAL_FILING_TYPES,
    BulkRolloverResult,
    ReminderStatus,
    RolloverCandidate,
    RolloverResult,
)

logger = logging.getLogger("taxminder.engine.rollover")


def is_annual_filing(filing_type_id: str) -> bool:
    return filing_type_id in ANNUAL_FILING_TYPES


# ── Detection ────────────────────────────────────────────────────────────────

def get_rollover_candidates(c, today: date | None = None) -> list[RolloverCandidate]:
    """Received filings whose deadline has passed, most overdue first."""
    today = today or utc_today()
    overrides = db.deadline_overrides(c)
    active = {(a.client_id, a.filing_type_id.value) for a in db.list_assignments(c)}

    candidates: list[RolloverCandidate] = []
    for client in db.list_clients(c, include_paused=False):
        for ft in client.records_received_for:
            if (client.id, ft) not in active:
                continue
            override = overrides.get((client.id, ft))
            deadline = effective_deadline(
                ft, client.year_end_date, client.vat_stagger_group,
                override.override_date if override else None, today,
            )
            if deadline is None or deadline >= today:
                continue
            try:
                next_deadline = rollover_deadline(ft, client.year_end_date,
                                                  client.vat_stagger_group, deadline)
            except ValueError:
                next_deadline = None
            candidates.append(RolloverCandidate(
                client_id=client.id,
                client_name=client.company_name,
                filing_type_id=ft,
                deadline_date=deadline,
                days_overdue=(today - deadline).days,
                next_deadline=next_deadline,
            ))
    return sorted(candidates, key=lambda x: x.days_overdue, reverse=True)


def get_rollover_summary(c, today: date | None = None) -> dict[str, int]:
    """Count of rollover candidates per filing type."""
    return dict(Counter(x.filing_type_id for x in get_rollover_candidates(c, today)))


# ── Execution ────────────────────────────────────────────────────────────────

def _advance_cycle(c, client_id: str, filing_type_id: str) -> tuple[date | None, date | None, int]:
    """Steps 1-3 of a rollover. Caller provides the transaction."""
    client = db.get_client(c, client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")

    old_year_end = new_year_end = None
    if is_annual_filing(filing_type_id):
        if client.year_end_date is None:
            raise RolloverError(
                f"Client {client_id} has no year_end_date for annual filing rollover")
        old_year_end = client.year_end_date
        new_year_end = old_year_end + relativedelta(years=1)
        db.update_client(c, client_id, year_end_date=new_year_end)

    db.update_client(
        c, client_id,
        records_received_for=[f for f in client.records_received_for if f != filing_type_id],
        completed_for=[f for f in client.completed_for if f != filing_type_id],
    )
    deleted = db.delete_queue_by_status(c, client_id, filing_type_id,
                                        ReminderStatus.SCHEDULED.value)
    return old_year_end, new_year_end, deleted


def rollover_filing(c, client_id: str, filing_type_id: str, today: date | None = None,
                    holidays: Collection[str] | None = None,
                    settings: Settings | None = None) -> RolloverResult:
    """Advance one client filing to its next cycle."""
    settings = settings or get_settings()
    try:
        with db.lock(c, db.client_lock_name(client_id), settings.lock_ttl_seconds):
            with db.transaction(c):
                old_year_end, new_year_end, deleted = _advance_cycle(c, client_id, filing_type_id)
    except Exception as e:
        logger.warning("Rollover failed for %s/%s: %s", client_id, filing_type_id, e)
        return RolloverResult(success=False, client_id=client_id,
                              filing_type_id=filing_type_id, error=str(e))

    result = RolloverResult(success=True, client_id=client_id, filing_type_id=filing_type_id,
                            old_year_end=old_year_end, new_year_end=new_year_end)
    try:
        rebuild_queue_for_client(c, client_id, today, holidays, settings)
    except Exception as e:
        logger.exception("Queue rebuild after rollover failed for %s", client_id)
        result.queue_error = str(e)

    db.log(c, client_id, "rollover_filing", filing_type_id, {
        "old_year_end": old_year_end,
        "new_year_end": new_year_end,
        "is_annual": is_annual_filing(filing_type_id),
        "scheduled_deleted": deleted,
        "queue_rebuilt": result.queue_error is None,
    })
    logger.info("Rolled over %s/%s (year end %s -> %s)",
                client_id, filing_type_id, old_year_end, new_year_end)
    return result


def bulk_rollover(c, items: Iterable[tuple[str, str] | RolloverCandidate],
                  today: date | None = None, holidays: Collection[str] | None = None,
                  settings: Settings | None = None) -> BulkRolloverResult:
    """Roll over each (client_id, filing_type_id) independently."""
    settings = settings or get_settings()
    if holidays is None:
        holidays = load_holidays(c, settings)
    out = BulkRolloverResult()
    for item in items:
        if isinstance(item, RolloverCandidate):
            client_id, filing_type_id = item.client_id, item.filing_type_id
        else:
            client_id, filing_type_id = item
        out.results.append(rollover_filing(c, client_id, filing_type_id, today, holidays, settings))
    return out
