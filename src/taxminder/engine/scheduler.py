"""Daily reminder run.

``process_reminders`` is the single entry point a cron job calls. It
reconciles the queue, promotes today's reminders to ``pending`` with their
placeholders filled in, and optionally rolls finished filings forward. The
external sender then works through ``due_for_sending``.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from taxminder import db
from taxminder.catalog import filing_type_name
from taxminder.config import Settings, get_settings
from taxminder.engine.queue_builder import build_reminder_queue
from taxminder.engine.rollover import bulk_rollover, get_rollover_candidates
from taxminder.engine.templates import substitute_variables
from taxminder.engine.working_days import as_utc_date
from taxminder.errors import LockHeldError
from taxminder.integrations.bank_holidays import load_holidays
from taxminder.models import ProcessResult, ReminderQueueEntry, ReminderStatus

logger = logging.getLogger("taxminder.engine.scheduler")

BATCH_LOCK = "cron_reminders"


def in_send_window(now: datetime, settings: Settings) -> bool:
    """True when ``now`` falls in the configured local send hour (or none is set)."""
    if not settings.has_send_window():
        return True
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(settings.timezone)).hour == settings.send_hour


def _render(entry: ReminderQueueEntry, client_name: str, accountant_name: str,
            today: date) -> tuple[str, str]:
    context = {
        "client_name": client_name,
        "deadline": entry.deadline_date,
        "filing_type": filing_type_name(entry.filing_type_id),
        "accountant_name": accountant_name,
    }
    return (substitute_variables(entry.subject, context, today),
            substitute_variables(entry.body, context, today))


def queue_due_reminders(c, today: date, settings: Settings) -> tuple[int, list[str]]:
    """Move today's scheduled reminders to ``pending`` with rendered content."""
    queued, errors = 0, []
    names: dict[str, str] = {}
    for e in db.queue_entries(c, statuses=[ReminderStatus.SCHEDULED.value]):
        if e.send_date > today or e.deadline_date < today:
            continue
        if e.client_id not in names:
            client = db.get_client(c, e.client_id)
            if client is None:
                errors.append(f"{e.client_id}: client not found for queue entry {e.id}")
                continue
            if client.reminders_paused:
                continue
            names[e.client_id] = client.company_name
        subject, body = _render(e, names[e.client_id], settings.accountant_name, today)
        db.update_queue_entry(c, e.id, status=ReminderStatus.PENDING, resolved_subject=subject,
                              resolved_body=body, queued_at=datetime.now(timezone.utc))
        queued += 1
    return queued, errors


def process_reminders(c, today: date | None = None, now: datetime | None = None,
                      holidays: Collection[str] | None = None,
                      settings: Settings | None = None) -> ProcessResult:
    """Build the queue, mark due reminders pending and optionally auto-rollover."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    today = today or as_utc_date(now)
    result = ProcessResult()

    try:
        with db.lock(c, BATCH_LOCK, settings.lock_ttl_seconds):
            if not in_send_window(now, settings):
                logger.info("Outside send hour %s (%s); nothing to do",
                            settings.send_hour, settings.timezone)
                result.skipped_wrong_hour = True
                return result

            if holidays is None:
                holidays = load_holidays(c, settings)

            result.build = build_reminder_queue(c, today, holidays, settings)
            result.errors.extend(result.build.errors)
            result.skipped = result.build.skipped

            result.queued, errors = queue_due_reminders(c, today, settings)
            result.errors.extend(errors)

            if settings.auto_rollover:
                candidates = get_rollover_candidates(c, today)
                if candidates:
                    bulk = bulk_rollover(c, candidates, today, holidays, settings)
                    result.rolled_over = bulk.success_count
                    result.errors.extend(
                        f"{r.client_id}/{r.filing_type_id}: {r.error}"
                        for r in bulk.results if not r.success
                    )
    except LockHeldError as e:
        logger.warning("Reminder run skipped: %s", e)
        result.errors.append(str(e))
        return result

    logger.info("Reminder run: %d queued, %d rolled over, %d errors",
                result.queued, result.rolled_over, len(result.errors))
    return result


def due_for_sending(c) -> list[ReminderQueueEntry]:
    """Pending reminders with resolved content, oldest send date first."""
    return [e for e in db.queue_entries(c, statuses=[ReminderStatus.PENDING.value])
            if e.resolved_subject is not None and e.resolved_body is not None]
