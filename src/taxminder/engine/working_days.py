"""Working-day arithmetic over a fixed UTC calendar.

Holiday sets hold ISO date strings (``YYYY-MM-DD``) so they can be built
straight from the GOV.UK feed or a database column.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import date, datetime, timedelta, timezone


def utc_today() -> date:
    """Today's calendar date in UTC."""
    return datetime.now(timezone.utc).date()


def as_utc_date(value: date | datetime) -> date:
    """Normalise a date or datetime to a UTC calendar date."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def is_working_day(d: date | datetime, holidays: Collection[str]) -> bool:
    """False on Saturday, Sunday, or any date whose ISO string is in ``holidays``."""
    d = as_utc_date(d)
    if d.weekday() >= 5:
        return False
    return d.isoformat() not in holidays


def next_working_day(d: date | datetime, holidays: Collection[str]) -> date:
    """Return ``d`` if it is a working day, else the first working day after it."""
    current = as_utc_date(d)
    while not is_working_day(current, holidays):
        current += timedelta(days=1)
    return current


def previous_working_day(d: date | datetime, holidays: Collection[str]) -> date:
    """Return ``d`` if it is a working day, else the last working day before it."""
    current = as_utc_date(d)
    while not is_working_day(current, holidays):
        current -= timedelta(days=1)
    return current
