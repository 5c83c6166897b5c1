"""Statutory deadline calculation engine.

Maps a filing type plus client facts (year-end date, VAT stagger group) to a
concrete deadline date. Every calculator is calendar-exact: shifting onto a
working day is a separate, explicit step taken by the caller.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from taxminder.engine.working_days import utc_today
from taxminder.models import FilingStatus, FilingTypeId


# Quarter-end months for each HMRC VAT stagger group
VAT_STAGGER_MONTHS: dict[int, tuple[int, ...]] = {
    1: (3, 6, 9, 12),
    2: (1, 4, 7, 10),
    3: (2, 5, 8, 11),
}

DEADLINE_DESCRIPTIONS: dict[str, str] = {
    FilingTypeId.CORPORATION_TAX_PAYMENT.value: "Year-end + 9 months + 1 day",
    FilingTypeId.CT600_FILING.value: "Year-end + 12 months",
    FilingTypeId.COMPANIES_HOUSE.value: "Year-end + 9 months",
    FilingTypeId.VAT_RETURN.value: "Quarter-end + 1 month + 7 days",
    FilingTypeId.SELF_ASSESSMENT.value: "31 January following the tax year",
}


def _month_end(d: date) -> date:
    return d + relativedelta(day=31)


def _is_month_end(d: date) -> bool:
    return d == _month_end(d)


# ---------------------------------------------------------------------------
# Per-filing-type rules
# ---------------------------------------------------------------------------

def calculate_corporation_tax_payment(year_end: date) -> date:
    """Corporation Tax payment: year-end + 9 months + 1 day."""
    return year_end + relativedelta(months=9) + timedelta(days=1)


def calculate_ct600_filing(year_end: date) -> date:
    """CT600 return: year-end + 12 months."""
    return year_end + relativedelta(months=12)


def calculate_companies_house_accounts(year_end: date) -> date:
    """Companies House accounts (private company): year-end + 9 months."""
    return year_end + relativedelta(months=9)


def calculate_vat_deadline(quarter_end: date) -> date:
    """VAT return: quarter-end + 1 month + 7 days.

    A quarter ending on the last day of a month stays on the last day of the
    following month before the 7 days are added (30 April -> 31 May -> 7 June).
    """
    one_month = quarter_end + relativedelta(months=1)
    if _is_month_end(quarter_end):
        one_month = _month_end(one_month)
    return one_month + timedelta(days=7)


def calculate_self_assessment_deadline(tax_year_end_year: int) -> date:
    """Self Assessment: 31 January after the tax year ending 5 April of ``tax_year_end_year``."""
    return date(tax_year_end_year + 1, 1, 31)


# ---------------------------------------------------------------------------
# Cycle helpers
# ---------------------------------------------------------------------------

def _quarter_ends(stagger_group: int, years: range) -> list[date]:
    months = VAT_STAGGER_MONTHS[stagger_group]
    return sorted(_month_end(date(y, m, 1)) for y in years for m in months)


def most_recent_quarter_end(stagger_group: int, today: date) -> date:
    """Latest quarter-end for the stagger group on or before ``today``."""
    ends = _quarter_ends(stagger_group, range(today.year - 1, today.year + 1))
    return max(d for d in ends if d <= today)


def next_quarter_end(stagger_group: int, after: date) -> date:
    """First quarter-end for the stagger group strictly after ``after``."""
    ends = _quarter_ends(stagger_group, range(after.year, after.year + 2))
    return min(d for d in ends if d > after)


def relevant_tax_year_end(today: date) -> int:
    """Calendar year in which the most recently completed tax year ended."""
    return today.year if today > date(today.year, 4, 5) else today.year - 1


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def calculate_deadline(
    filing_type_id: str,
    year_end_date: date | None = None,
    vat_stagger_group: int | None = None,
    today: date | None = None,
) -> date | None:
    """Calculated deadline for a filing type, or None when required facts are missing."""
    today = today or utc_today()
    ft = str(getattr(filing_type_id, "value", filing_type_id))

    if ft == FilingTypeId.CORPORATION_TAX_PAYMENT.value:
        return calculate_corporation_tax_payment(year_end_date) if year_end_date else None
    if ft == FilingTypeId.CT600_FILING.value:
        return calculate_ct600_filing(year_end_date) if year_end_date else None
    if ft == FilingTypeId.COMPANIES_HOUSE.value:
        return calculate_companies_house_accounts(year_end_date) if year_end_date else None
    if ft == FilingTypeId.VAT_RETURN.value:
        if vat_stagger_group not in VAT_STAGGER_MONTHS:
            return None
        return calculate_vat_deadline(most_recent_quarter_end(vat_stagger_group, today))
    if ft == FilingTypeId.SELF_ASSESSMENT.value:
        return calculate_self_assessment_deadline(relevant_tax_year_end(today))
    return None


def effective_deadline(
    filing_type_id: str,
    year_end_date: date | None = None,
    vat_stagger_group: int | None = None,
    override_date: date | None = None,
    today: date | None = None,
) -> date | None:
    """Override date when one exists, otherwise the calculated deadline."""
    if override_date is not None:
        return override_date
    return calculate_deadline(filing_type_id, year_end_date, vat_stagger_group, today)


def rollover_deadline(
    filing_type_id: str,
    year_end_date: date | None,
    vat_stagger_group: int | None,
    current_deadline: date,
) -> date:
    """Deadline of the next cycle after ``current_deadline``.

    Raises ValueError when the facts needed to advance the cycle are missing.
    """
    ft = str(getattr(filing_type_id, "value", filing_type_id))

    if ft in (FilingTypeId.CORPORATION_TAX_PAYMENT.value,
              FilingTypeId.CT600_FILING.value,
              FilingTypeId.COMPANIES_HOUSE.value):
        if not year_end_date:
            raise ValueError(f"year_end_date required for {ft} rollover")
        return calculate_deadline(ft, year_end_date + relativedelta(years=1))
    if ft == FilingTypeId.VAT_RETURN.value:
        if vat_stagger_group not in VAT_STAGGER_MONTHS:
            raise ValueError("vat_stagger_group required for vat_return rollover")
        # The deadline sits ~5 weeks after its quarter-end, so the next
        # quarter-end after the deadline is the following period.
        return calculate_vat_deadline(next_quarter_end(vat_stagger_group, current_deadline))
    if ft == FilingTypeId.SELF_ASSESSMENT.value:
        return current_deadline + relativedelta(years=1)
    raise ValueError(f"Unknown filing type: {ft}")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def filing_status(
    filing_type_id: str,
    deadline: date | None,
    records_received_for: Collection[str] = (),
    completed_for: Collection[str] = (),
    today: date | None = None,
) -> FilingStatus:
    """Traffic-light status for one filing of one client."""
    today = today or utc_today()
    if filing_type_id in records_received_for and filing_type_id in completed_for:
        return FilingStatus.COMPLETED
    if filing_type_id in records_received_for:
        return FilingStatus.RECORDS_RECEIVED
    if deadline is None:
        return FilingStatus.NO_DEADLINE
    days_until = (deadline - today).days
    if days_until < 0:
        return FilingStatus.OVERDUE
    if days_until < 7:
        return FilingStatus.CRITICAL
    if days_until < 28:
        return FilingStatus.APPROACHING
    return FilingStatus.SCHEDULED
