"""
Recurring Schedule Arithmetic

Pure functions, no I/O. Callers pass `today` explicitly in tests; in
production it defaults to the local calendar date.

DESIGN DECISION: Monthly, quarterly and yearly steps are calendar aware and
anchored to the start date's day of month. A template starting on the 31st
lands on the last day of shorter months and returns to the 31st when the
month allows it (31 Jan -> 29 Feb -> 31 Mar), instead of drifting to the
28th forever.
"""

import calendar
from datetime import date, timedelta
from typing import Optional

from fintrack.models.entities import Frequency


MAX_PENDING_OCCURRENCES = 1000

_DAY_STEPS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}

_MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}


def _add_months(base: date, months: int, anchor_day: Optional[int] = None) -> date:
    total_month = (base.month - 1) + months
    year = base.year + total_month // 12
    month = (total_month % 12) + 1
    target_day = anchor_day or base.day
    target_day = min(target_day, calendar.monthrange(year, month)[1])
    return date(year, month, target_day)


def add_period(
    base: date,
    frequency: Frequency,
    anchor_day: Optional[int] = None,
) -> date:
    """
    Advance a date by one period.

    Args:
        base: Date to advance from
        frequency: Period length
        anchor_day: Preferred day of month for month-based periods

    Returns:
        The next date
    """
    frequency = Frequency(frequency)
    if frequency in _DAY_STEPS:
        return base + timedelta(days=_DAY_STEPS[frequency])
    return _add_months(base, _MONTH_STEPS[frequency], anchor_day)


def next_occurrence(
    start_date: date,
    frequency: Frequency,
    last_generated: Optional[date] = None,
) -> date:
    """
    The occurrence following the later of start_date and last_generated.

    Example:
        next_occurrence(date(2024, 1, 31), Frequency.MONTHLY) == date(2024, 2, 29)
    """
    base = start_date
    if last_generated is not None and last_generated > start_date:
        base = last_generated
    return add_period(base, frequency, anchor_day=start_date.day)


def is_due(
    next_occurrence: date,
    end_date: Optional[date] = None,
    is_active: bool = True,
    today: Optional[date] = None,
) -> bool:
    """Due iff active, next_occurrence <= today and the end date has not passed."""
    if not is_active:
        return False
    today = today or date.today()
    if next_occurrence > today:
        return False
    if end_date is not None and end_date < today:
        return False
    return True


def pending_occurrences(
    start_date: date,
    frequency: Frequency,
    last_generated: Optional[date] = None,
    end_date: Optional[date] = None,
    today: Optional[date] = None,
) -> list[date]:
    """
    Every occurrence not yet generated, up to today.

    Stops at the first date after today or after end_date, and never returns
    more than MAX_PENDING_OCCURRENCES dates.
    """
    today = today or date.today()
    dates: list[date] = []
    current = last_generated or start_date

    while len(dates) < MAX_PENDING_OCCURRENCES:
        upcoming = next_occurrence(start_date, frequency, current)
        if upcoming > today:
            break
        if end_date is not None and upcoming > end_date:
            break
        dates.append(upcoming)
        current = upcoming

    return dates
