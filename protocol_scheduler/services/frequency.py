# protocol_scheduler/services/frequency.py
"""
Frequency rule expansion.

`expand(rule, anchor, horizon)` turns a recurrence rule into the ascending,
duplicate-free list of calendar dates on which an activity is due, between
`anchor` and `horizon` inclusive. It is a pure function of its inputs, which
is what lets the materializer re-run it after an edit or a window extension
without producing different rows for the same key.

The engine is day-granular. An "every N hours" rule yields one date per day;
how many times the activity happens within that day is reported separately
by `occurrences_per_day` and stored on the occurrence as `daily_count`.
"""
import calendar
from datetime import date, timedelta
from typing import List

from .. import schemas
from ..models import IntervalUnit

TWICE_WEEKLY_GAP_DAYS = 3


def add_days(day: date, days: int) -> date:
    """`day + days`, clamped to the last representable date."""
    if (date.max - day).days < days:
        return date.max
    return day + timedelta(days=days)


def _every_n_days(anchor: date, horizon: date, step: int) -> List[date]:
    dates = []
    current = anchor
    while current <= horizon:
        dates.append(current)
        # step only while the next date can still fall inside the window
        if (horizon - current).days < step:
            break
        current += timedelta(days=step)
    return dates


def _twice_weekly(anchor: date, horizon: date) -> List[date]:
    dates = []
    week_start = anchor
    while week_start <= horizon:
        dates.append(week_start)
        remaining = (horizon - week_start).days
        if remaining >= TWICE_WEEKLY_GAP_DAYS:
            dates.append(week_start + timedelta(days=TWICE_WEEKLY_GAP_DAYS))
        if remaining < 7:
            break
        week_start += timedelta(days=7)
    return dates


def _manual_dates(rule: schemas.ManualDatesRule, anchor: date, horizon: date) -> List[date]:
    # First qualifying year is the anchor's, unless start_month already passed
    year = anchor.year if rule.start_month >= anchor.month else anchor.year + 1
    month = rule.start_month
    dates = []
    # compared as (year, month) so the loop never builds a date past date.max
    while (year, month) <= (horizon.year, horizon.month):
        days_in_month = calendar.monthrange(year, month)[1]
        for day in rule.days_of_month:
            # day 31 in a 30-day month is skipped, not rolled over
            if day > days_in_month:
                continue
            candidate = date(year, month, day)
            if anchor <= candidate <= horizon:
                dates.append(candidate)
        month += 1
        if month > 12:
            month = 1
            year += 1
    return dates


def expand(rule, anchor: date, horizon: date) -> List[date]:
    """Expand `rule` into due dates in [anchor, horizon]."""
    if anchor > horizon:
        return []

    if isinstance(rule, (schemas.DailyRule, schemas.TwiceDailyRule)):
        return _every_n_days(anchor, horizon, 1)
    if isinstance(rule, schemas.WeeklyRule):
        return _every_n_days(anchor, horizon, 7)
    if isinstance(rule, schemas.TwiceWeeklyRule):
        return _twice_weekly(anchor, horizon)
    if isinstance(rule, schemas.IntervalRule):
        if rule.unit == IntervalUnit.hours:
            return _every_n_days(anchor, horizon, 1)
        return _every_n_days(anchor, horizon, rule.every_n)
    if isinstance(rule, schemas.ManualDatesRule):
        return _manual_dates(rule, anchor, horizon)
    if isinstance(rule, schemas.AsNeededRule):
        return []

    raise TypeError(f"Unsupported frequency rule: {type(rule).__name__}")


def occurrences_per_day(rule) -> int:
    """Expected number of sessions on each due date."""
    if isinstance(rule, schemas.TwiceDailyRule):
        return 2
    if isinstance(rule, schemas.IntervalRule) and rule.unit == IntervalUnit.hours:
        return 24 // rule.every_n
    return 1


def describe(rule) -> str:
    """Short human label, as shown next to an activity in the protocol builder."""
    if isinstance(rule, schemas.DailyRule):
        return "Daily"
    if isinstance(rule, schemas.TwiceDailyRule):
        return "Twice Daily"
    if isinstance(rule, schemas.WeeklyRule):
        return "Weekly"
    if isinstance(rule, schemas.TwiceWeeklyRule):
        return "Twice Weekly"
    if isinstance(rule, schemas.IntervalRule):
        return f"Every {rule.every_n} {rule.unit.value}"
    if isinstance(rule, schemas.ManualDatesRule):
        days = ", ".join(str(d) for d in rule.days_of_month)
        return f"{calendar.month_name[rule.start_month]} onwards on day(s) {days}"
    if isinstance(rule, schemas.AsNeededRule):
        return "As needed"
    return type(rule).__name__
