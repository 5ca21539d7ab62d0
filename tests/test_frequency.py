# tests/test_frequency.py
from datetime import date, timedelta

import pytest

from protocol_scheduler import schemas
from protocol_scheduler.errors import ValidationError
from protocol_scheduler.models import ActivityCategory, IntervalUnit
from protocol_scheduler.services import frequency, validation

ANCHOR = date(2024, 1, 1)

ALL_RULES = [
    schemas.DailyRule(),
    schemas.WeeklyRule(),
    schemas.TwiceDailyRule(),
    schemas.TwiceWeeklyRule(),
    schemas.IntervalRule(every_n=3, unit=IntervalUnit.days),
    schemas.IntervalRule(every_n=6, unit=IntervalUnit.hours),
    schemas.ManualDatesRule(start_month=1, days_of_month=[1, 15]),
    schemas.AsNeededRule(),
]


@pytest.mark.parametrize("rule", ALL_RULES, ids=lambda r: r.kind)
def test_horizon_before_anchor_is_empty(rule):
    assert frequency.expand(rule, ANCHOR, ANCHOR - timedelta(days=1)) == []


@pytest.mark.parametrize("rule", ALL_RULES, ids=lambda r: r.kind)
def test_expansion_is_ascending_unique_and_repeatable(rule):
    horizon = ANCHOR + timedelta(days=90)
    first = frequency.expand(rule, ANCHOR, horizon)
    assert first == sorted(set(first))
    assert all(ANCHOR <= d <= horizon for d in first)
    assert frequency.expand(rule, ANCHOR, horizon) == first


def test_daily_covers_every_day_inclusive():
    dates = frequency.expand(schemas.DailyRule(), ANCHOR, ANCHOR + timedelta(days=13))
    assert len(dates) == 14
    assert dates[0] == ANCHOR and dates[-1] == date(2024, 1, 14)


def test_weekly_steps_seven_days():
    dates = frequency.expand(schemas.WeeklyRule(), ANCHOR, ANCHOR + timedelta(days=13))
    assert dates == [date(2024, 1, 1), date(2024, 1, 8)]


def test_every_three_days_over_ten_day_horizon():
    rule = schemas.IntervalRule(every_n=3, unit=IntervalUnit.days)
    dates = frequency.expand(rule, ANCHOR, ANCHOR + timedelta(days=9))
    assert [(d - ANCHOR).days for d in dates] == [0, 3, 6, 9]


def test_hourly_interval_is_one_date_per_day_with_daily_count():
    rule = schemas.IntervalRule(every_n=8, unit=IntervalUnit.hours)
    dates = frequency.expand(rule, ANCHOR, ANCHOR + timedelta(days=2))
    assert len(dates) == 3
    assert frequency.occurrences_per_day(rule) == 3


def test_twice_daily_and_twice_weekly():
    assert frequency.occurrences_per_day(schemas.TwiceDailyRule()) == 2
    dates = frequency.expand(schemas.TwiceWeeklyRule(), ANCHOR, ANCHOR + timedelta(days=13))
    assert [(d - ANCHOR).days for d in dates] == [0, 3, 7, 10]


def test_manual_dates_skip_days_missing_from_month():
    rule = schemas.ManualDatesRule(start_month=2, days_of_month=[30, 31])
    dates = frequency.expand(rule, date(2024, 2, 1), date(2024, 3, 31))
    assert dates == [date(2024, 3, 30), date(2024, 3, 31)]


def test_manual_dates_start_month_before_anchor_rolls_to_next_year():
    rule = schemas.ManualDatesRule(start_month=1, days_of_month=[10])
    dates = frequency.expand(rule, date(2024, 6, 1), date(2025, 2, 28))
    assert dates == [date(2025, 1, 10), date(2025, 2, 10)]


def test_manual_dates_wraps_year_and_ignores_days_before_anchor():
    rule = schemas.ManualDatesRule(start_month=12, days_of_month=[5, 20])
    dates = frequency.expand(rule, date(2024, 12, 10), date(2025, 1, 31))
    assert dates == [date(2024, 12, 20), date(2025, 1, 5), date(2025, 1, 20)]


def test_manual_days_are_a_set():
    rule = schemas.ManualDatesRule(start_month=3, days_of_month=[15, 1, 15])
    assert rule.days_of_month == [1, 15]


def test_as_needed_never_expands():
    assert frequency.expand(schemas.AsNeededRule(), ANCHOR, ANCHOR + timedelta(days=30)) == []


def test_interval_longer_than_window_yields_anchor_only():
    rule = schemas.IntervalRule(every_n=5_000_000, unit=IntervalUnit.days)
    assert frequency.expand(rule, ANCHOR, date(2024, 6, 30)) == [ANCHOR]


@pytest.mark.parametrize("rule", ALL_RULES, ids=lambda r: r.kind)
def test_expansion_up_to_last_representable_date(rule):
    anchor = date.max - timedelta(days=20)
    dates = frequency.expand(rule, anchor, date.max)
    assert all(anchor <= d <= date.max for d in dates)


def test_add_days_clamps_at_last_representable_date():
    assert frequency.add_days(ANCHOR, 3) == date(2024, 1, 4)
    assert frequency.add_days(date.max - timedelta(days=1), 30) == date.max


def test_describe_labels():
    assert frequency.describe(schemas.DailyRule()) == "Daily"
    assert frequency.describe(schemas.IntervalRule(every_n=6, unit=IntervalUnit.hours)) == "Every 6 hours"
    assert frequency.describe(schemas.ManualDatesRule(start_month=2, days_of_month=[1, 15])) == \
        "February onwards on day(s) 1, 15"


# --- validation ---

@pytest.mark.parametrize("rule", [
    schemas.IntervalRule(every_n=0),
    schemas.IntervalRule(every_n=25, unit=IntervalUnit.hours),
    schemas.ManualDatesRule(start_month=2, days_of_month=[]),
    schemas.ManualDatesRule(start_month=13, days_of_month=[1]),
    schemas.ManualDatesRule(start_month=2, days_of_month=[0, 32]),
])
def test_malformed_rules_are_rejected(rule):
    with pytest.raises(ValidationError):
        validation.validate_rule(rule)


def test_custom_category_needs_a_name():
    activity = schemas.ActivityCreate(
        category=ActivityCategory.custom, custom_category="  ", frequency=schemas.DailyRule()
    )
    with pytest.raises(ValidationError):
        validation.validate_activity(activity)


def test_built_in_category_restricts_sub_category():
    activity = schemas.ActivityCreate(
        category=ActivityCategory.diet, sub_category="Jog", frequency=schemas.DailyRule()
    )
    with pytest.raises(ValidationError):
        validation.validate_activity(activity)


def test_custom_category_accepts_free_text():
    activity = schemas.ActivityCreate(
        category=ActivityCategory.custom, custom_category="Breathing", sub_category="Box breathing",
        frequency=schemas.TwiceDailyRule()
    )
    validation.validate_activity(activity)
    assert activity.category_label == "Breathing"
