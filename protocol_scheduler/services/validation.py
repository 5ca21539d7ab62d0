# protocol_scheduler/services/validation.py
from typing import Iterable

from ..errors import ValidationError
from ..models import ActivityCategory, IntervalUnit
from .. import schemas

SUB_CATEGORIES = {
    ActivityCategory.exercise: ["Jog", "Walk", "Cycling", "Swimming", "Strength Training"],
    ActivityCategory.consultation: ["Consultation", "Follow-up", "Check-up", "Assessment"],
    ActivityCategory.physiotherapy: ["Physiotherapy Knee Exercises", "Range of Motion", "Strength Building", "Pain Management"],
    ActivityCategory.medication: ["Oral Medication", "Injection", "Topical Application"],
    ActivityCategory.diet: ["Meal Plan", "Supplements", "Hydration", "Restrictions"],
    ActivityCategory.rest: ["Bed Rest", "Activity Limitation", "Sleep Schedule"],
}

MAX_HOURS_INTERVAL = 24


def validate_rule(rule) -> None:
    if isinstance(rule, schemas.IntervalRule):
        if rule.every_n < 1:
            raise ValidationError(f"Interval rule needs every_n >= 1, got {rule.every_n}")
        if rule.unit == IntervalUnit.hours and rule.every_n > MAX_HOURS_INTERVAL:
            raise ValidationError(
                f"Hourly interval must be between 1 and {MAX_HOURS_INTERVAL} hours, got {rule.every_n}"
            )
    elif isinstance(rule, schemas.ManualDatesRule):
        if not 1 <= rule.start_month <= 12:
            raise ValidationError(f"start_month must be 1..12, got {rule.start_month}")
        if not rule.days_of_month:
            raise ValidationError("Manual dates rule needs at least one day of the month")
        bad = [d for d in rule.days_of_month if not 1 <= d <= 31]
        if bad:
            raise ValidationError(f"days_of_month must be within 1..31, got {bad}")


def validate_activity(activity: schemas.ActivityBase) -> None:
    """Domain checks for a single activity. Raises ValidationError on the first problem."""
    if activity.category == ActivityCategory.custom:
        if not (activity.custom_category or "").strip():
            raise ValidationError("Custom activities need a non-empty category name")
    else:
        allowed = SUB_CATEGORIES[activity.category]
        if activity.sub_category not in allowed:
            raise ValidationError(
                f"'{activity.sub_category}' is not a sub-category of {activity.category.value}; "
                f"expected one of {allowed}"
            )

    if activity.duration_minutes is not None and activity.duration_minutes < 0:
        raise ValidationError("duration_minutes cannot be negative")
    if activity.start_offset_days < 0:
        raise ValidationError("start_offset_days cannot be negative")

    validate_rule(activity.frequency)


def validate_activities(activities: Iterable[schemas.ActivityBase]) -> None:
    for activity in activities:
        validate_activity(activity)


def validate_name(name: str) -> None:
    if not (name or "").strip():
        raise ValidationError("Protocol name cannot be empty")
