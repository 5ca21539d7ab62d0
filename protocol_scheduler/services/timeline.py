# protocol_scheduler/services/timeline.py
"""
Patient timeline: every live occurrence across a patient's protocols,
grouped by calendar day.

Status shown here is derived at read time. A Pending occurrence due before
`as_of` reads as Overdue; nothing is written back, so the same call with
the same `as_of` always returns the same view.
"""
from datetime import date
from typing import Dict, List, Optional

import structlog

from .. import schemas
from ..config import get_settings
from ..errors import ValidationError
from ..models import InstanceStatus, OccurrenceStatus
from ..repository import ProtocolRepository
from . import frequency

logger = structlog.get_logger(__name__)

STATUS_LABELS = {
    OccurrenceStatus.pending: "Assigned",
    OccurrenceStatus.completed: "Completed",
    OccurrenceStatus.overdue: "Overdue",
    OccurrenceStatus.skipped: "Skipped",
}


def derive_status(occurrence: schemas.Occurrence, as_of: date) -> OccurrenceStatus:
    if occurrence.status == OccurrenceStatus.pending and occurrence.due_date < as_of:
        return OccurrenceStatus.overdue
    return occurrence.status


def _view(instance: schemas.ProtocolInstance, activity: schemas.ActivityDefinition,
          occurrence: schemas.Occurrence, as_of: date) -> schemas.OccurrenceView:
    status = derive_status(occurrence, as_of)
    return schemas.OccurrenceView(
        occurrence_id=occurrence.id,
        instance_id=instance.id,
        protocol_name=instance.name,
        activity_id=activity.id,
        category=activity.category_label,
        sub_category=activity.sub_category,
        frequency_label=frequency.describe(activity.frequency),
        description=activity.description,
        duration_minutes=activity.duration_minutes,
        due_date=occurrence.due_date,
        status=status,
        status_label=STATUS_LABELS[status],
        daily_count=occurrence.daily_count,
        completed_at=occurrence.completed_at,
        completion_note=occurrence.completion_note,
    )


def _activity_rank(activity: schemas.ActivityDefinition) -> tuple:
    # removed activities keep their history but sort after the live sequence
    return (0 if activity.is_active else 1, activity.position, activity.id)


def build_timeline(repo: ProtocolRepository, patient_id: int, as_of: date, order: Optional[str] = None,
                   include_closed: bool = False) -> List[schemas.TimelineDay]:
    """
    Group a patient's occurrences by due date.

    Days come most recent first unless `order` (or the TIMELINE_ORDER
    setting) is "asc". Within a day the order is fixed: instance
    materialization order, then the activity's position in its instance,
    then occurrence id.
    """
    order = order or get_settings().timeline_order
    if order not in ("asc", "desc"):
        raise ValidationError(f"Timeline order must be 'asc' or 'desc', got '{order}'")

    statuses = None if include_closed else [InstanceStatus.active]
    days: Dict[date, list] = {}
    for instance_rank, instance in enumerate(repo.list_instances(patient_id=patient_id, statuses=statuses)):
        activities = {a.id: a for a in instance.activities}
        for occurrence in repo.list_occurrences(instance.id):
            activity = activities.get(occurrence.activity_id)
            if activity is None:
                logger.warning("occurrence_without_activity", instance_id=instance.id,
                               occurrence_id=occurrence.id, activity_id=occurrence.activity_id)
                continue
            sort_key = (instance_rank, _activity_rank(activity), occurrence.id)
            days.setdefault(occurrence.due_date, []).append((sort_key, _view(instance, activity, occurrence, as_of)))

    return [
        schemas.TimelineDay(day=day, occurrences=[view for _, view in sorted(days[day], key=lambda entry: entry[0])])
        for day in sorted(days, reverse=(order == "desc"))
    ]


def summarize_instance(repo: ProtocolRepository, instance_id: int, as_of: date) -> schemas.InstanceProgress:
    instance = repo.get_instance(instance_id)
    counts = {status: 0 for status in OccurrenceStatus}
    occurrences = repo.list_occurrences(instance.id)
    for occurrence in occurrences:
        counts[derive_status(occurrence, as_of)] += 1

    completed = counts[OccurrenceStatus.completed]
    settled = completed + counts[OccurrenceStatus.skipped] + counts[OccurrenceStatus.overdue]
    return schemas.InstanceProgress(
        instance_id=instance.id,
        status=instance.status,
        total=len(occurrences),
        pending=counts[OccurrenceStatus.pending],
        completed=completed,
        skipped=counts[OccurrenceStatus.skipped],
        overdue=counts[OccurrenceStatus.overdue],
        adherence=round(completed / settled, 4) if settled else 0.0,
    )
