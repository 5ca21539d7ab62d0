# protocol_scheduler/services/occurrences.py
"""Completion events: the only path by which an occurrence becomes terminal."""
from datetime import date, datetime, timezone
from typing import Optional

import structlog

from .. import schemas
from ..errors import StateError, ValidationError
from ..models import AuditAction, OccurrenceStatus
from ..repository import ProtocolRepository
from . import edit_coordinator
from .materializer import check_expected_version, require_active

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (OccurrenceStatus.completed, OccurrenceStatus.skipped)


def record_completion(repo: ProtocolRepository, occurrence_id: int, status: OccurrenceStatus,
                      completed_at: Optional[datetime] = None, note: Optional[str] = None,
                      expected_version: Optional[int] = None, actor_id: Optional[int] = None) -> schemas.Occurrence:
    """Mark an occurrence Completed or Skipped. Terminal occurrences never change again."""
    if status not in TERMINAL_STATUSES:
        raise ValidationError(f"Occurrences can only be marked completed or skipped, not {status.value}")

    occurrence = repo.get_occurrence(occurrence_id)
    instance = repo.get_instance(occurrence.instance_id)
    token = check_expected_version(instance, expected_version)
    require_active(instance)

    if not occurrence.is_live:
        raise StateError(f"Occurrence {occurrence_id} was cancelled and cannot be recorded")
    if occurrence.status in TERMINAL_STATUSES:
        raise StateError(f"Occurrence {occurrence_id} is already {occurrence.status.value}")

    occurrence.status = status
    occurrence.completed_at = completed_at or datetime.now(timezone.utc)
    occurrence.completion_note = note

    audit = schemas.AuditEvent(
        action=AuditAction.UPDATE,
        resource_type="Occurrence",
        resource_id=occurrence.id,
        actor_id=actor_id,
        details=f"Occurrence marked {status.value}",
        new_values={"instance_id": instance.id, "due_date": occurrence.due_date.isoformat()},
    )
    repo.save_instance(instance, token, updated=[occurrence], audit=audit)
    logger.info("occurrence_recorded", occurrence_id=occurrence.id, instance_id=instance.id, status=status.value)
    return repo.get_occurrence(occurrence.id)


def record_as_needed(repo: ProtocolRepository, instance_id: int, activity_id: int,
                     completed_at: Optional[datetime] = None, note: Optional[str] = None,
                     expected_version: Optional[int] = None, actor_id: Optional[int] = None,
                     day: Optional[date] = None, today: Optional[date] = None) -> schemas.Occurrence:
    """
    Create an already-Completed occurrence for an as-needed activity.

    The entry is filed under the patient's calendar day. Callers send it as
    `day`; otherwise it is the date of `completed_at` in the offset it was
    given with, and failing both, `today`.
    """
    instance = repo.get_instance(instance_id)
    token = check_expected_version(instance, expected_version)
    require_active(instance)

    activity = edit_coordinator.find_active(instance.activities, activity_id)
    if not isinstance(activity.frequency, schemas.AsNeededRule):
        raise ValidationError(f"Activity {activity_id} is scheduled by its rule; only as-needed activities accept ad-hoc entries")

    done_at = completed_at or datetime.now(timezone.utc)
    if day is None:
        day = completed_at.date() if completed_at is not None else (today or date.today())
    occurrence = schemas.Occurrence(
        activity_id=activity.id,
        due_date=day,
        status=OccurrenceStatus.completed,
        completed_at=done_at,
        completion_note=note,
    )
    audit = schemas.AuditEvent(
        action=AuditAction.CREATE,
        resource_type="Occurrence",
        actor_id=actor_id,
        details=f"Recorded as-needed activity {activity_id}",
    )
    before = {o.id for o in repo.list_occurrences(instance.id, include_cancelled=True)}
    repo.save_instance(instance, token, added=[occurrence], audit=audit)
    created = [o for o in repo.list_occurrences(instance.id) if o.id not in before]
    logger.info("as_needed_recorded", instance_id=instance.id, activity_id=activity_id)
    return created[0]
