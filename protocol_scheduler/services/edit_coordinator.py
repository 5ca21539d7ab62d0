# protocol_scheduler/services/edit_coordinator.py
"""
Structural edits to a protocol's activity list.

The same four operations (add, update, delete, reorder) apply to a template
or to an instance's local activity copies, and the caller names which one it
is touching:

- Template edits never modify a stored version. They write version + 1,
  so instances pinned to an older version keep the exact definitions they
  were materialized from.
- Instance edits change only that instance. When an update touches the
  schedule (frequency or start offset), future Pending occurrences of the
  activity are soft-cancelled and regenerated from today; completed, skipped
  and past occurrences are left alone.

Every operation validates first and writes once, so a rejected edit leaves
the stored protocol exactly as it was.
"""
import enum
from datetime import date, datetime, timezone
from typing import List, Optional, Sequence

import pydantic
import structlog

from .. import schemas
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import AuditAction, OccurrenceStatus
from ..repository import ProtocolRepository
from . import validation
from .materializer import (
    check_expected_version, live_keys, plan_occurrences, require_active, resolve_anchor
)

logger = structlog.get_logger(__name__)

# Fields that change when and how often an activity is due
SCHEDULE_FIELDS = ("frequency", "start_offset_days")
REQUIRED_FIELDS = ("category", "frequency", "sub_category", "start_offset_days", "description", "instructions")


class ProtocolKind(str, enum.Enum):
    template = "template"
    instance = "instance"


# ==================== PURE SEQUENCE OPERATIONS ====================

def build_activities(creates: Sequence[schemas.ActivityCreate], first_id: int) -> List[schemas.ActivityDefinition]:
    return [
        schemas.ActivityDefinition(**create.model_dump(), id=first_id + index, position=index)
        for index, create in enumerate(creates)
    ]


def active_sequence(activities: List[schemas.ActivityDefinition]) -> List[schemas.ActivityDefinition]:
    return sorted((a for a in activities if a.is_active), key=lambda a: a.position)


def renumber(activities: List[schemas.ActivityDefinition]) -> None:
    for index, activity in enumerate(active_sequence(activities)):
        activity.position = index


def splice(activities: List[schemas.ActivityDefinition], from_index: int, to_index: int) -> None:
    """Move the active activity at from_index to to_index; identities never change."""
    sequence = active_sequence(activities)
    size = len(sequence)
    if from_index < 0 or to_index < 0:
        raise ValidationError(f"Reorder indexes cannot be negative, got {from_index} -> {to_index}")
    if from_index >= size or to_index >= size:
        # the position is empty, or only held by a removed activity
        raise NotFoundError(f"No active activity at position {max(from_index, to_index)}; the sequence has {size}")
    moved = sequence.pop(from_index)
    sequence.insert(to_index, moved)
    for index, activity in enumerate(sequence):
        activity.position = index


def find_active(activities: List[schemas.ActivityDefinition], activity_id: int) -> schemas.ActivityDefinition:
    for activity in activities:
        if activity.id == activity_id and activity.is_active:
            return activity
    raise NotFoundError(f"Activity {activity_id} not found")


def merge_patch(current: schemas.ActivityDefinition, patch: schemas.ActivityPatch) -> schemas.ActivityDefinition:
    # nested rules are dumped whole so their `kind` tag survives
    changes = {}
    for field in patch.model_fields_set:
        value = getattr(patch, field)
        changes[field] = value.model_dump() if isinstance(value, pydantic.BaseModel) else value
    for field in REQUIRED_FIELDS:
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be cleared")
    try:
        return schemas.ActivityDefinition.model_validate({**current.model_dump(), **changes})
    except pydantic.ValidationError as e:
        raise ValidationError(str(e))


# ==================== TEMPLATE AUTHORING ====================

def create_template(repo: ProtocolRepository, payload: schemas.ProtocolTemplateCreate,
                    actor_id: Optional[int] = None) -> schemas.ProtocolTemplate:
    validation.validate_name(payload.name)
    validation.validate_activities(payload.activities)
    activities = build_activities(payload.activities, first_id=1)
    template = schemas.ProtocolTemplate(
        name=payload.name.strip(),
        activities=activities,
        next_activity_id=len(activities) + 1,
    )
    audit = schemas.AuditEvent(
        action=AuditAction.CREATE,
        resource_type="ProtocolTemplate",
        actor_id=actor_id,
        details=f"Created protocol template '{template.name}' with {len(activities)} activities",
    )
    created = repo.create_template(template, audit=audit)
    logger.info("template_created", template_id=created.id, activities=len(activities))
    return created


def _load_template(repo: ProtocolRepository, template_id: int, expected_version: Optional[int]) -> schemas.ProtocolTemplate:
    template = repo.get_template(template_id)
    if expected_version is not None and expected_version != template.version:
        raise ConflictError(
            f"Protocol template {template_id} is at version {template.version}, not {expected_version}"
        )
    return template


def _write_template(repo: ProtocolRepository, template: schemas.ProtocolTemplate, read_version: int,
                    details: str, actor_id: Optional[int]) -> schemas.ProtocolTemplate:
    audit = schemas.AuditEvent(
        action=AuditAction.UPDATE,
        resource_type="ProtocolTemplate",
        actor_id=actor_id,
        details=details,
    )
    saved = repo.add_template_version(template, read_version, audit=audit)
    logger.info("template_versioned", template_id=saved.id, version=saved.version, change=details)
    return saved


def replace_template(repo: ProtocolRepository, template_id: int, payload: schemas.ProtocolTemplateUpdate,
                     expected_version: Optional[int] = None, actor_id: Optional[int] = None) -> schemas.ProtocolTemplate:
    """Replace name and activity list wholesale; replacement activities get fresh ids."""
    validation.validate_name(payload.name)
    validation.validate_activities(payload.activities)
    template = _load_template(repo, template_id, expected_version)
    read_version = template.version

    template.name = payload.name.strip()
    template.activities = build_activities(payload.activities, first_id=template.next_activity_id)
    template.next_activity_id += len(payload.activities)
    return _write_template(repo, template, read_version, "Replaced protocol template contents", actor_id)


# ==================== INSTANCE HELPERS ====================

def _load_instance(repo: ProtocolRepository, instance_id: int, expected_version: Optional[int]):
    instance = repo.get_instance(instance_id)
    token = check_expected_version(instance, expected_version)
    require_active(instance)
    return instance, token


def _cancel_future_pending(occurrences: List[schemas.Occurrence], activity_id: int, today: date,
                           now: datetime) -> List[schemas.Occurrence]:
    cancelled = []
    for occurrence in occurrences:
        if (occurrence.activity_id == activity_id and occurrence.is_live
                and occurrence.status == OccurrenceStatus.pending and occurrence.due_date >= today):
            occurrence.cancelled_at = now
            cancelled.append(occurrence)
    return cancelled


def _instance_audit(details: str, actor_id: Optional[int], **new_values) -> schemas.AuditEvent:
    return schemas.AuditEvent(
        action=AuditAction.UPDATE,
        resource_type="ProtocolInstance",
        actor_id=actor_id,
        details=details,
        new_values=new_values or None,
    )


# ==================== EDIT OPERATIONS ====================

def reorder_activities(repo: ProtocolRepository, kind: ProtocolKind, protocol_id: int, from_index: int,
                       to_index: int, expected_version: Optional[int] = None, *, actor_id: Optional[int] = None):
    if kind == ProtocolKind.template:
        template = _load_template(repo, protocol_id, expected_version)
        read_version = template.version
        splice(template.activities, from_index, to_index)
        return _write_template(repo, template, read_version, f"Moved activity {from_index} -> {to_index}", actor_id)

    instance, token = _load_instance(repo, protocol_id, expected_version)
    splice(instance.activities, from_index, to_index)
    audit = _instance_audit(f"Moved activity {from_index} -> {to_index}", actor_id)
    saved = repo.save_instance(instance, token, audit=audit)
    logger.info("instance_activities_reordered", instance_id=protocol_id, from_index=from_index, to_index=to_index)
    return saved


def update_activity(repo: ProtocolRepository, kind: ProtocolKind, protocol_id: int, activity_id: int,
                    patch: schemas.ActivityPatch, expected_version: Optional[int] = None, *,
                    today: Optional[date] = None, actor_id: Optional[int] = None):
    today = today or date.today()

    if kind == ProtocolKind.template:
        template = _load_template(repo, protocol_id, expected_version)
        read_version = template.version
        current = find_active(template.activities, activity_id)
        merged = merge_patch(current, patch)
        validation.validate_activity(merged)
        template.activities = [merged if a.id == activity_id else a for a in template.activities]
        return _write_template(repo, template, read_version, f"Updated activity {activity_id}", actor_id)

    instance, token = _load_instance(repo, protocol_id, expected_version)
    current = find_active(instance.activities, activity_id)
    merged = merge_patch(current, patch)
    validation.validate_activity(merged)

    reschedule = any(getattr(merged, f) != getattr(current, f) for f in SCHEDULE_FIELDS)
    cancelled: List[schemas.Occurrence] = []
    added: List[schemas.Occurrence] = []
    if reschedule:
        merged.anchor_date = resolve_anchor(instance.start_date, merged, not_before=today)
        occurrences = repo.list_occurrences(instance.id)
        cancelled = _cancel_future_pending(occurrences, activity_id, today, datetime.now(timezone.utc))
        added = plan_occurrences(merged, instance.horizon_date, live_keys(occurrences))

    instance.activities = [merged if a.id == activity_id else a for a in instance.activities]
    audit = _instance_audit(
        f"Updated activity {activity_id}", actor_id,
        rescheduled=reschedule, cancelled_occurrences=len(cancelled), added_occurrences=len(added),
    )
    saved = repo.save_instance(instance, token, added=added, updated=cancelled, audit=audit)
    logger.info("instance_activity_updated", instance_id=protocol_id, activity_id=activity_id,
                rescheduled=reschedule, cancelled=len(cancelled), added=len(added))
    return saved


def delete_activity(repo: ProtocolRepository, kind: ProtocolKind, protocol_id: int, activity_id: int,
                    expected_version: Optional[int] = None, *, today: Optional[date] = None,
                    actor_id: Optional[int] = None):
    today = today or date.today()

    if kind == ProtocolKind.template:
        template = _load_template(repo, protocol_id, expected_version)
        read_version = template.version
        find_active(template.activities, activity_id)
        template.activities = [a for a in template.activities if a.id != activity_id]
        renumber(template.activities)
        return _write_template(repo, template, read_version, f"Removed activity {activity_id}", actor_id)

    instance, token = _load_instance(repo, protocol_id, expected_version)
    now = datetime.now(timezone.utc)
    activity = find_active(instance.activities, activity_id)
    activity.removed_at = now
    renumber(instance.activities)

    cancelled = _cancel_future_pending(repo.list_occurrences(instance.id), activity_id, today, now)
    audit = _instance_audit(f"Removed activity {activity_id}", actor_id, cancelled_occurrences=len(cancelled))
    saved = repo.save_instance(instance, token, updated=cancelled, audit=audit)
    logger.info("instance_activity_removed", instance_id=protocol_id, activity_id=activity_id, cancelled=len(cancelled))
    return saved


def add_activity(repo: ProtocolRepository, kind: ProtocolKind, protocol_id: int, new_activity: schemas.ActivityCreate,
                 expected_version: Optional[int] = None, *, today: Optional[date] = None,
                 actor_id: Optional[int] = None):
    today = today or date.today()
    validation.validate_activity(new_activity)

    if kind == ProtocolKind.template:
        template = _load_template(repo, protocol_id, expected_version)
        read_version = template.version
        activity = schemas.ActivityDefinition(
            **new_activity.model_dump(),
            id=template.next_activity_id,
            position=len(active_sequence(template.activities)),
        )
        template.activities.append(activity)
        template.next_activity_id += 1
        return _write_template(repo, template, read_version, f"Added activity {activity.id}", actor_id)

    instance, token = _load_instance(repo, protocol_id, expected_version)
    activity = schemas.ActivityDefinition(
        **new_activity.model_dump(),
        id=instance.next_activity_id,
        position=len(instance.active_activities),
    )
    activity.anchor_date = resolve_anchor(instance.start_date, activity, not_before=today)
    instance.activities.append(activity)
    instance.next_activity_id += 1

    added = plan_occurrences(activity, instance.horizon_date, set())
    audit = _instance_audit(f"Added activity {activity.id}", actor_id, added_occurrences=len(added))
    saved = repo.save_instance(instance, token, added=added, audit=audit)
    logger.info("instance_activity_added", instance_id=protocol_id, activity_id=activity.id, added=len(added))
    return saved
