# protocol_scheduler/services/materializer.py
"""
Schedule materialization: template version + patient + start date -> instance.

Also owns the rest of the instance lifecycle that creates or removes
occurrences in bulk: window extension, closing an instance, and the
consistency check run by the health router.
"""
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Set, Tuple

import structlog

from .. import schemas
from ..config import get_settings
from ..errors import ConflictError, StateError, ValidationError
from ..models import AuditAction, InstanceStatus, OccurrenceStatus
from ..repository import ProtocolRepository
from . import frequency

logger = structlog.get_logger(__name__)

OccurrenceKey = Tuple[int, date]


def resolve_anchor(instance_start: date, activity: schemas.ActivityBase, not_before: Optional[date] = None) -> date:
    anchor = frequency.add_days(instance_start, activity.start_offset_days)
    if not_before is not None and not_before > anchor:
        return not_before
    return anchor


def live_keys(occurrences: Iterable[schemas.Occurrence]) -> Set[OccurrenceKey]:
    return {o.key for o in occurrences if o.is_live}


def plan_occurrences(activity: schemas.ActivityDefinition, horizon: date,
                     existing_keys: Set[OccurrenceKey]) -> List[schemas.Occurrence]:
    """New Pending occurrences for `activity` up to `horizon`, skipping keys already present."""
    daily_count = frequency.occurrences_per_day(activity.frequency)
    planned = []
    for due in frequency.expand(activity.frequency, activity.anchor_date, horizon):
        if (activity.id, due) in existing_keys:
            continue
        planned.append(schemas.Occurrence(
            activity_id=activity.id,
            due_date=due,
            status=OccurrenceStatus.pending,
            daily_count=daily_count,
        ))
    return planned


def default_horizon(start_date: date, today: date) -> date:
    return frequency.add_days(max(start_date, today), get_settings().schedule_horizon_days)


def check_expected_version(instance: schemas.ProtocolInstance, expected_version: Optional[int]) -> int:
    if expected_version is not None and expected_version != instance.version:
        raise ConflictError(
            f"Protocol instance {instance.id} is at version {instance.version}, not {expected_version}"
        )
    return instance.version


def require_active(instance: schemas.ProtocolInstance) -> None:
    if instance.status != InstanceStatus.active:
        raise StateError(f"Protocol instance {instance.id} is {instance.status.value} and can no longer change")


def materialize(repo: ProtocolRepository, template_id: int, version: int, patient_id: int, start_date: date,
                horizon_date: Optional[date] = None, today: Optional[date] = None,
                actor_id: Optional[int] = None) -> schemas.ProtocolInstance:
    """
    Apply a template version to a patient.

    Activities are snapshotted into the instance so later template versions
    never alter it. Back-dated start dates are accepted; occurrences already
    in the past come out Pending and read as Overdue.
    """
    today = today or date.today()
    template = repo.get_template(template_id, version)
    horizon = horizon_date or default_horizon(start_date, today)

    activities = []
    for activity in sorted(template.activities, key=lambda a: a.position):
        snapshot = activity.model_copy(deep=True)
        snapshot.anchor_date = resolve_anchor(start_date, snapshot)
        snapshot.removed_at = None
        activities.append(snapshot)

    occurrences: List[schemas.Occurrence] = []
    keys: Set[OccurrenceKey] = set()
    for activity in activities:
        planned = plan_occurrences(activity, horizon, keys)
        keys.update(o.key for o in planned)
        occurrences.extend(planned)

    instance = schemas.ProtocolInstance(
        patient_id=patient_id,
        template_id=template.id,
        template_version=template.version,
        name=template.name,
        start_date=start_date,
        horizon_date=horizon,
        status=InstanceStatus.active,
        activities=activities,
        next_activity_id=template.next_activity_id,
        materialized_at=datetime.now(timezone.utc),
    )
    audit = schemas.AuditEvent(
        action=AuditAction.CREATE,
        resource_type="ProtocolInstance",
        actor_id=actor_id,
        details=f"Applied template {template.id}@{template.version} to patient {patient_id} from {start_date}",
        new_values={"occurrences": len(occurrences), "horizon_date": horizon.isoformat()},
    )
    created = repo.create_instance(instance, occurrences, audit=audit)
    logger.info("instance_materialized", instance_id=created.id, patient_id=patient_id,
                template_id=template.id, template_version=template.version,
                occurrences=len(occurrences), horizon=horizon.isoformat())
    return created


def extend_instance(repo: ProtocolRepository, instance_id: int, horizon_date: date,
                    expected_version: Optional[int] = None, actor_id: Optional[int] = None) -> schemas.ProtocolInstance:
    """
    Grow the materialized window to `horizon_date`.

    Only (activity_id, due_date) keys missing among live occurrences are
    inserted, so repeated or concurrent runs converge on the same rows.
    Horizons never shrink; a run with nothing to add writes nothing.
    """
    instance = repo.get_instance(instance_id)
    token = check_expected_version(instance, expected_version)
    require_active(instance)

    horizon = max(instance.horizon_date, horizon_date)
    keys = live_keys(repo.list_occurrences(instance.id))
    added: List[schemas.Occurrence] = []
    for activity in instance.active_activities:
        planned = plan_occurrences(activity, horizon, keys)
        keys.update(o.key for o in planned)
        added.extend(planned)

    if not added and horizon == instance.horizon_date:
        return instance

    instance.horizon_date = horizon
    audit = schemas.AuditEvent(
        action=AuditAction.UPDATE,
        resource_type="ProtocolInstance",
        actor_id=actor_id,
        details=f"Extended schedule window to {horizon}",
        new_values={"added_occurrences": len(added)},
    )
    saved = repo.save_instance(instance, token, added=added, audit=audit)
    logger.info("instance_extended", instance_id=instance.id, horizon=horizon.isoformat(), added=len(added))
    return saved


def extend_all_active(repo: ProtocolRepository, horizon_date: Optional[date] = None,
                      today: Optional[date] = None) -> dict:
    """Batch window extension over every Active instance. Retries once on a version conflict."""
    today = today or date.today()
    horizon = horizon_date or frequency.add_days(today, get_settings().schedule_horizon_days)
    summary = {"extended": 0, "unchanged": 0, "failed": []}

    for instance in repo.list_instances(statuses=[InstanceStatus.active]):
        for attempt in (1, 2):
            try:
                saved = extend_instance(repo, instance.id, horizon)
                if saved.version != instance.version:
                    summary["extended"] += 1
                else:
                    summary["unchanged"] += 1
                break
            except ConflictError:
                if attempt == 2:
                    logger.warning("extend_conflict", instance_id=instance.id)
                    summary["failed"].append(instance.id)
                else:
                    # re-read so the unchanged/extended comparison uses the fresh token
                    instance = repo.get_instance(instance.id)
            except StateError:
                # closed between listing and extending
                summary["unchanged"] += 1
                break

    logger.info("extend_all_active_finished", horizon=horizon.isoformat(), extended=summary["extended"],
                unchanged=summary["unchanged"], failed=len(summary["failed"]))
    return summary


def close_instance(repo: ProtocolRepository, instance_id: int, status: InstanceStatus,
                   expected_version: Optional[int] = None, today: Optional[date] = None,
                   actor_id: Optional[int] = None) -> schemas.ProtocolInstance:
    """
    Move an Active instance to Completed or Cancelled.

    Cancelling removes Pending occurrences due today or later; the past and
    every terminal occurrence stay as history.
    """
    if status not in (InstanceStatus.completed, InstanceStatus.cancelled):
        raise ValidationError(f"An instance can only be closed as completed or cancelled, not {status.value}")

    today = today or date.today()
    instance = repo.get_instance(instance_id)
    token = check_expected_version(instance, expected_version)
    require_active(instance)

    deleted_ids: List[int] = []
    if status == InstanceStatus.cancelled:
        deleted_ids = [
            o.id for o in repo.list_occurrences(instance.id, include_cancelled=True)
            if o.status == OccurrenceStatus.pending and o.due_date >= today
        ]

    instance.status = status
    instance.closed_at = datetime.now(timezone.utc)
    audit = schemas.AuditEvent(
        action=AuditAction.UPDATE,
        resource_type="ProtocolInstance",
        actor_id=actor_id,
        details=f"Closed protocol instance as {status.value}",
        new_values={"removed_occurrences": len(deleted_ids)},
    )
    saved = repo.save_instance(instance, token, deleted_ids=deleted_ids, audit=audit)
    logger.info("instance_closed", instance_id=instance.id, status=status.value, removed=len(deleted_ids))
    return saved


def run_consistency_checks(repo: ProtocolRepository) -> schemas.ConsistencyReport:
    """Report duplicate live (activity, due_date) keys and occurrences with no activity behind them."""
    report = schemas.ConsistencyReport(checked_instances=0)
    for instance in repo.list_instances():
        report.checked_instances += 1
        known_ids = {a.id for a in instance.activities}
        # as-needed entries may legitimately repeat on one day
        ad_hoc_ids = {a.id for a in instance.activities if isinstance(a.frequency, schemas.AsNeededRule)}
        seen = {}
        for occurrence in repo.list_occurrences(instance.id):
            seen.setdefault(occurrence.key, []).append(occurrence.id)
            if occurrence.activity_id not in known_ids:
                report.orphaned_occurrences.append(schemas.ConsistencyIssue(
                    instance_id=instance.id,
                    activity_id=occurrence.activity_id,
                    issue="occurrence references an unknown activity",
                    due_date=occurrence.due_date,
                    occurrence_ids=[occurrence.id],
                ))
        for (activity_id, due), ids in seen.items():
            if len(ids) > 1 and activity_id not in ad_hoc_ids:
                report.duplicate_occurrences.append(schemas.ConsistencyIssue(
                    instance_id=instance.id,
                    activity_id=activity_id,
                    issue="duplicate live occurrences for the same due date",
                    due_date=due,
                    occurrence_ids=ids,
                ))
    return report
