# tests/test_materializer.py
from collections import Counter
from datetime import date, timedelta

import pytest

from protocol_scheduler import schemas
from protocol_scheduler.errors import ConflictError, NotFoundError, StateError, ValidationError
from protocol_scheduler.models import InstanceStatus, IntervalUnit, OccurrenceStatus
from protocol_scheduler.services import edit_coordinator, materializer

from .conftest import make_activity


def _materialize(repo, template, start, days=13, **kwargs):
    return materializer.materialize(
        repo, template.id, template.version, patient_id=7, start_date=start,
        horizon_date=start + timedelta(days=days), today=kwargs.pop("today", start), **kwargs
    )


def test_knee_recovery_scenario(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    occurrences = repo.list_occurrences(instance.id)

    walk, consult = instance.active_activities
    per_activity = Counter(o.activity_id for o in occurrences)
    assert per_activity[walk.id] == 14
    assert per_activity[consult.id] == 2
    assert sorted(o.due_date for o in occurrences if o.activity_id == consult.id) == [today, today + timedelta(days=7)]
    assert all(o.status == OccurrenceStatus.pending for o in occurrences)


def test_instance_snapshots_template_activities(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    assert instance.template_id == knee_recovery.id
    assert instance.template_version == 1
    assert instance.version == 1
    assert [a.id for a in instance.activities] == [a.id for a in knee_recovery.activities]
    assert all(a.anchor_date == today for a in instance.activities)

    # A later template version leaves the instance alone
    edit_coordinator.delete_activity(repo, edit_coordinator.ProtocolKind.template, knee_recovery.id,
                                     knee_recovery.activities[0].id)
    assert len(repo.get_instance(instance.id).active_activities) == 2


def test_materialize_twice_keeps_occurrence_count(repo, knee_recovery, today):
    first = _materialize(repo, knee_recovery, today)
    count = len(repo.list_occurrences(first.id))
    extended = materializer.extend_instance(repo, first.id, first.horizon_date)
    assert len(repo.list_occurrences(first.id)) == count
    assert extended.version == first.version

    second = _materialize(repo, knee_recovery, today)
    assert len(repo.list_occurrences(second.id)) == count


def test_back_dated_start_is_accepted(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today - timedelta(days=5), today=today)
    past = [o for o in repo.list_occurrences(instance.id) if o.due_date < today]
    assert past
    assert all(o.status == OccurrenceStatus.pending for o in past)


def test_start_offset_shifts_anchor(repo, today):
    template = edit_coordinator.create_template(repo, schemas.ProtocolTemplateCreate(
        name="Offset", activities=[make_activity(start_offset_days=3)]
    ))
    instance = _materialize(repo, template, today, days=9)
    dates = [o.due_date for o in repo.list_occurrences(instance.id)]
    assert instance.activities[0].anchor_date == today + timedelta(days=3)
    assert dates[0] == today + timedelta(days=3)
    assert len(dates) == 7


def test_hourly_rule_annotates_daily_count(repo, today):
    template = edit_coordinator.create_template(repo, schemas.ProtocolTemplateCreate(
        name="Meds", activities=[make_activity(
            category="Medication", sub_category="Oral Medication",
            frequency=schemas.IntervalRule(every_n=6, unit=IntervalUnit.hours),
        )]
    ))
    instance = _materialize(repo, template, today, days=2)
    occurrences = repo.list_occurrences(instance.id)
    assert len(occurrences) == 3
    assert {o.daily_count for o in occurrences} == {4}


def test_default_horizon_comes_from_settings(repo, knee_recovery, today):
    instance = materializer.materialize(repo, knee_recovery.id, 1, patient_id=1, start_date=today, today=today)
    assert instance.horizon_date == today + timedelta(days=180)


def test_unknown_template_version(repo, knee_recovery, today):
    with pytest.raises(NotFoundError):
        materializer.materialize(repo, knee_recovery.id, 9, patient_id=1, start_date=today, today=today)


def test_extend_adds_only_missing_keys(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    extended = materializer.extend_instance(repo, instance.id, today + timedelta(days=20))

    occurrences = repo.list_occurrences(instance.id)
    keys = [o.key for o in occurrences]
    assert len(keys) == len(set(keys))
    assert len(occurrences) == 21 + 3
    assert extended.horizon_date == today + timedelta(days=20)
    assert extended.version == instance.version + 1


def test_extend_never_shrinks_horizon(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    unchanged = materializer.extend_instance(repo, instance.id, today)
    assert unchanged.horizon_date == instance.horizon_date


def test_extend_with_stale_version_conflicts(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    materializer.extend_instance(repo, instance.id, today + timedelta(days=20))
    with pytest.raises(ConflictError):
        materializer.extend_instance(repo, instance.id, today + timedelta(days=30), expected_version=instance.version)


def test_extend_all_active_skips_closed(repo, knee_recovery, today):
    a = _materialize(repo, knee_recovery, today)
    b = _materialize(repo, knee_recovery, today)
    materializer.close_instance(repo, b.id, InstanceStatus.completed, today=today)

    summary = materializer.extend_all_active(repo, horizon_date=today + timedelta(days=30), today=today)
    assert summary == {"extended": 1, "unchanged": 0, "failed": []}
    assert repo.get_instance(a.id).horizon_date == today + timedelta(days=30)
    assert repo.get_instance(b.id).horizon_date == b.horizon_date


def test_cancel_removes_future_pending_only(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today - timedelta(days=3), days=13, today=today)
    closed = materializer.close_instance(repo, instance.id, InstanceStatus.cancelled, today=today)

    remaining = repo.list_occurrences(instance.id, include_cancelled=True)
    assert closed.status == InstanceStatus.cancelled
    assert closed.closed_at is not None
    assert remaining
    assert all(o.due_date < today for o in remaining)


def test_complete_keeps_occurrences(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    count = len(repo.list_occurrences(instance.id))
    materializer.close_instance(repo, instance.id, InstanceStatus.completed, today=today)
    assert len(repo.list_occurrences(instance.id)) == count


def test_close_rules(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    with pytest.raises(ValidationError):
        materializer.close_instance(repo, instance.id, InstanceStatus.active, today=today)
    materializer.close_instance(repo, instance.id, InstanceStatus.completed, today=today)
    with pytest.raises(StateError):
        materializer.close_instance(repo, instance.id, InstanceStatus.cancelled, today=today)
    with pytest.raises(StateError):
        materializer.extend_instance(repo, instance.id, today + timedelta(days=40))


def test_audit_trail_records_each_write(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today, actor_id=42)
    entry = repo.audit_log[-1]
    assert entry.resource_type == "ProtocolInstance"
    assert entry.resource_id == instance.id
    assert entry.actor_id == 42


def test_consistency_check_is_clean(repo, knee_recovery, today):
    _materialize(repo, knee_recovery, today)
    report = materializer.run_consistency_checks(repo)
    assert report.checked_instances == 1
    assert report.duplicate_occurrences == []
    assert report.orphaned_occurrences == []


def test_consistency_check_reports_duplicates(repo, knee_recovery, today):
    instance = _materialize(repo, knee_recovery, today)
    duplicate = repo.list_occurrences(instance.id)[0].model_copy(update={"id": None})
    repo.save_instance(instance, instance.version, added=[duplicate])

    report = materializer.run_consistency_checks(repo)
    assert len(report.duplicate_occurrences) == 1
    assert report.duplicate_occurrences[0].due_date == duplicate.due_date
