# tests/test_sql_repository.py
from datetime import timedelta

import pytest

from protocol_scheduler import models, schemas
from protocol_scheduler.errors import ConflictError, NotFoundError
from protocol_scheduler.models import InstanceStatus, OccurrenceStatus
from protocol_scheduler.services import edit_coordinator, materializer, occurrences, timeline

from .conftest import make_activity

INSTANCE = edit_coordinator.ProtocolKind.instance


@pytest.fixture
def knee(sql_repo):
    return edit_coordinator.create_template(sql_repo, schemas.ProtocolTemplateCreate(
        name="Knee Recovery",
        activities=[
            make_activity(duration_minutes=20),
            make_activity(category="Consultation", sub_category="Follow-up", frequency=schemas.WeeklyRule()),
        ],
    ), actor_id=5)


def test_template_versions_are_rows(sql_repo, knee):
    assert knee.id == 1 and knee.version == 1
    updated = edit_coordinator.update_activity(
        sql_repo, edit_coordinator.ProtocolKind.template, knee.id, 1, schemas.ActivityPatch(duration_minutes=25)
    )
    assert updated.version == 2
    assert sql_repo.get_template(knee.id, 1).activities[0].duration_minutes == 20
    assert sql_repo.get_template(knee.id).activities[0].duration_minutes == 25
    assert [t.version for t in sql_repo.list_templates()] == [2]
    assert sql_repo.db.query(models.ProtocolTemplateVersion).count() == 2


def test_template_conflict(sql_repo, knee):
    sql_repo.add_template_version(knee, 1)
    with pytest.raises(ConflictError):
        sql_repo.add_template_version(knee, 1)


def test_missing_rows(sql_repo):
    with pytest.raises(NotFoundError):
        sql_repo.get_template(1)
    with pytest.raises(NotFoundError):
        sql_repo.get_instance(1)
    with pytest.raises(NotFoundError):
        sql_repo.get_occurrence(1)


def test_materialize_and_read_back(sql_repo, knee, today):
    instance = materializer.materialize(sql_repo, knee.id, 1, patient_id=7, start_date=today,
                                        horizon_date=today + timedelta(days=13), today=today)
    stored = sql_repo.get_instance(instance.id)
    assert stored.version == 1
    assert stored.status == InstanceStatus.active
    assert [a.anchor_date for a in stored.activities] == [today, today]
    assert len(sql_repo.list_occurrences(instance.id)) == 16
    assert [i.id for i in sql_repo.list_instances(patient_id=7)] == [instance.id]
    assert sql_repo.list_instances(patient_id=8) == []


def test_save_instance_is_compare_and_swap(sql_repo, knee, today):
    instance = materializer.materialize(sql_repo, knee.id, 1, patient_id=7, start_date=today,
                                        horizon_date=today + timedelta(days=6), today=today)
    target = sql_repo.list_occurrences(instance.id)[0]
    occurrences.record_completion(sql_repo, target.id, OccurrenceStatus.completed, expected_version=1)
    assert sql_repo.get_instance(instance.id).version == 2

    with pytest.raises(ConflictError):
        edit_coordinator.delete_activity(sql_repo, INSTANCE, instance.id, 1, expected_version=1, today=today)
    assert sql_repo.get_instance(instance.id).active_activities[0].id == 1


def test_soft_cancel_and_reexpansion_persist(sql_repo, knee, today):
    instance = materializer.materialize(sql_repo, knee.id, 1, patient_id=7, start_date=today,
                                        horizon_date=today + timedelta(days=6), today=today)
    edit_coordinator.update_activity(
        sql_repo, INSTANCE, instance.id, 1, schemas.ActivityPatch(frequency=schemas.WeeklyRule()), today=today
    )
    live = [o for o in sql_repo.list_occurrences(instance.id) if o.activity_id == 1]
    every = [o for o in sql_repo.list_occurrences(instance.id, include_cancelled=True) if o.activity_id == 1]
    assert [o.due_date for o in live] == [today]
    assert len(every) == 8
    assert materializer.run_consistency_checks(sql_repo).duplicate_occurrences == []


def test_cancel_deletes_future_rows(sql_repo, knee, today):
    instance = materializer.materialize(sql_repo, knee.id, 1, patient_id=7, start_date=today - timedelta(days=2),
                                        horizon_date=today + timedelta(days=4), today=today)
    materializer.close_instance(sql_repo, instance.id, InstanceStatus.cancelled, today=today)
    remaining = sql_repo.list_occurrences(instance.id, include_cancelled=True)
    assert {o.due_date for o in remaining} == {today - timedelta(days=2), today - timedelta(days=1)}
    assert sql_repo.get_instance(instance.id).closed_at is not None


def test_audit_rows_written_with_mutation(sql_repo, knee, today):
    materializer.materialize(sql_repo, knee.id, 1, patient_id=7, start_date=today,
                             horizon_date=today + timedelta(days=2), today=today, actor_id=9)
    logs = sql_repo.db.query(models.AuditLog).order_by(models.AuditLog.id).all()
    assert [(log.resource_type, log.actor_id) for log in logs] == [("ProtocolTemplate", 5), ("ProtocolInstance", 9)]
    assert logs[1].category == "PROTOCOL"


def test_rejected_write_leaves_no_audit_row(sql_repo, knee):
    with pytest.raises(ConflictError):
        edit_coordinator.add_activity(sql_repo, edit_coordinator.ProtocolKind.template, knee.id,
                                      make_activity(sub_category="Jog"), expected_version=3)
    assert sql_repo.db.query(models.AuditLog).count() == 1


def test_timeline_over_sql_store(sql_repo, knee, today):
    materializer.materialize(sql_repo, knee.id, 1, patient_id=7, start_date=today,
                             horizon_date=today + timedelta(days=1), today=today)
    days = timeline.build_timeline(sql_repo, 7, today, order="asc")
    assert [d.day for d in days] == [today, today + timedelta(days=1)]
    assert [v.activity_id for v in days[0].occurrences] == [1, 2]
