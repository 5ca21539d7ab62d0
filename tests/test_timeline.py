# tests/test_timeline.py
from datetime import datetime, timedelta

import pytest

from protocol_scheduler import schemas
from protocol_scheduler.errors import ValidationError
from protocol_scheduler.models import InstanceStatus, OccurrenceStatus
from protocol_scheduler.services import edit_coordinator, materializer, occurrences, timeline

from .conftest import make_activity


def _start(repo, template, start, days, today, patient_id=7):
    return materializer.materialize(
        repo, template.id, template.version, patient_id=patient_id, start_date=start,
        horizon_date=start + timedelta(days=days), today=today,
    )


@pytest.fixture
def diet_plan(repo):
    return edit_coordinator.create_template(repo, schemas.ProtocolTemplateCreate(
        name="Diet plan",
        activities=[make_activity(category="Diet", sub_category="Hydration", description="2L water")],
    ))


def test_derived_status(today):
    pending = schemas.Occurrence(activity_id=1, due_date=today - timedelta(days=1))
    assert timeline.derive_status(pending, today) == OccurrenceStatus.overdue
    assert timeline.derive_status(pending, today - timedelta(days=1)) == OccurrenceStatus.pending
    skipped = pending.model_copy(update={"status": OccurrenceStatus.skipped})
    assert timeline.derive_status(skipped, today) == OccurrenceStatus.skipped


def test_colliding_instances_share_one_day(repo, knee_recovery, diet_plan, today):
    knee = _start(repo, knee_recovery, today, 0, today)
    diet = _start(repo, diet_plan, today, 0, today)

    days = timeline.build_timeline(repo, 7, today)
    assert len(days) == 1
    assert days[0].day == today
    views = days[0].occurrences
    assert [(v.instance_id, v.activity_id) for v in views] == [(knee.id, 1), (knee.id, 2), (diet.id, 1)]
    assert [v.protocol_name for v in views] == ["Knee Recovery", "Knee Recovery", "Diet plan"]
    assert views[0].status_label == "Assigned"
    assert views[0].frequency_label == "Daily"


def test_tie_break_follows_instance_activity_order(repo, knee_recovery, today):
    instance = _start(repo, knee_recovery, today, 0, today)
    edit_coordinator.reorder_activities(repo, edit_coordinator.ProtocolKind.instance, instance.id, 1, 0)
    views = timeline.build_timeline(repo, 7, today)[0].occurrences
    assert [v.activity_id for v in views] == [2, 1]


def test_order_and_overdue(repo, knee_recovery, today):
    _start(repo, knee_recovery, today - timedelta(days=2), 4, today)

    newest_first = timeline.build_timeline(repo, 7, today)
    assert [d.day for d in newest_first] == [today + timedelta(days=i) for i in (2, 1, 0, -1, -2)]

    chronological = timeline.build_timeline(repo, 7, today, order="asc")
    assert chronological[0].day == today - timedelta(days=2)
    assert {v.status for v in chronological[0].occurrences} == {OccurrenceStatus.overdue}
    assert chronological[0].occurrences[0].status_label == "Overdue"
    assert {v.status for v in chronological[2].occurrences} == {OccurrenceStatus.pending}


def test_overdue_is_never_persisted(repo, knee_recovery, today):
    instance = _start(repo, knee_recovery, today - timedelta(days=2), 4, today)
    timeline.build_timeline(repo, 7, today)
    assert {o.status for o in repo.list_occurrences(instance.id)} == {OccurrenceStatus.pending}
    assert timeline.build_timeline(repo, 7, today) == timeline.build_timeline(repo, 7, today)


def test_bad_order(repo, today):
    with pytest.raises(ValidationError):
        timeline.build_timeline(repo, 7, today, order="sideways")


def test_closed_instances_hidden_unless_requested(repo, knee_recovery, diet_plan, today):
    _start(repo, knee_recovery, today, 0, today)
    diet = _start(repo, diet_plan, today, 0, today)
    materializer.close_instance(repo, diet.id, InstanceStatus.completed, today=today)

    assert {v.instance_id for d in timeline.build_timeline(repo, 7, today) for v in d.occurrences} == {1}
    every = timeline.build_timeline(repo, 7, today, include_closed=True)
    assert {v.instance_id for d in every for v in d.occurrences} == {1, diet.id}


def test_other_patients_are_excluded(repo, knee_recovery, today):
    _start(repo, knee_recovery, today, 3, today, patient_id=8)
    assert timeline.build_timeline(repo, 7, today) == []


def test_deleted_activity_keeps_only_completed_history(repo, knee_recovery, today):
    instance = _start(repo, knee_recovery, today - timedelta(days=1), 4, today)
    walk = instance.active_activities[0]
    walk_occurrences = [o for o in repo.list_occurrences(instance.id) if o.activity_id == walk.id]
    assert len(walk_occurrences) == 5
    occurrences.record_completion(repo, walk_occurrences[0].id, OccurrenceStatus.completed)

    # yesterday done, four more from today onwards
    edit_coordinator.delete_activity(repo, edit_coordinator.ProtocolKind.instance, instance.id, walk.id, today=today)

    views = [v for d in timeline.build_timeline(repo, 7, today) for v in d.occurrences if v.activity_id == walk.id]
    assert len(views) == 1
    assert views[0].status == OccurrenceStatus.completed


def test_progress_summary(repo, knee_recovery, today):
    instance = _start(repo, knee_recovery, today - timedelta(days=3), 6, today)
    walks = [o for o in repo.list_occurrences(instance.id) if o.activity_id == 1]
    occurrences.record_completion(repo, walks[0].id, OccurrenceStatus.completed, completed_at=datetime(2024, 3, 1))
    occurrences.record_completion(repo, walks[1].id, OccurrenceStatus.skipped)

    progress = timeline.summarize_instance(repo, instance.id, today)
    # walks: -3 done, -2 skipped, -1 overdue, 0..3 pending; consultation at -3 overdue
    assert progress.total == 8
    assert progress.completed == 1
    assert progress.skipped == 1
    assert progress.overdue == 2
    assert progress.pending == 4
    assert progress.adherence == 0.25


def test_progress_without_settled_occurrences(repo, knee_recovery, today):
    instance = _start(repo, knee_recovery, today, 3, today)
    assert timeline.summarize_instance(repo, instance.id, today).adherence == 0.0
