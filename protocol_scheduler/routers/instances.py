# protocol_scheduler/routers/instances.py
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from datetime import date
import logging

from .. import schemas
from ..crud import get_repository
from ..dependencies import get_actor_id, get_today, http_error
from ..errors import SchedulingError
from ..repository import ProtocolRepository
from ..services import edit_coordinator, exchange, materializer, occurrences, timeline
from ..services.edit_coordinator import ProtocolKind

router = APIRouter(
    prefix="/protocol-instances",
    tags=["Protocol Instances"],
    responses={404: {"description": "Not found"}},
)

logger = logging.getLogger(__name__)


@router.post("", response_model=schemas.ProtocolInstance, status_code=status.HTTP_201_CREATED)
def create_protocol_instance(
    instance_data: schemas.ProtocolInstanceCreate,
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    """
    Apply a template version to a patient and materialize its occurrences.
    """
    try:
        return materializer.materialize(
            repo,
            template_id=instance_data.template_id,
            version=instance_data.version,
            patient_id=instance_data.patient_id,
            start_date=instance_data.start_date,
            horizon_date=instance_data.horizon_date,
            today=today,
            actor_id=actor_id,
        )
    except SchedulingError as e:
        logger.warning(f"Could not apply template {instance_data.template_id} to patient {instance_data.patient_id}: {e}")
        raise http_error(e)


@router.get("/{instance_id}", response_model=schemas.ProtocolInstance)
def read_protocol_instance(instance_id: int, repo: ProtocolRepository = Depends(get_repository)):
    try:
        return repo.get_instance(instance_id)
    except SchedulingError as e:
        raise http_error(e)


@router.get("/{instance_id}/occurrences", response_model=List[schemas.Occurrence])
def list_instance_occurrences(
    instance_id: int,
    include_cancelled: bool = Query(False, alias="includeCancelled"),
    repo: ProtocolRepository = Depends(get_repository)
):
    """
    Stored occurrences ordered by due date. Cancelled rows are history and only listed on request.
    """
    try:
        repo.get_instance(instance_id)
        return repo.list_occurrences(instance_id, include_cancelled=include_cancelled)
    except SchedulingError as e:
        raise http_error(e)


@router.get("/{instance_id}/progress", response_model=schemas.InstanceProgress)
def read_instance_progress(
    instance_id: int,
    as_of: Optional[date] = Query(None, alias="asOf"),
    repo: ProtocolRepository = Depends(get_repository),
    today: date = Depends(get_today)
):
    try:
        return timeline.summarize_instance(repo, instance_id, as_of or today)
    except SchedulingError as e:
        raise http_error(e)


@router.get("/{instance_id}/export", response_model=schemas.ProtocolExport)
def export_protocol_instance(instance_id: int, repo: ProtocolRepository = Depends(get_repository)):
    try:
        return exchange.export_instance(repo, instance_id)
    except SchedulingError as e:
        raise http_error(e)


# --- Lifecycle ---

@router.post("/{instance_id}/extend", response_model=schemas.ProtocolInstance)
def extend_protocol_instance(
    instance_id: int,
    request: schemas.ExtendRequest,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    try:
        return materializer.extend_instance(repo, instance_id, request.horizon_date, expected_version, actor_id=actor_id)
    except SchedulingError as e:
        raise http_error(e)


@router.post("/{instance_id}/close", response_model=schemas.ProtocolInstance)
def close_protocol_instance(
    instance_id: int,
    request: schemas.CloseRequest,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    """
    Complete or cancel an instance. Cancelling drops Pending occurrences from today on.
    """
    try:
        return materializer.close_instance(
            repo, instance_id, request.status, expected_version, today=today, actor_id=actor_id
        )
    except SchedulingError as e:
        logger.warning(f"Could not close protocol instance {instance_id}: {e}")
        raise http_error(e)


# --- Activity edits on the instance's own copies ---

@router.post("/{instance_id}/activities", response_model=schemas.ProtocolInstance, status_code=status.HTTP_201_CREATED)
def add_instance_activity(
    instance_id: int,
    activity: schemas.ActivityCreate,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    try:
        return edit_coordinator.add_activity(
            repo, ProtocolKind.instance, instance_id, activity, expected_version, today=today, actor_id=actor_id
        )
    except SchedulingError as e:
        logger.warning(f"Rejected new activity on instance {instance_id}: {e}")
        raise http_error(e)


@router.post("/{instance_id}/activities/reorder", response_model=schemas.ProtocolInstance)
def reorder_instance_activities(
    instance_id: int,
    reorder: schemas.ReorderRequest,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    try:
        return edit_coordinator.reorder_activities(
            repo, ProtocolKind.instance, instance_id, reorder.from_index, reorder.to_index,
            expected_version, actor_id=actor_id
        )
    except SchedulingError as e:
        raise http_error(e)


@router.patch("/{instance_id}/activities/{activity_id}", response_model=schemas.ProtocolInstance)
def update_instance_activity(
    instance_id: int,
    activity_id: int,
    patch: schemas.ActivityPatch,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    """
    Edit one activity. A new frequency or start offset regenerates its future Pending occurrences.
    """
    try:
        return edit_coordinator.update_activity(
            repo, ProtocolKind.instance, instance_id, activity_id, patch, expected_version,
            today=today, actor_id=actor_id
        )
    except SchedulingError as e:
        logger.warning(f"Rejected update of activity {activity_id} on instance {instance_id}: {e}")
        raise http_error(e)


@router.delete("/{instance_id}/activities/{activity_id}", response_model=schemas.ProtocolInstance)
def delete_instance_activity(
    instance_id: int,
    activity_id: int,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    try:
        return edit_coordinator.delete_activity(
            repo, ProtocolKind.instance, instance_id, activity_id, expected_version,
            today=today, actor_id=actor_id
        )
    except SchedulingError as e:
        raise http_error(e)


@router.post("/{instance_id}/activities/{activity_id}/occurrences", response_model=schemas.Occurrence,
             status_code=status.HTTP_201_CREATED)
def record_as_needed_occurrence(
    instance_id: int,
    activity_id: int,
    entry: schemas.AsNeededCreate,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    try:
        return occurrences.record_as_needed(
            repo, instance_id, activity_id, completed_at=entry.completed_at, note=entry.note,
            expected_version=expected_version, actor_id=actor_id, day=entry.day, today=today
        )
    except SchedulingError as e:
        raise http_error(e)
