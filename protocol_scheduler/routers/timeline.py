# protocol_scheduler/routers/timeline.py
from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from datetime import date

from .. import schemas
from ..crud import get_repository
from ..dependencies import get_today, http_error
from ..errors import SchedulingError
from ..models import InstanceStatus
from ..repository import ProtocolRepository
from ..services import timeline

router = APIRouter(
    prefix="/patients",
    tags=["Patient Timeline"],
    responses={404: {"description": "Not found"}},
)


@router.get("/{patient_id}/protocol-instances", response_model=List[schemas.ProtocolInstance])
def list_patient_protocol_instances(
    patient_id: int,
    status: Optional[List[InstanceStatus]] = Query(None),
    repo: ProtocolRepository = Depends(get_repository)
):
    """
    A patient's protocol instances in materialization order, optionally filtered by status.
    """
    try:
        return repo.list_instances(patient_id=patient_id, statuses=status)
    except SchedulingError as e:
        raise http_error(e)


@router.get("/{patient_id}/timeline", response_model=List[schemas.TimelineDay])
def read_patient_timeline(
    patient_id: int,
    as_of: Optional[date] = Query(None, alias="asOf"),
    order: Optional[str] = Query(None, pattern="^(asc|desc)$"),
    include_closed: bool = Query(False, alias="includeClosed"),
    repo: ProtocolRepository = Depends(get_repository),
    today: date = Depends(get_today)
):
    """
    Occurrences from every active protocol of the patient, grouped by due date.
    """
    try:
        return timeline.build_timeline(
            repo, patient_id, as_of or today, order=order, include_closed=include_closed
        )
    except SchedulingError as e:
        raise http_error(e)
