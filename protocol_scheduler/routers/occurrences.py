# protocol_scheduler/routers/occurrences.py
from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from .. import schemas
from ..crud import get_repository
from ..dependencies import get_actor_id, http_error
from ..errors import SchedulingError
from ..repository import ProtocolRepository
from ..services import occurrences

router = APIRouter(
    prefix="/occurrences",
    tags=["Occurrences"],
    responses={404: {"description": "Not found"}},
)

logger = logging.getLogger(__name__)


@router.patch("/{occurrence_id}", response_model=schemas.Occurrence)
def record_occurrence_completion(
    occurrence_id: int,
    completion: schemas.OccurrencePatch,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    """
    Mark an occurrence Completed or Skipped. Once terminal it cannot change again.
    """
    try:
        return occurrences.record_completion(
            repo, occurrence_id, completion.status,
            completed_at=completion.completed_at, note=completion.note,
            expected_version=expected_version, actor_id=actor_id
        )
    except SchedulingError as e:
        logger.warning(f"Rejected completion event for occurrence {occurrence_id}: {e}")
        raise http_error(e)
