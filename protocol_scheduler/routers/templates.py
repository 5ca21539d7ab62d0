# protocol_scheduler/routers/templates.py
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from datetime import date
import logging

from .. import schemas
from ..crud import get_repository
from ..dependencies import get_actor_id, get_today, http_error
from ..errors import SchedulingError
from ..repository import ProtocolRepository
from ..services import edit_coordinator, exchange
from ..services.edit_coordinator import ProtocolKind

router = APIRouter(
    prefix="/protocol-templates",
    tags=["Protocol Templates"],
    responses={404: {"description": "Not found"}},
)

logger = logging.getLogger(__name__)


@router.post("", response_model=schemas.ProtocolTemplate, status_code=status.HTTP_201_CREATED)
def create_protocol_template(
    template_data: schemas.ProtocolTemplateCreate,
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    """
    Create a new protocol template at version 1.
    """
    try:
        return edit_coordinator.create_template(repo, template_data, actor_id=actor_id)
    except SchedulingError as e:
        logger.warning(f"Rejected protocol template '{template_data.name}': {e}")
        raise http_error(e)


@router.get("", response_model=List[schemas.ProtocolTemplate])
def list_protocol_templates(repo: ProtocolRepository = Depends(get_repository)):
    """
    Latest version of every protocol template.
    """
    try:
        return repo.list_templates()
    except SchedulingError as e:
        raise http_error(e)


@router.post("/import", response_model=schemas.ProtocolTemplate, status_code=status.HTTP_201_CREATED)
def import_protocol_template(
    document: schemas.ProtocolExport,
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    try:
        return exchange.import_template(repo, document, actor_id=actor_id)
    except SchedulingError as e:
        logger.warning(f"Rejected protocol import '{document.name}': {e}")
        raise http_error(e)


@router.get("/{template_id}", response_model=schemas.ProtocolTemplate)
def read_protocol_template(
    template_id: int,
    version: Optional[int] = None,
    repo: ProtocolRepository = Depends(get_repository)
):
    """
    Retrieve one template version; the latest when `version` is omitted.
    """
    try:
        return repo.get_template(template_id, version)
    except SchedulingError as e:
        raise http_error(e)


@router.put("/{template_id}", response_model=schemas.ProtocolTemplate)
def replace_protocol_template(
    template_id: int,
    template_data: schemas.ProtocolTemplateUpdate,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    """
    Replace the template contents. Stored versions are never modified; the result is a new version.
    """
    try:
        return edit_coordinator.replace_template(repo, template_id, template_data, expected_version, actor_id=actor_id)
    except SchedulingError as e:
        logger.warning(f"Rejected update of protocol template {template_id}: {e}")
        raise http_error(e)


@router.get("/{template_id}/export", response_model=schemas.ProtocolExport)
def export_protocol_template(
    template_id: int,
    version: Optional[int] = None,
    repo: ProtocolRepository = Depends(get_repository)
):
    try:
        return exchange.export_template(repo, template_id, version)
    except SchedulingError as e:
        raise http_error(e)


# --- Activity edits (each one produces a new template version) ---

@router.post("/{template_id}/activities", response_model=schemas.ProtocolTemplate, status_code=status.HTTP_201_CREATED)
def add_template_activity(
    template_id: int,
    activity: schemas.ActivityCreate,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    try:
        return edit_coordinator.add_activity(
            repo, ProtocolKind.template, template_id, activity, expected_version, actor_id=actor_id
        )
    except SchedulingError as e:
        logger.warning(f"Rejected new activity on template {template_id}: {e}")
        raise http_error(e)


@router.post("/{template_id}/activities/reorder", response_model=schemas.ProtocolTemplate)
def reorder_template_activities(
    template_id: int,
    reorder: schemas.ReorderRequest,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id)
):
    try:
        return edit_coordinator.reorder_activities(
            repo, ProtocolKind.template, template_id, reorder.from_index, reorder.to_index,
            expected_version, actor_id=actor_id
        )
    except SchedulingError as e:
        raise http_error(e)


@router.patch("/{template_id}/activities/{activity_id}", response_model=schemas.ProtocolTemplate)
def update_template_activity(
    template_id: int,
    activity_id: int,
    patch: schemas.ActivityPatch,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    try:
        return edit_coordinator.update_activity(
            repo, ProtocolKind.template, template_id, activity_id, patch, expected_version,
            today=today, actor_id=actor_id
        )
    except SchedulingError as e:
        logger.warning(f"Rejected update of activity {activity_id} on template {template_id}: {e}")
        raise http_error(e)


@router.delete("/{template_id}/activities/{activity_id}", response_model=schemas.ProtocolTemplate)
def delete_template_activity(
    template_id: int,
    activity_id: int,
    expected_version: Optional[int] = Query(None, alias="expectedVersion"),
    repo: ProtocolRepository = Depends(get_repository),
    actor_id: Optional[int] = Depends(get_actor_id),
    today: date = Depends(get_today)
):
    try:
        return edit_coordinator.delete_activity(
            repo, ProtocolKind.template, template_id, activity_id, expected_version,
            today=today, actor_id=actor_id
        )
    except SchedulingError as e:
        raise http_error(e)
