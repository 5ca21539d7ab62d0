# protocol_scheduler/services/exchange.py
"""JSON export/import of protocol definitions for the "apply template to patient" flow."""
from typing import Optional

import structlog

from .. import schemas
from ..errors import ValidationError
from ..repository import ProtocolRepository
from . import edit_coordinator

logger = structlog.get_logger(__name__)

EXPORT_FORMAT_VERSION = 1
# Server-assigned or instance-local fields never leave the system
SERVER_FIELDS = {"id", "position", "anchor_date", "removed_at"}


def _export(name: str, activities) -> schemas.ProtocolExport:
    return schemas.ProtocolExport(
        format_version=EXPORT_FORMAT_VERSION,
        name=name,
        activities=[
            schemas.ActivityExport.model_validate(a.model_dump(exclude=SERVER_FIELDS))
            for a in sorted(activities, key=lambda a: a.position)
        ],
    )


def export_template(repo: ProtocolRepository, template_id: int, version: Optional[int] = None) -> schemas.ProtocolExport:
    template = repo.get_template(template_id, version)
    logger.info("template_exported", template_id=template.id, version=template.version)
    return _export(template.name, template.activities)


def export_instance(repo: ProtocolRepository, instance_id: int) -> schemas.ProtocolExport:
    """Export an instance's current active activities, e.g. to seed a new template from a tuned protocol."""
    instance = repo.get_instance(instance_id)
    logger.info("instance_exported", instance_id=instance.id)
    return _export(instance.name, instance.active_activities)


def import_template(repo: ProtocolRepository, document: schemas.ProtocolExport,
                    actor_id: Optional[int] = None) -> schemas.ProtocolTemplate:
    if document.format_version != EXPORT_FORMAT_VERSION:
        raise ValidationError(f"Unsupported export format version {document.format_version}")

    payload = schemas.ProtocolTemplateCreate(
        name=document.name,
        activities=[schemas.ActivityCreate.model_validate(a.model_dump()) for a in document.activities],
    )
    template = edit_coordinator.create_template(repo, payload, actor_id=actor_id)
    logger.info("template_imported", template_id=template.id, activities=len(template.activities))
    return template
