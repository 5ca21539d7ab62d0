# protocol_scheduler/crud.py - SQLAlchemy implementation of the protocol repository
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from typing import Optional, List
import logging

from fastapi import Depends

from . import models, schemas
from .database import get_db
from .errors import ConflictError, NotFoundError, RepositoryError
from .repository import ProtocolRepository
from .compliance_logger import compliance_logger

logger = logging.getLogger(__name__)


# ==================== ROW <-> SCHEMA CONVERSION ====================

def _dump_activities(activities: List[schemas.ActivityDefinition]) -> list:
    return [a.model_dump(mode="json") for a in activities]

def _template_from_row(row: models.ProtocolTemplateVersion) -> schemas.ProtocolTemplate:
    return schemas.ProtocolTemplate(
        id=row.template_id,
        version=row.version,
        name=row.name,
        activities=[schemas.ActivityDefinition.model_validate(a) for a in (row.activities or [])],
        next_activity_id=row.next_activity_id,
        created_at=row.created_at,
    )

def _instance_from_row(row: models.ProtocolInstance) -> schemas.ProtocolInstance:
    return schemas.ProtocolInstance(
        id=row.id,
        patient_id=row.patient_id,
        template_id=row.template_id,
        template_version=row.template_version,
        name=row.name,
        start_date=row.start_date,
        horizon_date=row.horizon_date,
        status=row.status,
        activities=[schemas.ActivityDefinition.model_validate(a) for a in (row.activities or [])],
        next_activity_id=row.next_activity_id,
        version=row.lock_version,
        materialized_at=row.materialized_at,
        closed_at=row.closed_at,
    )

def _occurrence_row(instance_id: int, occurrence: schemas.Occurrence) -> models.Occurrence:
    return models.Occurrence(
        instance_id=instance_id,
        activity_id=occurrence.activity_id,
        due_date=occurrence.due_date,
        status=occurrence.status,
        daily_count=occurrence.daily_count,
        completed_at=occurrence.completed_at,
        completion_note=occurrence.completion_note,
        cancelled_at=occurrence.cancelled_at,
    )


class SqlAlchemyProtocolRepository(ProtocolRepository):
    """Repository over a SQLAlchemy session. Each write method is one transaction."""

    def __init__(self, db: Session):
        self.db = db

    # ==================== TEMPLATES ====================

    def create_template(self, template, audit=None):
        try:
            db_template = models.ProtocolTemplate(latest_version=1)
            self.db.add(db_template)
            self.db.flush()

            db_version = models.ProtocolTemplateVersion(
                template_id=db_template.id,
                version=1,
                name=template.name,
                activities=_dump_activities(template.activities),
                next_activity_id=template.next_activity_id,
            )
            self.db.add(db_version)
            compliance_logger.log_event(self.db, audit, resource_id=db_template.id)
            self.db.commit()
            self.db.refresh(db_version)
            return _template_from_row(db_version)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error creating protocol template '{template.name}': {e}")
            raise RepositoryError("A database error occurred while creating the protocol template.")

    def _get_template_row(self, template_id: int) -> Optional[models.ProtocolTemplate]:
        return self.db.query(models.ProtocolTemplate).filter(models.ProtocolTemplate.id == template_id).first()

    def get_template(self, template_id, version=None):
        try:
            db_template = self._get_template_row(template_id)
            if not db_template:
                raise NotFoundError(f"Protocol template {template_id} not found")
            wanted = version if version is not None else db_template.latest_version
            db_version = self.db.query(models.ProtocolTemplateVersion).filter(
                models.ProtocolTemplateVersion.template_id == template_id,
                models.ProtocolTemplateVersion.version == wanted
            ).first()
            if not db_version:
                raise NotFoundError(f"Protocol template {template_id} has no version {version}")
            return _template_from_row(db_version)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching protocol template {template_id}: {e}")
            raise RepositoryError("A database error occurred while fetching the protocol template.")

    def list_templates(self):
        try:
            rows = self.db.query(models.ProtocolTemplateVersion).join(
                models.ProtocolTemplate,
                (models.ProtocolTemplate.id == models.ProtocolTemplateVersion.template_id)
                & (models.ProtocolTemplate.latest_version == models.ProtocolTemplateVersion.version)
            ).order_by(models.ProtocolTemplateVersion.template_id).all()
            return [_template_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            logger.error(f"Error listing protocol templates: {e}")
            raise RepositoryError("A database error occurred while listing protocol templates.")

    def add_template_version(self, template, expected_version, audit=None):
        try:
            # Compare-and-swap on the latest version pointer
            bumped = self.db.query(models.ProtocolTemplate).filter(
                models.ProtocolTemplate.id == template.id,
                models.ProtocolTemplate.latest_version == expected_version
            ).update({"latest_version": expected_version + 1}, synchronize_session=False)

            if bumped == 0:
                self.db.rollback()
                if not self._get_template_row(template.id):
                    raise NotFoundError(f"Protocol template {template.id} not found")
                raise ConflictError(
                    f"Protocol template {template.id} was modified by someone else (expected version {expected_version})."
                )

            db_version = models.ProtocolTemplateVersion(
                template_id=template.id,
                version=expected_version + 1,
                name=template.name,
                activities=_dump_activities(template.activities),
                next_activity_id=template.next_activity_id,
            )
            self.db.add(db_version)
            compliance_logger.log_event(self.db, audit, resource_id=template.id)
            self.db.commit()
            self.db.refresh(db_version)
            return _template_from_row(db_version)
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Protocol template {template.id} version {expected_version + 1} already exists.")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error adding version to protocol template {template.id}: {e}")
            raise RepositoryError("A database error occurred while updating the protocol template.")

    # ==================== INSTANCES ====================

    def create_instance(self, instance, occurrences, audit=None):
        try:
            db_instance = models.ProtocolInstance(
                patient_id=instance.patient_id,
                template_id=instance.template_id,
                template_version=instance.template_version,
                name=instance.name,
                start_date=instance.start_date,
                horizon_date=instance.horizon_date,
                status=instance.status,
                activities=_dump_activities(instance.activities),
                next_activity_id=instance.next_activity_id,
                lock_version=1,
                materialized_at=instance.materialized_at,
            )
            self.db.add(db_instance)
            self.db.flush()

            self.db.add_all([_occurrence_row(db_instance.id, o) for o in occurrences])
            compliance_logger.log_event(self.db, audit, resource_id=db_instance.id)
            self.db.commit()
            self.db.refresh(db_instance)
            return _instance_from_row(db_instance)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error creating protocol instance for patient {instance.patient_id}: {e}")
            raise RepositoryError("A database error occurred while creating the protocol instance.")

    def _get_instance_row(self, instance_id: int) -> Optional[models.ProtocolInstance]:
        return self.db.query(models.ProtocolInstance).filter(models.ProtocolInstance.id == instance_id).first()

    def get_instance(self, instance_id):
        try:
            db_instance = self._get_instance_row(instance_id)
            if not db_instance:
                raise NotFoundError(f"Protocol instance {instance_id} not found")
            return _instance_from_row(db_instance)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching protocol instance {instance_id}: {e}")
            raise RepositoryError("A database error occurred while fetching the protocol instance.")

    def list_instances(self, patient_id=None, statuses=None):
        try:
            query = self.db.query(models.ProtocolInstance)
            if patient_id is not None:
                query = query.filter(models.ProtocolInstance.patient_id == patient_id)
            if statuses is not None:
                query = query.filter(models.ProtocolInstance.status.in_(list(statuses)))
            rows = query.order_by(models.ProtocolInstance.materialized_at, models.ProtocolInstance.id).all()
            return [_instance_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            logger.error(f"Error listing protocol instances: {e}")
            raise RepositoryError("A database error occurred while listing protocol instances.")

    def save_instance(self, instance, expected_version, added=(), updated=(), deleted_ids=(), audit=None):
        try:
            bumped = self.db.query(models.ProtocolInstance).filter(
                models.ProtocolInstance.id == instance.id,
                models.ProtocolInstance.lock_version == expected_version
            ).update({
                "name": instance.name,
                "horizon_date": instance.horizon_date,
                "status": instance.status,
                "activities": _dump_activities(instance.activities),
                "next_activity_id": instance.next_activity_id,
                "closed_at": instance.closed_at,
                "lock_version": expected_version + 1,
            }, synchronize_session=False)

            if bumped == 0:
                self.db.rollback()
                if not self._get_instance_row(instance.id):
                    raise NotFoundError(f"Protocol instance {instance.id} not found")
                raise ConflictError(
                    f"Protocol instance {instance.id} was modified by someone else (expected version {expected_version})."
                )

            for occurrence in updated:
                changed = self.db.query(models.Occurrence).filter(
                    models.Occurrence.id == occurrence.id,
                    models.Occurrence.instance_id == instance.id
                ).update({
                    "status": occurrence.status,
                    "daily_count": occurrence.daily_count,
                    "completed_at": occurrence.completed_at,
                    "completion_note": occurrence.completion_note,
                    "cancelled_at": occurrence.cancelled_at,
                }, synchronize_session=False)
                if changed == 0:
                    self.db.rollback()
                    raise NotFoundError(f"Occurrence {occurrence.id} not found on instance {instance.id}")

            if deleted_ids:
                self.db.query(models.Occurrence).filter(
                    models.Occurrence.instance_id == instance.id,
                    models.Occurrence.id.in_(list(deleted_ids))
                ).delete(synchronize_session=False)

            self.db.add_all([_occurrence_row(instance.id, o) for o in added])
            compliance_logger.log_event(self.db, audit, resource_id=instance.id)
            self.db.commit()

            db_instance = self._get_instance_row(instance.id)
            self.db.refresh(db_instance)
            return _instance_from_row(db_instance)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error saving protocol instance {instance.id}: {e}")
            raise RepositoryError("A database error occurred while saving the protocol instance.")

    # ==================== OCCURRENCES ====================

    def list_occurrences(self, instance_id, include_cancelled=False):
        try:
            query = self.db.query(models.Occurrence).filter(models.Occurrence.instance_id == instance_id)
            if not include_cancelled:
                query = query.filter(models.Occurrence.cancelled_at.is_(None))
            rows = query.order_by(models.Occurrence.due_date, models.Occurrence.id).all()
            return [schemas.Occurrence.model_validate(r) for r in rows]
        except SQLAlchemyError as e:
            logger.error(f"Error listing occurrences for instance {instance_id}: {e}")
            raise RepositoryError("A database error occurred while listing occurrences.")

    def get_occurrence(self, occurrence_id):
        try:
            row = self.db.query(models.Occurrence).filter(models.Occurrence.id == occurrence_id).first()
            if not row:
                raise NotFoundError(f"Occurrence {occurrence_id} not found")
            return schemas.Occurrence.model_validate(row)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching occurrence {occurrence_id}: {e}")
            raise RepositoryError("A database error occurred while fetching the occurrence.")


# Dependency used by the routers
def get_repository(db: Session = Depends(get_db)) -> ProtocolRepository:
    return SqlAlchemyProtocolRepository(db)
