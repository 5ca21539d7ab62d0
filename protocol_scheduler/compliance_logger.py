from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from . import models, schemas


class ComplianceLogger:
	"""Writes protocol audit events into the AuditLog table.

	Rows are added to the caller's session and committed together with the
	mutation they describe, so a rolled-back change never leaves an entry.
	"""

	def __init__(self, institution_id: str = 'PROTOCOL-SCHEDULER'):
		self.institution_id = institution_id
		self.logger = structlog.get_logger('compliance')

	def build_record(self, event: schemas.AuditEvent, resource_id: Optional[int] = None) -> models.AuditLog:
		return models.AuditLog(
			actor_id=event.actor_id,
			action=event.action,
			category=event.category or 'PROTOCOL',
			severity=event.severity or 'INFO',
			resource_type=event.resource_type,
			resource_id=event.resource_id if event.resource_id is not None else resource_id,
			details=event.details,
			new_values=event.new_values,
			timestamp=datetime.now(timezone.utc),
		)

	def log_event(self, db: Session, event: Optional[schemas.AuditEvent], resource_id: Optional[int] = None) -> None:
		"""Stage an audit row on `db`. Does NOT commit the transaction."""
		if event is None:
			return
		record = self.build_record(event, resource_id)
		db.add(record)
		self.logger.info(
			'audit_event',
			institution=self.institution_id,
			action=record.action.value,
			resource_type=record.resource_type,
			resource_id=record.resource_id,
			actor_id=record.actor_id,
		)


# Singleton instance for global import
compliance_logger = ComplianceLogger()
