# protocol_scheduler/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class ActivityCategory(str, enum.Enum):
    exercise = "Exercise"
    consultation = "Consultation"
    physiotherapy = "Physiotherapy"
    medication = "Medication"
    diet = "Diet"
    rest = "Rest"
    custom = "Custom"

class IntervalUnit(str, enum.Enum):
    hours = "hours"
    days = "days"

class PatientAction(str, enum.Enum):
    upload_report = "upload-report"
    book_appointment = "book-appointment"
    measure_vitals = "measure-vitals"
    take_medication = "take-medication"
    complete_exercise = "complete-exercise"

class DoctorAction(str, enum.Enum):
    review_report = "review-report"
    schedule_consultation = "schedule-consultation"
    adjust_medication = "adjust-medication"
    provide_feedback = "provide-feedback"

class InstanceStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"

class OccurrenceStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    overdue = "overdue"  # derived at read time, never written
    skipped = "skipped"

class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"
    BULK_ACTION = "BULK_ACTION"


# ==================== Protocol Templates ====================

class ProtocolTemplate(Base):
    """Stable identity of a reusable protocol; its content lives in versions."""
    __tablename__ = "protocol_templates"

    id = Column(Integer, primary_key=True, index=True)
    latest_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    versions = relationship("ProtocolTemplateVersion", back_populates="template", order_by="ProtocolTemplateVersion.version")


class ProtocolTemplateVersion(Base):
    """Immutable snapshot of a template. Structural edits insert a new row."""
    __tablename__ = "protocol_template_versions"
    __table_args__ = (
        UniqueConstraint('template_id', 'version', name='uq_template_version'),
        Index('idx_template_versions_template', 'template_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("protocol_templates.id"), nullable=False)
    version = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)

    # Ordered list of serialized ActivityDefinition dicts
    activities = Column(JSON, nullable=False, default=list)
    next_activity_id = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    template = relationship("ProtocolTemplate", back_populates="versions")


# ==================== Protocol Instances ====================

class ProtocolInstance(Base):
    """A template version applied to one patient from a start date."""
    __tablename__ = "protocol_instances"
    __table_args__ = (
        Index('idx_instances_patient_status', 'patient_id', 'status'),
        Index('idx_instances_template', 'template_id', 'template_version'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, nullable=False)  # owned by the external patient service
    template_id = Column(Integer, ForeignKey("protocol_templates.id"), nullable=False)
    template_version = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)

    start_date = Column(Date, nullable=False)
    horizon_date = Column(Date, nullable=False)
    status = Column(SQLAlchemyEnum(InstanceStatus, name='instance_status'), default=InstanceStatus.active, nullable=False)

    # Instance-local copies, editable independently of the template
    activities = Column(JSON, nullable=False, default=list)
    next_activity_id = Column(Integer, nullable=False, default=1)

    # Optimistic concurrency token, bumped by every write
    lock_version = Column(Integer, nullable=False, default=1)

    materialized_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    closed_at = Column(DateTime(timezone=True), nullable=True)

    occurrences = relationship("Occurrence", back_populates="instance", cascade="all, delete-orphan")


class Occurrence(Base):
    """One dated instantiation of an instance activity."""
    __tablename__ = "occurrences"
    __table_args__ = (
        Index('idx_occurrences_instance_activity_due', 'instance_id', 'activity_id', 'due_date'),
        Index('idx_occurrences_due_status', 'due_date', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    instance_id = Column(Integer, ForeignKey("protocol_instances.id"), nullable=False)
    activity_id = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(SQLAlchemyEnum(OccurrenceStatus, name='occurrence_status'), default=OccurrenceStatus.pending, nullable=False)
    daily_count = Column(Integer, nullable=False, default=1)

    # Completion event
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completion_note = Column(Text, nullable=True)

    # Soft cancel keeps history queryable
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    instance = relationship("ProtocolInstance", back_populates="occurrences")


# ==================== Audit ====================

class AuditLog(Base):
    """Audit trail of protocol mutations, written in the same transaction as the change."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_actor_date', 'actor_id', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="PROTOCOL", index=True)
    severity = Column(String(20), default="INFO")
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    new_values = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
