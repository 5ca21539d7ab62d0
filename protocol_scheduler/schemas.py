# protocol_scheduler/schemas.py
from datetime import datetime, date
from typing import List, Optional, Dict, Any, Union, Literal, Annotated
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import (
    ActivityCategory, IntervalUnit, PatientAction, DoctorAction,
    InstanceStatus, OccurrenceStatus, AuditAction
)

# --- Base Schemas ---
# camelCase on the wire; Python code keeps using field names
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


# --- Frequency Rules ---
# Tagged union on `kind`. Range checks live in services.validation so the
# caller always gets a ValidationError from the scheduling layer.

class DailyRule(BaseSchema):
    kind: Literal["daily"] = "daily"

class WeeklyRule(BaseSchema):
    kind: Literal["weekly"] = "weekly"

class TwiceDailyRule(BaseSchema):
    kind: Literal["twice_daily"] = "twice_daily"

class TwiceWeeklyRule(BaseSchema):
    kind: Literal["twice_weekly"] = "twice_weekly"

class IntervalRule(BaseSchema):
    kind: Literal["interval"] = "interval"
    every_n: int
    unit: IntervalUnit = IntervalUnit.days

class ManualDatesRule(BaseSchema):
    kind: Literal["manual_dates"] = "manual_dates"
    start_month: int
    days_of_month: List[int] = Field(default_factory=list)

    @field_validator("days_of_month")
    @classmethod
    def normalize_days(cls, v):
        # set semantics
        return sorted(set(v))

class AsNeededRule(BaseSchema):
    kind: Literal["as_needed"] = "as_needed"

FrequencyRule = Annotated[
    Union[DailyRule, WeeklyRule, TwiceDailyRule, TwiceWeeklyRule, IntervalRule, ManualDatesRule, AsNeededRule],
    Field(discriminator="kind"),
]


# --- Activity Schemas ---
class ActivityBase(BaseSchema):
    category: ActivityCategory
    custom_category: Optional[str] = None  # free text when category is Custom
    sub_category: str = ""
    frequency: FrequencyRule
    duration_minutes: Optional[int] = None
    start_offset_days: int = 0
    description: str = ""
    instructions: str = ""
    patient_action: Optional[PatientAction] = None
    doctor_action: Optional[DoctorAction] = None
    attached_media_ref: Optional[str] = None

    @property
    def category_label(self) -> str:
        if self.category == ActivityCategory.custom:
            return self.custom_category or ""
        return self.category.value

class ActivityCreate(ActivityBase):
    pass

class ActivityDefinition(ActivityBase):
    id: int
    position: int

    # Instance-local fields; always None on template activities
    anchor_date: Optional[date] = None
    removed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.removed_at is None

class ActivityPatch(BaseSchema):
    category: Optional[ActivityCategory] = None
    custom_category: Optional[str] = None
    sub_category: Optional[str] = None
    frequency: Optional[FrequencyRule] = None
    duration_minutes: Optional[int] = None
    start_offset_days: Optional[int] = None
    description: Optional[str] = None
    instructions: Optional[str] = None
    patient_action: Optional[PatientAction] = None
    doctor_action: Optional[DoctorAction] = None
    attached_media_ref: Optional[str] = None

class ReorderRequest(BaseSchema):
    from_index: int
    to_index: int


# --- Template Schemas ---
class ProtocolTemplateCreate(BaseSchema):
    name: str
    activities: List[ActivityCreate] = Field(default_factory=list)

class ProtocolTemplateUpdate(ProtocolTemplateCreate):
    pass

class ProtocolTemplate(BaseSchema):
    id: Optional[int] = None
    version: int = 1
    name: str
    activities: List[ActivityDefinition] = Field(default_factory=list)
    next_activity_id: int = 1
    created_at: Optional[datetime] = None


# --- Instance Schemas ---
class ProtocolInstanceCreate(BaseSchema):
    template_id: int
    version: int
    patient_id: int
    start_date: date
    horizon_date: Optional[date] = None

class ProtocolInstance(BaseSchema):
    id: Optional[int] = None
    patient_id: int
    template_id: int
    template_version: int
    name: str
    start_date: date
    horizon_date: date
    status: InstanceStatus = InstanceStatus.active
    activities: List[ActivityDefinition] = Field(default_factory=list)
    next_activity_id: int = 1
    version: int = 1  # optimistic concurrency token
    materialized_at: datetime
    closed_at: Optional[datetime] = None

    @property
    def active_activities(self) -> List[ActivityDefinition]:
        return sorted((a for a in self.activities if a.is_active), key=lambda a: a.position)

class ExtendRequest(BaseSchema):
    horizon_date: date

class CloseRequest(BaseSchema):
    status: InstanceStatus  # completed or cancelled


# --- Occurrence Schemas ---
class Occurrence(BaseSchema):
    id: Optional[int] = None
    instance_id: Optional[int] = None
    activity_id: int
    due_date: date
    status: OccurrenceStatus = OccurrenceStatus.pending
    daily_count: int = 1
    completed_at: Optional[datetime] = None
    completion_note: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.cancelled_at is None

    @property
    def key(self):
        return (self.activity_id, self.due_date)

class OccurrencePatch(BaseSchema):
    status: OccurrenceStatus
    completed_at: Optional[datetime] = None
    note: Optional[str] = None

class AsNeededCreate(BaseSchema):
    completed_at: Optional[datetime] = None
    note: Optional[str] = None
    day: Optional[date] = None  # patient-local calendar day of the entry


# --- Timeline Schemas ---
class OccurrenceView(BaseSchema):
    occurrence_id: int
    instance_id: int
    protocol_name: str
    activity_id: int
    category: str
    sub_category: str
    frequency_label: str = ""
    description: str = ""
    duration_minutes: Optional[int] = None
    due_date: date
    status: OccurrenceStatus
    status_label: str
    daily_count: int = 1
    completed_at: Optional[datetime] = None
    completion_note: Optional[str] = None

class TimelineDay(BaseSchema):
    day: date
    occurrences: List[OccurrenceView]

class InstanceProgress(BaseSchema):
    instance_id: int
    status: InstanceStatus
    total: int
    pending: int
    completed: int
    skipped: int
    overdue: int
    adherence: float


# --- Export Format ---
class ActivityExport(ActivityBase):
    pass

class ProtocolExport(BaseSchema):
    format_version: int = 1
    name: str
    activities: List[ActivityExport] = Field(default_factory=list)


# --- Audit Schemas ---
class AuditEvent(BaseSchema):
    action: AuditAction
    category: str = "PROTOCOL"
    severity: str = "INFO"
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    actor_id: Optional[int] = None
    details: Optional[str] = None
    new_values: Optional[Dict[str, Any]] = None


# --- Health Schemas ---
class ConsistencyIssue(BaseSchema):
    instance_id: int
    activity_id: int
    issue: str
    due_date: Optional[date] = None
    occurrence_ids: List[int] = Field(default_factory=list)

class ConsistencyReport(BaseSchema):
    checked_instances: int
    duplicate_occurrences: List[ConsistencyIssue] = Field(default_factory=list)
    orphaned_occurrences: List[ConsistencyIssue] = Field(default_factory=list)
