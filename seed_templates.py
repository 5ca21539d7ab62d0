import os
import sys

# Ensure protocol_scheduler package import
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from protocol_scheduler import schemas
from protocol_scheduler.crud import SqlAlchemyProtocolRepository
from protocol_scheduler.database import SessionLocal, create_tables
from protocol_scheduler.models import ActivityCategory, DoctorAction, PatientAction
from protocol_scheduler.services import edit_coordinator

STARTER_TEMPLATES = [
    schemas.ProtocolTemplateCreate(
        name="Knee Recovery",
        activities=[
            schemas.ActivityCreate(
                category=ActivityCategory.exercise,
                sub_category="Walk",
                frequency=schemas.DailyRule(),
                duration_minutes=20,
                description="Gentle walk on level ground",
                instructions="Stop if pain exceeds 4/10",
                patient_action=PatientAction.complete_exercise,
            ),
            schemas.ActivityCreate(
                category=ActivityCategory.consultation,
                sub_category="Follow-up",
                frequency=schemas.WeeklyRule(),
                duration_minutes=15,
                description="Weekly review of range of motion",
                doctor_action=DoctorAction.provide_feedback,
            ),
        ],
    ),
    schemas.ProtocolTemplateCreate(
        name="Post-operative Medication",
        activities=[
            schemas.ActivityCreate(
                category=ActivityCategory.medication,
                sub_category="Oral Medication",
                frequency=schemas.IntervalRule(every_n=8, unit="hours"),
                description="Analgesic as prescribed",
                patient_action=PatientAction.take_medication,
            ),
            schemas.ActivityCreate(
                category=ActivityCategory.physiotherapy,
                sub_category="Pain Management",
                frequency=schemas.AsNeededRule(),
                description="Ice pack after exercise",
            ),
        ],
    ),
]


def main():
    create_tables()
    db = SessionLocal()
    try:
        repo = SqlAlchemyProtocolRepository(db)
        existing = {t.name for t in repo.list_templates()}
        for payload in STARTER_TEMPLATES:
            if payload.name in existing:
                print(f"Template '{payload.name}' already present, skipping")
                continue
            template = edit_coordinator.create_template(repo, payload)
            print(f"Template created: id={template.id}, name='{template.name}', activities={len(template.activities)}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
