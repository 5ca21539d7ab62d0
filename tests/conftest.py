# tests/conftest.py
import os
from datetime import date

os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from protocol_scheduler import schemas
from protocol_scheduler.crud import SqlAlchemyProtocolRepository, get_repository
from protocol_scheduler.database import create_tables, drop_tables
from protocol_scheduler.dependencies import get_today
from protocol_scheduler.main import app
from protocol_scheduler.models import ActivityCategory
from protocol_scheduler.repository import InMemoryProtocolRepository
from protocol_scheduler.services import edit_coordinator

TODAY = date(2024, 3, 4)


def make_activity(category=ActivityCategory.exercise, sub_category="Walk", frequency=None, **kwargs):
    return schemas.ActivityCreate(
        category=category,
        sub_category=sub_category,
        frequency=frequency or schemas.DailyRule(),
        **kwargs
    )


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def repo():
    return InMemoryProtocolRepository()


@pytest.fixture
def knee_recovery(repo):
    """Daily walking exercise plus a weekly follow-up consultation."""
    payload = schemas.ProtocolTemplateCreate(
        name="Knee Recovery",
        activities=[
            make_activity(description="Walk 20 minutes", duration_minutes=20),
            make_activity(
                category=ActivityCategory.consultation,
                sub_category="Follow-up",
                frequency=schemas.WeeklyRule(),
                description="Weekly review",
            ),
        ],
    )
    return edit_coordinator.create_template(repo, payload)


@pytest.fixture
def client(repo):
    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_today] = lambda: TODAY
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sql_repo():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield SqlAlchemyProtocolRepository(session)
    finally:
        session.close()
        drop_tables(bind=engine)
