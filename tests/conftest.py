"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all MedNudge tests.
Fixtures include database sessions, a controllable clock, an in-process
queue backend, mocked notification collaborators and sample data.
"""

import os
import sys
from datetime import datetime, timedelta
from typing import Generator
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from database import Base
from models import (
    Patient, Caregiver, Medication, ScheduleOccurrence, OccurrenceStatus, Frequency
)
from queues.backends import InMemoryJobBackend
from queues.workers import start_workers
from services.container import build_container
from tools.notification_service import (
    ClinicNotifier,
    NotificationChannel,
    NotificationResult,
    NotificationTransport,
    SpeechSynthesizer,
)


# Monday, 09:00 UTC
START_TIME = datetime(2026, 3, 2, 9, 0)


class FakeClock:
    """Clock whose time only moves when a test moves it"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine, shared with services"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=test_engine
    )


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session"""
    session = session_factory()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ==================== CLOCK AND COLLABORATORS ====================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START_TIME)


@pytest.fixture
def transport():
    """Mock notification transport"""
    mock = AsyncMock(spec=NotificationTransport)
    mock.send_text.return_value = NotificationResult(success=True, channel=NotificationChannel.TEXT, message_id="msg-1")
    mock.send_voice_note.return_value = NotificationResult(success=True, channel=NotificationChannel.VOICE_NOTE, message_id="msg-2")
    mock.place_voice_call.return_value = NotificationResult(success=True, channel=NotificationChannel.VOICE_CALL, message_id="call-1")
    return mock


@pytest.fixture
def synthesizer():
    """Mock speech synthesizer"""
    mock = AsyncMock(spec=SpeechSynthesizer)
    mock.synthesize.return_value = "https://audio.example.com/reminder.mp3"
    return mock


@pytest.fixture
def clinic_notifier():
    """Mock clinic notifier"""
    mock = AsyncMock(spec=ClinicNotifier)
    mock.alert_clinic.return_value = NotificationResult(success=True, channel=NotificationChannel.CLINIC)
    return mock


@pytest.fixture
def test_settings() -> Settings:
    return Settings(QUEUE_BACKEND="memory", ENABLE_VOICE_CALLS=False, CLINIC_WEBHOOK_URL=None)


@pytest.fixture
def backend(clock) -> InMemoryJobBackend:
    return InMemoryJobBackend(clock)


@pytest.fixture
def container(test_settings, backend, transport, synthesizer, clinic_notifier, session_factory, clock):
    """Fully wired container with workers registered on in-process queues"""
    container = build_container(
        settings=test_settings,
        backend=backend,
        transport=transport,
        synthesizer=synthesizer,
        clinic_notifier=clinic_notifier,
        session_factory=session_factory,
        clock=clock,
    )
    start_workers(container)
    return container


# ==================== SAMPLE DATA FIXTURES ====================

@pytest.fixture
def test_patient(db_session: Session) -> Patient:
    """Create and return a test patient"""
    patient = Patient(
        name="Thandi",
        phone_number="+27820000001",
        messaging_id="whatsapp:+27820000001",
        language="en",
        timezone="UTC",
        voice_reminders=False,
        escalation_enabled=True,
    )
    db_session.add(patient)
    db_session.commit()
    db_session.refresh(patient)
    return patient


@pytest.fixture
def test_caregiver(db_session: Session, test_patient: Patient) -> Caregiver:
    caregiver = Caregiver(
        patient_id=test_patient.id,
        name="Sipho",
        phone_number="+27820000002",
        relationship_label="son",
    )
    db_session.add(caregiver)
    db_session.commit()
    db_session.refresh(caregiver)
    return caregiver


@pytest.fixture
def test_medication(db_session: Session, test_patient: Patient) -> Medication:
    """Twice-daily medication for seven days"""
    medication = Medication(
        patient_id=test_patient.id,
        nickname="Morning pill",
        name="Metformin",
        dosage="500mg",
        dosage_form="tablet",
        privacy_level=1,
        frequency=Frequency.DAILY.value,
        times=[{"time": "08:00", "dose": "1"}, {"time": "20:00", "dose": "1"}],
        duration_days=7,
    )
    db_session.add(medication)
    db_session.commit()
    db_session.refresh(medication)
    return medication


@pytest.fixture
def make_occurrence(db_session: Session, test_patient: Patient, test_medication: Medication, clock):
    """Factory for occurrences in a given status"""

    def _make(status: OccurrenceStatus = OccurrenceStatus.SENT, due_at: datetime = None, **fields) -> ScheduleOccurrence:
        occurrence = ScheduleOccurrence(
            patient_id=test_patient.id,
            medication_id=test_medication.id,
            due_at=due_at or clock() - timedelta(minutes=30),
            dose_amount="1",
            dose_unit="tablet",
            status=status,
            **fields
        )
        db_session.add(occurrence)
        db_session.commit()
        db_session.refresh(occurrence)
        return occurrence

    return _make


@pytest.fixture
def client(session_factory, container) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database and container overrides"""
    from app import app
    from api.deps import get_db, get_services

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: container

    # Not used as a context manager: the lifespan would start the default container
    yield TestClient(app)

    app.dependency_overrides.clear()


# ==================== MARKERS ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API test")
