import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"

from datetime import date, datetime, time, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from database.connection import Base, get_db
from database.models import (
    Clinic, User, UserRole, Patient, TherapistPatientAssignment,
    Discipline, ProgramArea, ProgramSubArea, Program, ProgramStep,
    PatientProgramAssignment, PatientProgramProgress, ScheduledSession,
)
from api.auth import hash_password, create_access_token, build_token_payload

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    token = create_access_token(build_token_payload(user))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def clinic(db):
    clinic = Clinic(name="Clínica Teste", max_patients=10)
    db.add(clinic)
    db.commit()
    db.refresh(clinic)
    return clinic


@pytest.fixture
def admin(db, clinic):
    user = User(
        clinic_id=clinic.id,
        username="admin",
        full_name="Clinic Admin",
        password_hash=PASSWORD_HASH,
        role=UserRole.THERAPIST.value,
        is_admin=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def therapist(db, clinic):
    user = User(
        clinic_id=clinic.id,
        username="therapist",
        full_name="Bruno Therapist",
        password_hash=PASSWORD_HASH,
        role=UserRole.THERAPIST.value,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def super_admin(db):
    user = User(
        username="root",
        full_name="Platform Root",
        password_hash=PASSWORD_HASH,
        role=UserRole.SUPER_ADMIN.value,
        is_admin=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db, clinic, therapist):
    patient = Patient(clinic_id=clinic.id, name="Lucas Almeida", date_of_birth=date(2018, 3, 12))
    db.add(patient)
    db.flush()
    db.add(TherapistPatientAssignment(patient_id=patient.id, therapist_id=therapist.id))
    db.commit()
    db.refresh(patient)
    return patient


@pytest.fixture
def library(db):
    """Two disciplines; the first holds two programs with steps"""
    psychology = Discipline(name="Psicologia")
    speech = Discipline(name="Fonoaudiologia")
    area = ProgramArea(name="Comunicação", discipline=psychology)
    sub_area = ProgramSubArea(name="Mando", area=area)
    first = Program(
        name="Pedir itens", objective="Pedir um item preferido", skill="Mando",
        materials=["brinquedos"], default_trials=10, sub_area=sub_area,
    )
    first.steps.append(ProgramStep(step_number=1, name="Com dica"))
    first.steps.append(ProgramStep(step_number=2, name="Independente"))
    second = Program(name="Nomear objetos", objective="Nomear figuras", default_trials=8, sub_area=sub_area)
    db.add_all([psychology, speech, area, sub_area, first, second])
    db.commit()
    return {"psychology": psychology, "speech": speech, "program": first, "other_program": second}


@pytest.fixture
def program(library):
    return library["program"]


@pytest.fixture
def assignment(db, patient, program, admin):
    assignment = PatientProgramAssignment(
        patient_id=patient.id,
        program_id=program.id,
        assigned_by_id=admin.id,
    )
    db.add(assignment)
    db.commit()
    db.refresh(assignment)
    return assignment


@pytest.fixture
def make_session(db, patient, therapist):
    def _make(scheduled_date, scheduled_time, status="scheduled", discipline_id=None, **kwargs):
        session = ScheduledSession(
            patient_id=kwargs.pop("patient_id", patient.id),
            therapist_id=kwargs.pop("therapist_id", therapist.id),
            discipline_id=discipline_id,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            duration_minutes=kwargs.pop("duration_minutes", 60),
            status=status,
            **kwargs,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session
    return _make


@pytest.fixture
def make_progress(db, assignment, therapist):
    def _make(session_date, created_at=None, attempts=10, successes=8, **kwargs):
        progress = PatientProgramProgress(
            assignment_id=kwargs.pop("assignment_id", assignment.id),
            therapist_id=kwargs.pop("therapist_id", therapist.id),
            session_date=session_date,
            attempts=attempts,
            successes=successes,
            score=round(successes / attempts * 100, 2) if attempts else None,
            created_at=created_at or datetime.combine(session_date, time(10, 30)),
            **kwargs,
        )
        db.add(progress)
        db.commit()
        db.refresh(progress)
        return progress
    return _make


@pytest.fixture
def yesterday():
    return date.today() - timedelta(days=1)


@pytest.fixture
def headers():
    return auth_headers
