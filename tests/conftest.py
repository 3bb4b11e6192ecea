# tests/conftest.py
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carecenter import models
from carecenter.database import Base, get_db, get_session_factory
from carecenter.main import app
from carecenter.security import get_current_user


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enforce_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def center(db):
    return _add(db, models.Center(name="North Clinic", code="NTH"))


@pytest.fixture
def other_center(db):
    return _add(db, models.Center(name="South Clinic", code="STH"))


@pytest.fixture
def superadmin(db):
    return _add(db, models.User(name="Root Admin", username="root", role=models.UserRole.superadmin))


@pytest.fixture
def accountant(db, center):
    return _add(db, models.User(name="Meera Accounts", username="meera", role=models.UserRole.accountant,
                                center_id=center.id))


@pytest.fixture
def center_admin(db, center):
    return _add(db, models.User(name="Nisha Admin", username="nisha", role=models.UserRole.centeradmin,
                                center_id=center.id))


@pytest.fixture
def receptionist(db, center):
    return _add(db, models.User(name="Ravi Desk", username="ravi", role=models.UserRole.receptionist,
                                center_id=center.id))


@pytest.fixture
def cashier(db, center):
    return _add(db, models.User(name="Asha Cashier", username="asha", role=models.UserRole.receptionist,
                                center_id=center.id))


@pytest.fixture
def doctor(db, center):
    return _add(db, models.User(name="Dr. Kapoor", username="kapoor", role=models.UserRole.doctor,
                                center_id=center.id, email="kapoor@example.com", qualification="MD"))


@pytest.fixture
def patient(db, center, doctor):
    return _add(db, models.Patient(
        name="Sunita Rao",
        uh_id="UH001",
        age=42,
        gender="female",
        contact="+911234567890",
        center_id=center.id,
        assigned_doctor_id=doctor.id,
        current_doctor_id=doctor.id,
        billing=[],
        reassigned_billing=[],
        created_at=datetime(2026, 2, 1, 8, 0),
    ))


@pytest.fixture
def api(db, session_factory):
    """Returns a factory: api(user) -> TestClient acting as that user."""
    acting = {}

    def _get_db():
        yield db

    def _current_user(request: Request):
        return acting[int(request.headers["X-Acting-User"])]

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_current_user] = _current_user

    def as_user(user):
        acting[user.id] = user
        return TestClient(app, headers={"X-Acting-User": str(user.id)})

    yield as_user
    app.dependency_overrides.clear()
