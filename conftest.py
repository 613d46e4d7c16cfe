from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  registers the tables
from auth import AuthContext, AuthSession
from database import enable_sqlite_foreign_keys, get_session_factory, make_session_factory
from gateway import Gateway
from main import app

BASE_TIME = datetime(2024, 9, 1, 8, 0, 0, tzinfo=timezone.utc)


# Create a file-backed SQLite database per test; each gateway call gets its own connection
@pytest.fixture(name="engine")
def engine_fixture(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    # cascade and foreign-key tests depend on this
    enable_sqlite_foreign_keys(engine)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return make_session_factory(engine)


@pytest.fixture(name="session")
def session_fixture(session_factory):
    """Session for seeding rows directly"""
    with session_factory() as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(session_factory):
    """Create a test client with dependency override"""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="gateway")
def gateway_fixture(session_factory):
    return Gateway(session_factory)


@pytest.fixture(name="auth")
def auth_fixture():
    context = AuthContext()
    context.sign_in(AuthSession(access_token="test-token", user_email="registrar@example.edu"))
    return context


def student_record(index: int, **overrides):
    """Student row values; ``created_at`` grows with ``index``."""
    record = {
        "student_code": f"STU{index:03d}",
        "first_name": f"First{index}",
        "last_name": f"Last{index}",
        "email": f"student{index}@example.edu",
        "created_at": BASE_TIME + timedelta(minutes=index),
    }
    record.update(overrides)
    return record


def course_record(index: int, **overrides):
    record = {
        "course_code": f"CRS{index:03d}",
        "title": f"Course {index}",
        "credits": 3,
        "max_capacity": 30,
        "created_at": BASE_TIME + timedelta(minutes=index),
    }
    record.update(overrides)
    return record
