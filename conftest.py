"""
PyTest configuration for the FormFlow API.
Provides a SQLite-backed session per test, dependency overrides and stand-ins
for the webhook scheduler so delivery and retries are observable without sleeping.
"""
import os

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

import pytest  # noqa: E402
from types import SimpleNamespace  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from formflow import crud, models  # noqa: E402
from formflow.app import app, get_db, get_dispatcher  # noqa: E402
from formflow.database import Base  # noqa: E402

TEST_DATABASE_URL = os.getenv('TEST_DATABASE_URL', 'sqlite:///./test.db')

# SQLite needs check_same_thread=False for FastAPI's threaded test client
connect_args = {"check_same_thread": False} if "sqlite" in TEST_DATABASE_URL else {}
test_engine = create_engine(TEST_DATABASE_URL, connect_args=connect_args)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@event.listens_for(test_engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    if "sqlite" in TEST_DATABASE_URL:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class RecordingScheduler:
    """Collects jobs instead of running them; tests run them explicitly."""

    running = False

    def __init__(self):
        self.jobs = []

    def add_job(self, func, trigger=None, run_date=None, args=None, id=None, **kwargs):
        job = SimpleNamespace(func=func, trigger=trigger, run_date=run_date, args=list(args or []), id=id)
        self.jobs.append(job)
        return job

    def get_jobs(self):
        return list(self.jobs)

    def run_next(self):
        job = self.jobs.pop(0)
        return job.func(*job.args)


class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    def dispatch(self, webhook, response_id, answers, attempt=1):
        self.calls.append({'webhook_id': webhook.id, 'response_id': response_id, 'answers': answers})


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database for each test and drop it afterwards.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def session_factory(db_session):
    return TestingSessionLocal


@pytest.fixture
def recording_scheduler():
    return RecordingScheduler()


@pytest.fixture
def recording_dispatcher():
    return RecordingDispatcher()


@pytest.fixture(scope="function")
def client(db_session, recording_dispatcher):
    """
    FastAPI TestClient with the database and webhook dispatcher overridden.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: recording_dispatcher

    # not used as a context manager: startup would boot the real scheduler
    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"X-User-Id": "user-1"}


@pytest.fixture
def published_form(db_session):
    """Published form with a required email field and an optional short text."""
    form = crud.create_form(db_session, 'user-1', 'Customer Survey')
    crud.create_field(db_session, form, {'type': 'email', 'title': 'Email', 'required': True, 'order': 0})
    crud.create_field(
        db_session,
        form,
        {'type': 'short_text', 'title': 'Comment', 'order': 1, 'validations': {'maxLength': 20}},
    )
    crud.set_form_status(db_session, form, models.FormStatus.PUBLISHED)
    return form


@pytest.fixture
def email_field(published_form):
    return next(f for f in published_form.fields if f.type == 'email')


@pytest.fixture
def internal_tag(db_session):
    return crud.create_tag(db_session, 'Internal', '#ff0000')


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "unit: mark test as unit test")
