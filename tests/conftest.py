"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from taskledger.database import Base, get_db
from taskledger.main import app
from taskledger.models.enums import Role, SessionAction, SessionStatus
from taskledger.models.session_event import SessionEvent
from taskledger.models.task import Task  # noqa: F401
from taskledger.services.principal import Principal
from taskledger.services.task_state_machine import TaskStateMachine

T0 = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Deterministic, manually advanced replacement for datetime.utcnow."""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alice():
    return Principal(
        subject_id="u1",
        role=Role.USER,
        email="alice@example.com",
        name="Alice Moreau"
    )


@pytest.fixture
def admin_principal():
    return Principal(subject_id="a1", role=Role.ADMIN, email="root@example.com")


@pytest.fixture
def make_event(db_session):
    """Insert a ledger row directly, bypassing the ledger's lifecycle rules."""
    def _make(**overrides):
        values = dict(
            subject_id="u1",
            display_name="alice",
            email="alice@example.com",
            role=Role.USER,
            action=SessionAction.LOGIN,
            login_time=T0,
            credential_instance_id="c1",
            status=SessionStatus.ACTIVE,
            created_at=T0
        )
        values.update(overrides)
        event = SessionEvent(**values)
        db_session.add(event)
        db_session.commit()
        db_session.refresh(event)
        return event
    return _make


@pytest.fixture
def sample_task(db_session, clock):
    """A fresh task at 0% progress owned by user u1."""
    return TaskStateMachine(db_session, clock=clock).create_task(
        "u1",
        title="Write quarterly report",
        description="Collect numbers and draft the summary"
    )


@pytest.fixture
def drop_table(db_session):
    """Drop a table under the session to simulate a storage outage."""
    def _drop(name):
        db_session.execute(text(f"DROP TABLE {name}"))
        db_session.commit()
    return _drop


@pytest.fixture
def api_engine():
    """Private in-memory database shared by every request of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def client(api_engine):
    """TestClient bound to the private in-memory database."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=api_engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
