"""Shared test fixtures."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from leadsync.models.sync_job import SyncJob  # noqa: F401
from leadsync.queue.store import SyncQueueStore

START = datetime(2025, 1, 15, 9, 0)


class FakeClock:
    """Deterministic clock for the store; advance() moves time forward."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine):
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="store")
def store_fixture(engine, clock) -> SyncQueueStore:
    return SyncQueueStore(engine, clock=clock)


@pytest.fixture(name="lead_payload")
def lead_payload_fixture() -> dict:
    """Snapshot of a completed assessment as the sync workflow enqueues it."""
    return {
        "sessionId": "retry-test-session-123",
        "email": "retry@company.com",
        "firstName": "Test",
        "lastName": "User",
        "company": "Retry Corp",
        "totalScore": 78,
        "scoreCategory": "leader",
    }
