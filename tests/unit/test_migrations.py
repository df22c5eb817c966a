"""Tests for database migration helpers."""
import pytest
from sqlalchemy import inspect, text
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from leadsync.db.migrations import run_migrations
from leadsync.models.sync_job import SyncJob


def _memory_engine():
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    """In-memory SQLite engine with full schema, for testing migrations."""
    engine = _memory_engine()
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="legacy_engine")
def legacy_engine_fixture():
    """Queue table as created before leases and result metadata existed."""
    engine = _memory_engine()
    with engine.connect() as conn:
        conn.execute(text(
            "CREATE TABLE syncjob ("
            " id VARCHAR PRIMARY KEY,"
            " subject_id VARCHAR NOT NULL,"
            " payload VARCHAR NOT NULL,"
            " status VARCHAR NOT NULL,"
            " retry_count INTEGER NOT NULL,"
            " max_retries INTEGER NOT NULL,"
            " priority INTEGER NOT NULL,"
            " next_retry_at TIMESTAMP,"
            " last_error VARCHAR,"
            " error_type VARCHAR,"
            " created_at TIMESTAMP NOT NULL,"
            " updated_at TIMESTAMP NOT NULL,"
            " processed_at TIMESTAMP)"
        ))
        conn.execute(text(
            "INSERT INTO syncjob (id, subject_id, payload, status, retry_count,"
            " max_retries, priority, created_at, updated_at)"
            " VALUES ('legacy-1', 'assessment-1', '{}', 'pending', 2, 5, 5,"
            " '2025-01-01 00:00:00', '2025-01-01 00:00:00')"
        ))
        conn.commit()
    yield engine
    engine.dispose()


class TestRunMigrations:
    def test_run_migrations_does_not_raise(self, migration_engine):
        """Migration should complete without errors on a fresh DB."""
        run_migrations(migration_engine)

    def test_run_migrations_is_idempotent(self, migration_engine):
        """Running migrations twice must not raise (columns already exist)."""
        run_migrations(migration_engine)
        run_migrations(migration_engine)

    def test_due_index_exists(self, migration_engine):
        run_migrations(migration_engine)
        indexes = {ix["name"] for ix in inspect(migration_engine).get_indexes("syncjob")}
        assert "ix_syncjob_status_next_retry_at" in indexes


class TestLegacySchema:
    def test_missing_columns_added(self, legacy_engine):
        run_migrations(legacy_engine)
        columns = {c["name"] for c in inspect(legacy_engine).get_columns("syncjob")}
        assert {"claimed_by", "lease_expires_at", "result_json"} <= columns

    def test_existing_rows_survive(self, legacy_engine):
        run_migrations(legacy_engine)
        with Session(legacy_engine) as s:
            job = s.exec(select(SyncJob).where(SyncJob.id == "legacy-1")).one()
        assert job.retry_count == 2
        assert job.claimed_by is None
        assert job.lease_expires_at is None

    def test_idempotent_on_legacy_schema(self, legacy_engine):
        run_migrations(legacy_engine)
        run_migrations(legacy_engine)
