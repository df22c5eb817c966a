"""Tests for the SyncJob model."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import DateTime
from sqlmodel import Session, select

from leadsync.models.sync_job import JobStatus, SyncJob, utcnow


class TestSyncJob:
    def test_defaults(self):
        job = SyncJob(subject_id="assessment-1", payload="{}")
        assert job.status == "pending"
        assert job.retry_count == 0
        assert job.max_retries == 5
        assert job.priority == 5
        assert job.next_retry_at is None
        assert job.processed_at is None
        assert job.claimed_by is None

    def test_ids_are_unique(self):
        a = SyncJob(subject_id="assessment-1", payload="{}")
        b = SyncJob(subject_id="assessment-1", payload="{}")
        assert a.id != b.id

    def test_payload_data_decodes_snapshot(self):
        job = SyncJob(subject_id="assessment-1", payload='{"email": "a@b.co", "totalScore": 78}')
        assert job.payload_data == {"email": "a@b.co", "totalScore": 78}

    def test_is_terminal(self):
        job = SyncJob(subject_id="assessment-1", payload="{}")
        assert not job.is_terminal
        job.status = JobStatus.PROCESSING.value
        assert not job.is_terminal
        job.status = JobStatus.COMPLETED.value
        assert job.is_terminal
        job.status = JobStatus.FAILED.value
        assert job.is_terminal

    def test_persists_and_retrieves_from_db(self, test_session: Session):
        job = SyncJob(
            subject_id="assessment-42",
            payload='{"email": "lead@company.com"}',
            priority=3,
            next_retry_at=datetime(2025, 1, 15, 9, 1),
            last_error="Rate limit exceeded",
            error_type="rate_limit",
        )
        test_session.add(job)
        test_session.commit()
        test_session.refresh(job)

        result = test_session.exec(
            select(SyncJob).where(SyncJob.subject_id == "assessment-42")
        ).first()
        assert result is not None
        assert result.priority == 3
        assert result.error_type == "rate_limit"
        assert result.next_retry_at == datetime(2025, 1, 15, 9, 1)


def test_utcnow_is_naive():
    assert utcnow().tzinfo is None


TIMESTAMP_COLUMNS = ["next_retry_at", "lease_expires_at", "created_at", "updated_at", "processed_at"]


@pytest.mark.parametrize("name", TIMESTAMP_COLUMNS)
def test_timestamps_stored_as_naive_datetime(name):
    column_type = SyncJob.__table__.c[name].type
    assert type(column_type) is DateTime
    assert column_type.timezone is False


def test_naive_timestamps_round_trip(test_session: Session):
    now = utcnow()
    job = SyncJob(
        subject_id="assessment-7",
        payload="{}",
        next_retry_at=now + timedelta(minutes=1),
        lease_expires_at=now + timedelta(minutes=5),
        processed_at=now,
        created_at=now,
        updated_at=now,
    )
    test_session.add(job)
    test_session.commit()
    test_session.expire_all()

    stored = test_session.get(SyncJob, job.id)
    assert stored.created_at == now
    assert stored.lease_expires_at == now + timedelta(minutes=5)
    assert stored.processed_at.tzinfo is None
