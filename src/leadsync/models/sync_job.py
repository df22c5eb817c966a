"""Sync queue model: one row per lead waiting to be delivered to the CRM."""
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, Index
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"  # dead letter


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

DEFAULT_MAX_RETRIES = 5
DEFAULT_PRIORITY = 5


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_job_id() -> str:
    return uuid.uuid4().hex


def _timestamp(nullable: bool = True) -> Column:
    # Plain DateTime: rows hold naive UTC, which sqlmodel's own type rejects
    return Column(DateTime(timezone=False), nullable=nullable)


class SyncJob(SQLModel, table=True):
    """
    A queued CRM delivery.

    `payload` is the JSON snapshot taken at enqueue time and is never
    rewritten; retries always send exactly what was captured. Everything
    else on the row is scheduling metadata owned by SyncQueueStore.
    """

    __table_args__ = (
        Index("ix_syncjob_status_next_retry_at", "status", "next_retry_at"),
    )

    id: str = Field(default_factory=_new_job_id, primary_key=True)
    subject_id: str = Field(index=True)  # assessment / lead record id
    payload: str

    status: str = Field(default=JobStatus.PENDING.value)
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    priority: int = Field(default=DEFAULT_PRIORITY, index=True)  # lower runs first
    next_retry_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())

    last_error: Optional[str] = None
    error_type: Optional[str] = None  # ErrorCategory value of the last failure

    # Lease held by a dispatcher while status == "processing"
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())

    # Metadata returned by a successful sync (e.g. CRM contact id)
    result_json: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(nullable=False))
    processed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())

    @property
    def payload_data(self) -> Dict[str, Any]:
        return json.loads(self.payload)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
