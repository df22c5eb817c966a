"""
SyncQueueStore: the only component that writes SyncJob rows.

State machine:
  pending    --claim-->                            processing
  processing --success-->                          completed
  processing --retryable failure, retries left-->  pending
  processing --permanent failure / exhausted-->    failed
  processing --lease expired (worker died)-->      pending

Every operation runs in its own short session. Claims select the due set
and flip it to "processing" with a compare-and-swap on status inside one
write transaction, so concurrent dispatchers never share a job.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, or_, update
from sqlmodel import Session, col, select

from leadsync.config import Settings, get_settings
from leadsync.models.sync_job import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    TERMINAL_STATUSES,
    JobStatus,
    SyncJob,
    utcnow,
)
from leadsync.queue.backoff import next_retry_delay
from leadsync.queue.errors import ErrorCategory, classify_error

logger = logging.getLogger(__name__)

PENDING = JobStatus.PENDING.value
PROCESSING = JobStatus.PROCESSING.value
COMPLETED = JobStatus.COMPLETED.value
FAILED = JobStatus.FAILED.value

DEFAULT_LEASE_SECONDS = 300
MAX_ERROR_LENGTH = 2000


class JobNotFoundError(LookupError):
    """No sync job with the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Sync job {job_id} not found")
        self.job_id = job_id


class SyncQueueStore:
    """Durable sync queue backed by the SyncJob table."""

    def __init__(
        self,
        engine,
        *,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        default_priority: int = DEFAULT_PRIORITY,
        rate_limit_priority: int = 3,
        immediate_first_attempt: bool = False,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            clock: returns the current naive-UTC time; replaced in tests.
            lease_seconds: how long a claim stays valid before it can be
                reclaimed. Must exceed the sync timeout.
            default_max_retries: max_retries for jobs enqueued without one.
            default_priority: priority for jobs enqueued without one.
            rate_limit_priority: priority for rate-limited jobs enqueued
                without one (lower = sooner).
            immediate_first_attempt: make new jobs due at once (debug/test).
        """
        self.engine = engine
        self.clock = clock
        self.lease_seconds = lease_seconds
        self.default_max_retries = default_max_retries
        self.default_priority = default_priority
        self.rate_limit_priority = rate_limit_priority
        self.immediate_first_attempt = immediate_first_attempt

    @classmethod
    def from_settings(cls, engine, settings: Optional[Settings] = None) -> "SyncQueueStore":
        settings = settings or get_settings()
        return cls(
            engine,
            lease_seconds=settings.lease_seconds,
            default_max_retries=settings.queue_max_retries,
            default_priority=settings.queue_default_priority,
            rate_limit_priority=settings.queue_rate_limit_priority,
            immediate_first_attempt=settings.backoff_immediate,
        )

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ─── Submission ───────────────────────────────────────────────────────────

    def enqueue(
        self,
        subject_id: str,
        payload: Any,
        error: Any,
        *,
        max_retries: Optional[int] = None,
        priority: Optional[int] = None,
    ) -> SyncJob:
        """
        Queue a lead whose first CRM sync attempt failed.

        Args:
            subject_id: id of the assessment/lead record being synced.
            payload: dict (serialised now) or a JSON string. Retries send
                this snapshot, not the current state of the source record.
            error: the failure that caused the enqueue: a category string,
                exception, response or ErrorRecord.
            max_retries: retry ceiling; defaults to the store default.
            priority: lower runs first; rate limits default to a higher
                priority than other errors.

        Returns:
            The persisted pending SyncJob.

        Raises:
            ValueError: empty subject_id, negative max_retries, or a payload
                string that is not JSON.
        """
        if not subject_id:
            raise ValueError("subject_id cannot be empty")
        if max_retries is not None and max_retries < 0:
            raise ValueError("max_retries cannot be negative")

        record = classify_error(error)
        if priority is None:
            priority = (
                self.rate_limit_priority
                if record.category == ErrorCategory.RATE_LIMIT
                else self.default_priority
            )
        if isinstance(payload, str):
            try:
                json.loads(payload)
            except ValueError as exc:
                raise ValueError(f"payload is not valid JSON: {exc}") from exc
            serialized = payload
        else:
            serialized = json.dumps(payload, default=str)

        now = self.clock()
        delay = 0 if self.immediate_first_attempt else next_retry_delay(0, record, now=now)
        job = SyncJob(
            subject_id=subject_id,
            payload=serialized,
            status=PENDING,
            retry_count=0,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            priority=priority,
            next_retry_at=now + timedelta(seconds=delay),
            last_error=record.message[:MAX_ERROR_LENGTH],
            error_type=record.category.value,
            created_at=now,
            updated_at=now,
        )
        with self._session() as s:
            s.add(job)
            s.commit()
            s.refresh(job)

        logger.info(
            "Queued sync job %s for %s (%s, priority=%d, next attempt in %ds)",
            job.id, subject_id, record.category.value, priority, delay,
        )
        return job

    # ─── Dispatch ─────────────────────────────────────────────────────────────

    def claim_due_jobs(self, limit: int, worker: Optional[str] = None) -> List[SyncJob]:
        """
        Atomically claim up to `limit` due pending jobs.

        Claimed jobs move to "processing" with a lease owned by `worker`
        and are returned ordered by (priority, next_retry_at).
        """
        if limit <= 0:
            return []
        now = self.clock()
        token = worker or f"worker-{uuid.uuid4().hex[:12]}"
        lease_until = now + timedelta(seconds=self.lease_seconds)

        with self._session() as s:
            candidate_ids = s.exec(
                select(SyncJob.id)
                .where(SyncJob.status == PENDING, col(SyncJob.next_retry_at) <= now)
                .order_by(col(SyncJob.priority), col(SyncJob.next_retry_at), col(SyncJob.created_at))
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).all()

            claimed_ids = []
            conn = s.connection()
            for job_id in candidate_ids:
                result = conn.execute(
                    update(SyncJob)
                    .where(col(SyncJob.id) == job_id, col(SyncJob.status) == PENDING)
                    .values(
                        status=PROCESSING,
                        claimed_by=token,
                        lease_expires_at=lease_until,
                        updated_at=now,
                    )
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)
            s.commit()

            if not claimed_ids:
                return []
            jobs = s.exec(select(SyncJob).where(col(SyncJob.id).in_(claimed_ids))).all()

        position = {job_id: i for i, job_id in enumerate(claimed_ids)}
        claimed = sorted(jobs, key=lambda j: position[j.id])
        logger.debug("%s claimed %d job(s)", token, len(claimed))
        return claimed

    def record_success(self, job_id: str, result: Any = None) -> SyncJob:
        """
        Mark a job completed. Idempotent: an already-completed job is
        returned untouched.
        """
        now = self.clock()
        with self._session() as s:
            job = s.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status == COMPLETED:
                return job
            if job.status != PROCESSING:
                logger.warning(
                    "Sync job %s succeeded while %s (lease likely expired)",
                    job_id, job.status,
                )

            job.status = COMPLETED
            job.processed_at = now
            job.updated_at = now
            job.claimed_by = None
            job.lease_expires_at = None
            job.next_retry_at = None
            if result is not None:
                job.result_json = json.dumps(result, default=str)
            s.add(job)
            s.commit()
            s.refresh(job)

        logger.info("Sync job %s completed after %d retr(ies)", job_id, job.retry_count)
        return job

    def record_failure(self, job_id: str, error: Any) -> SyncJob:
        """
        Record a failed attempt and decide what happens next.

        The retry count always goes up. The job is dead-lettered when the
        error is not retryable or the failure arrives with the retry budget
        already spent (retry_count >= max_retries); otherwise it is
        rescheduled by the backoff policy.

        Failures reported for a job already completed or failed are ignored.
        """
        record = classify_error(error)
        now = self.clock()
        with self._session() as s:
            job = s.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status in TERMINAL_STATUSES:
                logger.warning(
                    "Ignoring failure for sync job %s already %s", job_id, job.status
                )
                return job

            previous_category = job.error_type
            exhausted = job.retry_count >= job.max_retries
            job.retry_count += 1
            job.last_error = record.message[:MAX_ERROR_LENGTH]
            job.error_type = record.category.value
            job.claimed_by = None
            job.lease_expires_at = None
            job.updated_at = now

            if exhausted or not record.is_retryable:
                job.status = FAILED
                job.processed_at = now
                job.next_retry_at = None
            else:
                delay = next_retry_delay(job.retry_count, record, previous_category, now=now)
                job.status = PENDING
                job.next_retry_at = now + timedelta(seconds=delay)

            s.add(job)
            s.commit()
            s.refresh(job)

        if job.status == FAILED:
            logger.warning(
                "Sync job %s dead-lettered after %d attempt(s): %s (%s)",
                job_id, job.retry_count, job.error_type,
                "retries exhausted" if exhausted else "not retryable",
            )
        else:
            logger.debug(
                "Sync job %s rescheduled for %s (retry %d/%d, %s)",
                job_id, job.next_retry_at.isoformat(), job.retry_count,
                job.max_retries, job.error_type,
            )
        return job

    def reclaim_expired_leases(self) -> int:
        """Return processing jobs whose lease has lapsed to pending, due now."""
        now = self.clock()
        with self._session() as s:
            result = s.connection().execute(
                update(SyncJob)
                .where(
                    col(SyncJob.status) == PROCESSING,
                    or_(
                        col(SyncJob.lease_expires_at) <= now,
                        col(SyncJob.lease_expires_at).is_(None),
                    ),
                )
                .values(
                    status=PENDING,
                    next_retry_at=now,
                    claimed_by=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
            )
            s.commit()
        if result.rowcount:
            logger.warning("Reclaimed %d sync job(s) with expired leases", result.rowcount)
        return result.rowcount

    # ─── Queries ──────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> SyncJob:
        with self._session() as s:
            job = s.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_pending_entries(self, limit: int = 50) -> List[SyncJob]:
        """Due pending jobs in dispatch order, without claiming them."""
        now = self.clock()
        with self._session() as s:
            return list(s.exec(
                select(SyncJob)
                .where(SyncJob.status == PENDING, col(SyncJob.next_retry_at) <= now)
                .order_by(col(SyncJob.priority), col(SyncJob.next_retry_at))
                .limit(limit)
            ).all())

    def list_dead_letter(self) -> List[SyncJob]:
        """Permanently failed jobs, most recently failed first."""
        with self._session() as s:
            return list(s.exec(
                select(SyncJob)
                .where(SyncJob.status == FAILED)
                .order_by(col(SyncJob.processed_at).desc(), col(SyncJob.created_at).desc())
            ).all())

    def error_stats(self) -> Dict[str, int]:
        """Count of retained jobs per last error category, whatever their status."""
        with self._session() as s:
            rows = s.exec(
                select(SyncJob.error_type, func.count())
                .where(col(SyncJob.error_type).is_not(None))
                .group_by(SyncJob.error_type)
            ).all()
        return {error_type: count for error_type, count in rows}

    def queue_stats(self) -> Dict[str, Any]:
        """Job counts per status plus the age span of the pending backlog."""
        stats: Dict[str, Any] = {status.value: 0 for status in JobStatus}
        with self._session() as s:
            for status, count in s.exec(
                select(SyncJob.status, func.count()).group_by(SyncJob.status)
            ).all():
                stats[status] = count
            oldest, newest = s.exec(
                select(func.min(SyncJob.created_at), func.max(SyncJob.created_at))
                .where(SyncJob.status == PENDING)
            ).one()
        stats["oldest_pending"] = oldest
        stats["newest_pending"] = newest
        return stats

    def health(
        self,
        max_pending: int = 1000,
        max_recent_failures: int = 50,
    ) -> Dict[str, Any]:
        """
        Queue health for monitoring.

        Unhealthy when the pending backlog exceeds `max_pending` or more than
        `max_recent_failures` jobs were dead-lettered in the last 24 hours.
        """
        since = self.clock() - timedelta(hours=24)
        with self._session() as s:
            pending = s.exec(
                select(func.count()).select_from(SyncJob).where(SyncJob.status == PENDING)
            ).one()
            failed = s.exec(
                select(func.count()).select_from(SyncJob).where(SyncJob.status == FAILED)
            ).one()
            recent_failures = s.exec(
                select(func.count())
                .select_from(SyncJob)
                .where(SyncJob.status == FAILED, col(SyncJob.processed_at) >= since)
            ).one()

        backlogged = pending > max_pending
        too_many_failures = recent_failures > max_recent_failures
        return {
            "healthy": not backlogged and not too_many_failures,
            "pending_count": pending,
            "failed_count": failed,
            "recent_failures": recent_failures,
            "queue_backlogged": backlogged,
            "too_many_failures": too_many_failures,
        }

    # ─── Retention ────────────────────────────────────────────────────────────

    def cleanup(self, older_than_days: int) -> int:
        """
        Delete completed/failed jobs processed more than `older_than_days`
        ago. Pending and processing jobs are never removed.

        Returns:
            Number of rows deleted.
        """
        if older_than_days < 0:
            raise ValueError("older_than_days cannot be negative")
        cutoff = self.clock() - timedelta(days=older_than_days)
        with self._session() as s:
            result = s.connection().execute(
                delete(SyncJob).where(
                    col(SyncJob.status).in_(TERMINAL_STATUSES),
                    col(SyncJob.processed_at) < cutoff,
                )
            )
            s.commit()
        logger.info(
            "Cleanup removed %d sync job(s) processed before %s",
            result.rowcount, cutoff.isoformat(),
        )
        return result.rowcount