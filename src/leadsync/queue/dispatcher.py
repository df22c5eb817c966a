"""
QueueDispatcher: drains due sync jobs through the CRM operation.

One cycle:
  1. Reclaim jobs whose lease expired (a previous worker died mid-sync)
  2. Claim up to batch_size due jobs (priority, then due time)
  3. Run the CRM sync for each payload, bounded by sync_timeout
  4. Record success, or classify the failure and record it

A failing sync only affects its own job. A failing store write aborts the
cycle and propagates; jobs left in "processing" are recovered by the
lease sweep.
"""
import asyncio
import importlib
import inspect
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from leadsync.config import Settings, get_settings
from leadsync.queue.errors import ErrorCategory, ErrorRecord, classify_error
from leadsync.queue.store import SyncQueueStore

logger = logging.getLogger(__name__)

SyncCallable = Callable[[Dict[str, Any]], Any]


@dataclass
class BatchError:
    job_id: str
    message: str


@dataclass
class BatchProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[BatchError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QueueDispatcher:
    """Runs queued CRM syncs and routes outcomes back into the store."""

    def __init__(
        self,
        store: SyncQueueStore,
        sync: SyncCallable,
        *,
        batch_size: int = 10,
        sync_timeout: float = 30.0,
        worker_name: Optional[str] = None,
    ):
        """
        Args:
            store: SyncQueueStore holding the jobs.
            sync: CRM operation, called with the decoded payload dict. May be
                a coroutine function or a plain (blocking) callable. Returns
                a success value, or raises / returns a failure description.
            batch_size: default number of jobs claimed per cycle.
            sync_timeout: seconds before a single sync counts as a network
                error. Keep below the store's lease.
            worker_name: claim token; a random one is used per cycle if None.
        """
        self.store = store
        self.sync = sync
        self.batch_size = batch_size
        self.sync_timeout = sync_timeout
        self.worker_name = worker_name

    @classmethod
    def from_settings(
        cls,
        store: SyncQueueStore,
        sync: SyncCallable,
        settings: Optional[Settings] = None,
    ) -> "QueueDispatcher":
        settings = settings or get_settings()
        return cls(
            store,
            sync,
            batch_size=settings.queue_batch_size,
            sync_timeout=settings.sync_timeout_seconds,
        )

    async def process_pending_queue(self, batch_size: Optional[int] = None) -> BatchProcessResult:
        """
        Run one dispatch cycle.

        Returns:
            BatchProcessResult; `failed` counts jobs whose sync failed this
            cycle, whether rescheduled or dead-lettered.

        Raises:
            Any store error (after logging it).
        """
        size = self.batch_size if batch_size is None else batch_size
        self.store.reclaim_expired_leases()
        jobs = self.store.claim_due_jobs(size, worker=self.worker_name)

        result = BatchProcessResult(processed=len(jobs))
        for job in jobs:
            try:
                payload = job.payload_data
            except ValueError as exc:
                value = None
                error = ErrorRecord(
                    ErrorCategory.VALIDATION_ERROR, f"Stored payload is not valid JSON: {exc}"
                )
                logger.warning("Sync job %s has an undecodable payload: %s", job.id, exc)
            else:
                value, error = await self._attempt(job.id, payload)
            try:
                if error is None:
                    self.store.record_success(job.id, value)
                    result.succeeded += 1
                else:
                    self.store.record_failure(job.id, error)
                    result.failed += 1
                    result.errors.append(BatchError(job_id=job.id, message=error.message))
            except Exception:
                logger.exception("Could not record outcome for sync job %s", job.id)
                raise

        if jobs:
            logger.info(
                "Processed %d sync job(s): %d succeeded, %d failed",
                result.processed, result.succeeded, result.failed,
            )
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _attempt(
        self, job_id: str, payload: Dict[str, Any]
    ) -> Tuple[Any, Optional[ErrorRecord]]:
        """Run one sync. Returns (value, None) on success, else (None, failure)."""
        try:
            value = await asyncio.wait_for(self._invoke(payload), timeout=self.sync_timeout)
        except Exception as exc:
            error = classify_error(exc)
            logger.warning("Sync job %s failed: %s (%s)", job_id, error.message, error.category.value)
            return None, error

        failure = _failure_in(value)
        if failure is not None:
            error = classify_error(failure)
            logger.warning("Sync job %s failed: %s (%s)", job_id, error.message, error.category.value)
            return None, error
        return value, None

    async def _invoke(self, payload: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.sync):
            return await self.sync(payload)
        loop = asyncio.get_running_loop()
        value = await loop.run_in_executor(None, lambda: self.sync(payload))
        if inspect.isawaitable(value):
            value = await value
        return value


def _failure_in(value: Any) -> Any:
    """Failure carried by a returned outcome, or None for a success value."""
    if isinstance(value, (ErrorRecord, BaseException)):
        return value
    if isinstance(value, Mapping) and value.get("success") is False:
        return value.get("error") or value
    return None


def load_sync_callable(target: str) -> SyncCallable:
    """
    Resolve a "package.module:attribute" reference to the CRM operation.

    Raises:
        ValueError: if target is empty or malformed.
        ImportError / AttributeError: if it cannot be resolved.
    """
    if not target or ":" not in target:
        raise ValueError(f"Sync target must look like 'package.module:function', got {target!r}")
    module_name, _, attr_path = target.partition(":")
    obj: Any = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        obj = getattr(obj, attr)
    if not callable(obj):
        raise ValueError(f"Sync target {target!r} is not callable")
    return obj
