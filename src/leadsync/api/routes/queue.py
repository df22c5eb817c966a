"""Sync queue submission, inspection and drain routes."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from leadsync.api.deps import get_dispatcher, get_store
from leadsync.config import get_settings
from leadsync.models.sync_job import SyncJob
from leadsync.queue.dispatcher import QueueDispatcher
from leadsync.queue.errors import ErrorCategory, ErrorRecord
from leadsync.queue.store import JobNotFoundError, SyncQueueStore

router = APIRouter()


class EnqueueRequest(BaseModel):
    subject_id: str
    payload: Dict[str, Any]
    error_type: ErrorCategory = ErrorCategory.SERVER_ERROR
    error_message: Optional[str] = None
    max_retries: Optional[int] = None
    priority: Optional[int] = None


class EnqueueResponse(BaseModel):
    queued_for_retry: bool
    job_id: str
    priority: int
    next_retry_at: Optional[datetime]


class BatchErrorResponse(BaseModel):
    job_id: str
    message: str


class BatchProcessResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    errors: List[BatchErrorResponse]


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    oldest_pending: Optional[datetime]
    newest_pending: Optional[datetime]


class QueueHealthResponse(BaseModel):
    healthy: bool
    pending_count: int
    failed_count: int
    recent_failures: int
    queue_backlogged: bool
    too_many_failures: bool


class CleanupResponse(BaseModel):
    deleted: int
    older_than_days: int


@router.post("/jobs", response_model=EnqueueResponse, status_code=202)
def enqueue_job(request: EnqueueRequest, store: SyncQueueStore = Depends(get_store)):
    """
    Queue a lead whose first CRM sync failed.
    Returns immediately; delivery happens on a later dispatch cycle.
    """
    error = (
        ErrorRecord(request.error_type, request.error_message)
        if request.error_message
        else request.error_type.value
    )
    try:
        job = store.enqueue(
            request.subject_id,
            request.payload,
            error,
            max_retries=request.max_retries,
            priority=request.priority,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return EnqueueResponse(
        queued_for_retry=True,
        job_id=job.id,
        priority=job.priority,
        next_retry_at=job.next_retry_at,
    )


@router.get("/jobs/{job_id}", response_model=SyncJob)
def get_job(job_id: str, store: SyncQueueStore = Depends(get_store)):
    """Fetch a single sync job."""
    try:
        return store.get(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Sync job not found")


@router.get("/pending", response_model=List[SyncJob])
def pending_entries(
    limit: int = Query(50, ge=1, le=500),
    store: SyncQueueStore = Depends(get_store),
):
    """Due pending jobs in dispatch order (read-only)."""
    return store.get_pending_entries(limit)


@router.get("/dead-letter", response_model=List[SyncJob])
def dead_letter(store: SyncQueueStore = Depends(get_store)):
    """Permanently failed jobs, most recent first."""
    return store.list_dead_letter()


@router.get("/errors", response_model=Dict[str, int])
def error_stats(store: SyncQueueStore = Depends(get_store)):
    """Job counts per error category."""
    return store.error_stats()


@router.get("/stats", response_model=QueueStatsResponse)
def queue_stats(store: SyncQueueStore = Depends(get_store)):
    return store.queue_stats()


@router.get("/health", response_model=QueueHealthResponse)
def queue_health(store: SyncQueueStore = Depends(get_store)):
    settings = get_settings()
    return store.health(
        max_pending=settings.health_max_pending,
        max_recent_failures=settings.health_max_recent_failures,
    )


@router.post("/process", response_model=BatchProcessResponse)
async def process_queue(
    batch_size: Optional[int] = Query(None, ge=1, le=500),
    dispatcher: QueueDispatcher = Depends(get_dispatcher),
):
    """Drain one batch now (cron trigger or admin action)."""
    result = await dispatcher.process_pending_queue(batch_size)
    return result.to_dict()


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup(
    older_than_days: Optional[int] = Query(None, ge=0),
    store: SyncQueueStore = Depends(get_store),
):
    """Delete completed/failed jobs older than the retention window."""
    days = get_settings().retention_days if older_than_days is None else older_than_days
    return CleanupResponse(deleted=store.cleanup(days), older_than_days=days)
