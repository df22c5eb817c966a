"""FastAPI dependencies for the queue routes."""
from fastapi import Depends, HTTPException

from leadsync.config import get_settings
from leadsync.db.engine import get_engine
from leadsync.queue.dispatcher import QueueDispatcher, load_sync_callable
from leadsync.queue.store import SyncQueueStore


def get_store() -> SyncQueueStore:
    """Queue store bound to the application engine."""
    return SyncQueueStore.from_settings(get_engine())


def get_dispatcher(store: SyncQueueStore = Depends(get_store)) -> QueueDispatcher:
    """Dispatcher for on-demand draining; 503 until a sync target is configured."""
    settings = get_settings()
    if not settings.sync_target:
        raise HTTPException(status_code=503, detail="No CRM sync target configured")
    return QueueDispatcher.from_settings(store, load_sync_callable(settings.sync_target))
