"""
APScheduler jobs for the sync queue.

Two jobs run inside the worker process:
  - process_queue: drains one batch every queue_poll_interval_seconds
  - cleanup: daily retention sweep of completed/failed jobs

Several worker processes may run the same schedule against one database;
claims in the store keep them from syncing the same lead twice.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from leadsync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(dispatcher) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        dispatcher: QueueDispatcher to drive; its store is used for cleanup.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _process_queue,
        trigger="interval",
        seconds=settings.queue_poll_interval_seconds,
        id="process_queue",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"dispatcher": dispatcher},
    )

    scheduler.add_job(
        _cleanup,
        trigger="cron",
        hour=settings.cleanup_hour,
        minute=0,
        id="cleanup",
        replace_existing=True,
        kwargs={"store": dispatcher.store},
    )

    return scheduler


async def _process_queue(dispatcher) -> None:
    """
    Periodic job: drain one batch of due sync jobs.

    Errors are logged, not raised, so the scheduler keeps running; jobs left
    in "processing" by a failed cycle are reclaimed once their lease lapses.
    """
    try:
        await dispatcher.process_pending_queue()
    except Exception:
        logger.exception("Sync queue cycle failed")


async def _cleanup(store) -> None:
    """Daily job: delete terminal jobs older than the retention window."""
    settings = get_settings()
    try:
        removed = store.cleanup(settings.retention_days)
        logger.info("Retention sweep removed %d sync job(s)", removed)
    except Exception:
        logger.exception("Sync queue cleanup failed")
