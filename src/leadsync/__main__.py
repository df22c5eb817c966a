"""
Main entrypoint: runs the sync queue worker (APScheduler) in one process.

FastAPI runs separately under uvicorn (for the operator endpoints).

Usage:
    python -m leadsync               # starts the dispatch + cleanup schedule
    python -m leadsync process       # drains one batch and exits
    python -m leadsync cleanup       # runs the retention sweep once
    uvicorn leadsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import json
import logging
import sys

from leadsync.config import get_settings

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _build_dispatcher():
    from leadsync.db.engine import get_engine
    from leadsync.queue.dispatcher import QueueDispatcher, load_sync_callable
    from leadsync.queue.store import SyncQueueStore

    settings = get_settings()
    if not settings.sync_target:
        logger.error(
            "No CRM sync target configured. Set LEADSYNC_SYNC_TARGET=package.module:function."
        )
        sys.exit(1)

    store = SyncQueueStore.from_settings(get_engine())
    return QueueDispatcher.from_settings(store, load_sync_callable(settings.sync_target))


async def _run_once() -> None:
    dispatcher = _build_dispatcher()
    result = await dispatcher.process_pending_queue()
    print(json.dumps(result.to_dict(), indent=2))


def _run_cleanup() -> None:
    from leadsync.db.engine import get_engine
    from leadsync.queue.store import SyncQueueStore

    settings = get_settings()
    removed = SyncQueueStore.from_settings(get_engine()).cleanup(settings.retention_days)
    logger.info("Removed %d sync job(s) older than %d days", removed, settings.retention_days)


async def _run_worker() -> None:
    from leadsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    dispatcher = _build_dispatcher()

    scheduler = build_scheduler(dispatcher)
    scheduler.start()
    logger.info(
        "Scheduler started (queue every %ds, cleanup at %02d:00 UTC)",
        settings.queue_poll_interval_seconds,
        settings.cleanup_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m leadsync process|cleanup` or just `python -m leadsync`
    command = sys.argv[1] if len(sys.argv) > 1 else "worker"
    if command == "process":
        asyncio.run(_run_once())
    elif command == "cleanup":
        _run_cleanup()
    else:
        asyncio.run(_run_worker())
