"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from leadsync.api.routes import queue as queue_routes
from leadsync.db.engine import get_engine
from leadsync.queue.store import SyncQueueStore

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    # Schema and migrations are applied on first engine use
    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Jobs stranded in "processing" by a crashed worker become due again
        reclaimed = SyncQueueStore.from_settings(engine).reclaim_expired_leases()
        if reclaimed:
            logger.info("Startup returned %d expired claim(s) to the queue", reclaimed)
        yield

    app = FastAPI(
        title="Lead Sync API",
        description="Durable CRM sync retry queue",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(queue_routes.router, prefix="/queue", tags=["queue"])

    return app


# Module-level app instance for uvicorn
app = create_app()
