"""SQLModel engine singleton."""
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from leadsync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.database_url.startswith("sqlite"):
            _engine = create_engine(
                settings.database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            enable_sqlite_write_locking(_engine)
        else:
            _engine = create_engine(settings.database_url, pool_pre_ping=True)
        # Import all models so metadata is populated before create_all
        from leadsync.models.sync_job import SyncJob  # noqa
        SQLModel.metadata.create_all(_engine)
        from leadsync.db.migrations import run_migrations
        run_migrations(_engine)
    return _engine


def enable_sqlite_write_locking(engine) -> None:
    """Make every transaction on a file-backed SQLite engine BEGIN IMMEDIATE.

    pysqlite defers the write lock until the first UPDATE, so two workers can
    both read the same due rows before either writes. Taking the reserved
    lock up front serialises claims across processes and threads; waiting
    writers block on the connection timeout instead of failing.

    Not for in-memory StaticPool engines: those share one connection and
    cannot nest transactions.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

