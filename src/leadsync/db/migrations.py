"""
Database migrations for the sync queue.

Uses ALTER TABLE ADD COLUMN / CREATE INDEX IF NOT EXISTS for incremental
schema evolution. Each migration is idempotent: columns are only added if
absent.

Called automatically from get_engine() after create_all() so both fresh
installs and queues created by earlier releases are handled without manual
steps.
"""
from sqlalchemy import inspect, text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # Lease columns for crash recovery of "processing" jobs
        _add_column_if_missing(conn, "syncjob", "claimed_by", "VARCHAR")
        _add_column_if_missing(conn, "syncjob", "lease_expires_at", "TIMESTAMP")

        # Result metadata recorded on success
        _add_column_if_missing(conn, "syncjob", "result_json", "VARCHAR")

        conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_syncjob_status_next_retry_at "
            "ON syncjob (status, next_retry_at)"
        ))

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLModel names it).
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "VARCHAR", "TIMESTAMP".
    """
    existing_columns = {col["name"] for col in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
