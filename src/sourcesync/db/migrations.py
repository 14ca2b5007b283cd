"""
Database migrations.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent, indexes
are created with IF NOT EXISTS.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text

from sourcesync.models.sync import PROCESSING_INDEX_NAME


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # SyncRun: persisted error report
        _add_column_if_missing(conn, "syncrun", "error_count", "INTEGER NOT NULL DEFAULT 0")
        _add_column_if_missing(conn, "syncrun", "errors_json", "TEXT")

        # SyncRun: progress heartbeat used by the stale-run reaper
        _add_column_if_missing(conn, "syncrun", "updated_at", "DATETIME")
        conn.execute(text(
            "UPDATE syncrun SET updated_at = COALESCE(completed_at, started_at) "
            "WHERE updated_at IS NULL"
        ))

        # SyncTarget: per-target credential for private projects
        _add_column_if_missing(conn, "synctarget", "credential", "TEXT")

        # Databases created before the index existed could hold several
        # processing rows per target; close all but the newest first.
        conn.execute(text(
            "UPDATE syncrun SET status = 'error', "
            "error_message = 'Superseded by a newer run', "
            "completed_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP "
            "WHERE status = 'processing' AND id NOT IN ("
            "  SELECT MAX(id) FROM syncrun WHERE status = 'processing' GROUP BY target_id"
            ")"
        ))
        conn.execute(text(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {PROCESSING_INDEX_NAME} "
            "ON syncrun (target_id) WHERE status = 'processing'"
        ))

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite column definition, e.g. "INTEGER", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
