"""
Database migrations for yardsync.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns and indexes are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text

from yardsync.models.sync import ACTIVE_SESSION_INDEX, ACTIVE_SESSION_PREDICATE


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Supports SQLite only (uses PRAGMA table_info
    and sqlite_master).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # Customer: reconciliation placeholder markers
        _add_column_if_missing(conn, "customer", "is_placeholder", "BOOLEAN NOT NULL DEFAULT 0")
        _add_column_if_missing(conn, "customer", "mapping_confidence", "REAL")

        # Package: remote bookkeeping
        _add_column_if_missing(conn, "package", "raw_remote_json", "TEXT")
        _add_column_if_missing(conn, "package", "last_remote_sync", "DATETIME")

        # SyncSession: at most one active session per filter key
        _create_partial_unique_index_if_missing(
            conn,
            ACTIVE_SESSION_INDEX,
            "syncsession",
            "filter_key",
            ACTIVE_SESSION_PREDICATE,
        )

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "REAL", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))


def _create_partial_unique_index_if_missing(
    conn, name: str, table: str, column: str, predicate: str
) -> None:
    result = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type = 'index' AND name = :name"),
        {"name": name},
    )
    if result.first() is None:
        conn.execute(
            text(f"CREATE UNIQUE INDEX {name} ON {table} ({column}) WHERE {predicate}")
        )
