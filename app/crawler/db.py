"""SQLite helpers for the URL dedup ledger."""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Iterable, Optional

from . import config


def get_connection(path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a SQLite connection to the ledger database.

    The parent directory is created if missing and ``check_same_thread`` is
    disabled so worker threads can share the handle. Callers serialise writes
    at a higher layer.
    """

    db_path = Path(path or config.DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create the ledger tables if they do not yet exist.

    Safe to call multiple times; each statement uses ``IF NOT EXISTS``.
    """

    statements: Iterable[str] = (
        """
        CREATE TABLE IF NOT EXISTS processed_urls (
            url          TEXT PRIMARY KEY,
            status       TEXT NOT NULL,
            timestamp    TEXT NOT NULL,
            error_code   TEXT,
            retry_count  INTEGER NOT NULL DEFAULT 0,
            created_at   TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at   TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_processed_urls_status
            ON processed_urls(status);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_processed_urls_timestamp
            ON processed_urls(timestamp);
        """,
    )

    with conn:
        for statement in statements:
            conn.execute(statement)


__all__ = ["get_connection", "initialize_schema"]
