from __future__ import annotations

import sqlite3
from pathlib import Path

from .config import get_db_path


def get_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(get_db_path(), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=10000")
    return conn


def init_db() -> None:
    db_path = Path(get_db_path())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_path.touch(exist_ok=True)
    with get_connection() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS files (
                id TEXT PRIMARY KEY,
                original_name TEXT NOT NULL,
                stored_name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                mime_type TEXT NOT NULL DEFAULT 'application/octet-stream',
                download_count INTEGER NOT NULL DEFAULT 0,
                download_limit INTEGER,
                is_enabled INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP NOT NULL
            );
            """
        )

        _ensure_column(conn, "files", "mime_type", "TEXT NOT NULL DEFAULT 'application/octet-stream'")
        _ensure_column(conn, "files", "download_limit", "INTEGER")
        _ensure_column(conn, "files", "is_enabled", "INTEGER NOT NULL DEFAULT 1")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_files_created ON files(created_at DESC)")


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column not in existing:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
