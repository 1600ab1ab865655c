"""SQLite audit log of forwarder runs."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from gmail_forwarder.core.models import RunSummary

logger = logging.getLogger(__name__)


class RunHistory:
    """Records start/completion and counters of each run."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                query TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                status TEXT NOT NULL DEFAULT 'running',
                messages_checked INTEGER DEFAULT 0,
                messages_processed INTEGER DEFAULT 0,
                messages_skipped INTEGER DEFAULT 0,
                messages_failed INTEGER DEFAULT 0
            )
        """)
        self._conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> RunHistory:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def start_run(self, query: str) -> int:
        """Record the start of a run. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        cursor = self.conn.execute(
            "INSERT INTO runs (query, started_at) VALUES (?, ?)",
            (query, now),
        )
        self.conn.commit()
        return cursor.lastrowid or 0

    def complete_run(self, run_id: int, summary: RunSummary, status: str = "complete") -> None:
        """Record the completion of a run."""
        now = datetime.now(UTC).isoformat()
        self.conn.execute(
            """UPDATE runs SET
               completed_at = ?, status = ?, messages_checked = ?,
               messages_processed = ?, messages_skipped = ?, messages_failed = ?
               WHERE run_id = ?""",
            (
                now,
                status,
                summary.checked,
                summary.processed,
                summary.skipped,
                summary.errors,
                run_id,
            ),
        )
        self.conn.commit()

    def recent_runs(self, limit: int = 10) -> list[dict]:
        """Most recent runs first."""
        rows = self.conn.execute(
            "SELECT * FROM runs ORDER BY run_id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(row) for row in rows]
