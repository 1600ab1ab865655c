"""SQLite key-value property store (legacy processed flags, cached folder ids)."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

ARCHIVE_ROOT_ID_KEY = "ARCHIVE_ROOT_ID"


class PropertyStore:
    """String properties keyed by name, persisted in a SQLite table."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS properties (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> PropertyStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def get(self, key: str, default: str | None = None) -> str | None:
        row = self.conn.execute("SELECT value FROM properties WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def put(self, key: str, value: str) -> None:
        now = datetime.now(UTC).isoformat()
        self.conn.execute(
            """INSERT INTO properties (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = excluded.updated_at""",
            (key, value, now),
        )
        self.conn.commit()
        logger.debug("Property %s set", key)

    def delete(self, key: str) -> bool:
        cursor = self.conn.execute("DELETE FROM properties WHERE key = ?", (key,))
        self.conn.commit()
        return cursor.rowcount > 0

    def items(self, prefix: str = "") -> list[tuple[str, str]]:
        """Return (key, value) pairs whose key starts with ``prefix``."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.conn.execute(
            "SELECT key, value FROM properties WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (f"{escaped}%",),
        ).fetchall()
        # LIKE is case-insensitive for ASCII; recheck the exact prefix.
        return [(row["key"], row["value"]) for row in rows if row["key"].startswith(prefix)]
