"""Bounded deduplication ledger of processed message ids.

The ledger is an append log: one row per processed message, oldest rows
evicted in batches once the log grows past its capacity. Reads fail open
(an unreadable ledger means "not processed yet") and writes never fail the
message that triggered them.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from gmail_forwarder.core.exceptions import LedgerReadError, LedgerWriteError
from gmail_forwarder.core.models import LedgerEntry, LedgerStats
from gmail_forwarder.storage.properties import PropertyStore

logger = logging.getLogger(__name__)

LEGACY_KEY_PREFIX = "PROCESSED_MSG_"
MIGRATED_SUBJECT = "Migrated from legacy flags"
MIGRATED_SENDER = "unknown"


class LedgerStore(Protocol):
    """Tabular backend of the deduplication ledger."""

    def contains(self, message_id: str) -> bool: ...

    def append_rows(self, entries: Iterable[LedgerEntry]) -> int: ...

    def count(self) -> int: ...

    def delete_oldest(self, n: int) -> int: ...

    def date_range(self) -> tuple[datetime | None, datetime | None]: ...


class SqliteLedgerStore:
    """Durable ledger backend: one row per entry in a SQLite table."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SqliteLedgerStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        # No UNIQUE on message_id: a duplicate from overlapping runs is tolerated.
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS ledger (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL,
                subject TEXT DEFAULT '',
                sender TEXT DEFAULT '',
                recorded_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_ledger_message_id ON ledger(message_id);
        """)

    def contains(self, message_id: str) -> bool:
        try:
            row = self.conn.execute(
                "SELECT 1 FROM ledger WHERE message_id = ? LIMIT 1", (message_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise LedgerReadError(f"Failed to look up {message_id}: {e}") from e
        return row is not None

    def append_rows(self, entries: Iterable[LedgerEntry]) -> int:
        rows = [
            (e.message_id, e.subject, e.sender, e.recorded_at.isoformat()) for e in entries
        ]
        if not rows:
            return 0
        try:
            self.conn.executemany(
                "INSERT INTO ledger (message_id, subject, sender, recorded_at) "
                "VALUES (?, ?, ?, ?)",
                rows,
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise LedgerWriteError(f"Failed to append {len(rows)} ledger rows: {e}") from e
        return len(rows)

    def count(self) -> int:
        try:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM ledger").fetchone()
        except sqlite3.Error as e:
            raise LedgerReadError(f"Failed to count ledger rows: {e}") from e
        return int(row["cnt"])

    def delete_oldest(self, n: int) -> int:
        if n <= 0:
            return 0
        try:
            cursor = self.conn.execute(
                "DELETE FROM ledger WHERE row_id IN "
                "(SELECT row_id FROM ledger ORDER BY row_id LIMIT ?)",
                (n,),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise LedgerWriteError(f"Failed to evict {n} ledger rows: {e}") from e
        return cursor.rowcount

    def date_range(self) -> tuple[datetime | None, datetime | None]:
        try:
            row = self.conn.execute(
                "SELECT MIN(recorded_at) AS oldest, MAX(recorded_at) AS newest FROM ledger"
            ).fetchone()
        except sqlite3.Error as e:
            raise LedgerReadError(f"Failed to read ledger dates: {e}") from e
        return _parse_ts(row["oldest"]), _parse_ts(row["newest"])

    def message_ids(self) -> list[str]:
        """All recorded ids, oldest first."""
        rows = self.conn.execute("SELECT message_id FROM ledger ORDER BY row_id").fetchall()
        return [row["message_id"] for row in rows]


class InMemoryLedgerStore:
    """Volatile ledger backend for tests and dry runs."""

    def __init__(self) -> None:
        self.entries: list[LedgerEntry] = []
        self.delete_calls: list[int] = []

    def contains(self, message_id: str) -> bool:
        return any(e.message_id == message_id for e in self.entries)

    def append_rows(self, entries: Iterable[LedgerEntry]) -> int:
        new = list(entries)
        self.entries.extend(new)
        return len(new)

    def count(self) -> int:
        return len(self.entries)

    def delete_oldest(self, n: int) -> int:
        if n <= 0:
            return 0
        self.delete_calls.append(n)
        removed = min(n, len(self.entries))
        del self.entries[:removed]
        return removed

    def date_range(self) -> tuple[datetime | None, datetime | None]:
        if not self.entries:
            return None, None
        stamps = [e.recorded_at for e in self.entries]
        return min(stamps), max(stamps)


class DeduplicationLedger:
    """At-most-once bookkeeping of processed messages over a LedgerStore."""

    def __init__(
        self,
        store: LedgerStore,
        *,
        capacity: int = 10000,
        eviction_batch: int = 1000,
        slack: int | None = None,
    ) -> None:
        if capacity <= 0 or eviction_batch <= 0:
            raise ValueError("capacity and eviction_batch must be positive")
        self._store = store
        self._capacity = capacity
        self._batch = eviction_batch
        self._slack = eviction_batch if slack is None else slack

    @property
    def store(self) -> LedgerStore:
        return self._store

    def has(self, message_id: str) -> bool:
        """Return True if the id is recorded. Read failures answer False."""
        try:
            found = self._store.contains(message_id)
        except LedgerReadError as e:
            logger.error("Ledger read failed for %s, treating as unprocessed: %s", message_id, e)
            return False
        if found:
            logger.info("Message %s already recorded in ledger", message_id)
        return found

    def record(self, message_id: str, subject: str = "", sender: str = "") -> bool:
        """Append an entry for ``message_id`` unless one already exists.

        Returns True when a row was written. Write failures are logged and
        reported as False; they never propagate.
        """
        if self.has(message_id):
            return False

        entry = LedgerEntry(
            message_id=message_id,
            recorded_at=datetime.now(UTC),
            subject=subject,
            sender=sender,
        )
        try:
            self._store.append_rows([entry])
        except LedgerWriteError as e:
            logger.error("Failed to record message %s in ledger: %s", message_id, e)
            return False

        logger.info("Recorded message %s in ledger", message_id)
        self._evict_if_needed()
        return True

    def _evict_if_needed(self) -> int:
        """Delete one batch of the oldest rows once the slack is used up."""
        try:
            rows = self._store.count()
            if rows <= self._capacity + self._slack:
                return 0
            to_delete = min(rows - self._capacity, self._batch)
            logger.info("Ledger holds %d rows (capacity %d), evicting %d oldest",
                        rows, self._capacity, to_delete)
            return self._store.delete_oldest(to_delete)
        except (LedgerReadError, LedgerWriteError) as e:
            logger.error("Ledger eviction failed: %s", e)
            return 0

    def migrate_legacy(self, source: PropertyStore) -> int:
        """Import ``PROCESSED_MSG_<id>`` flags from the legacy property store.

        Entries are appended oldest first; ids already in the ledger are
        skipped. Eviction follows insertion order, so imported rows land after
        any rows already recorded and are evicted after them. An import that
        pushes the ledger past its bound is trimmed batch by batch before
        returning. Returns the number of rows imported.
        """
        legacy: list[LedgerEntry] = []
        for key, value in source.items(prefix=LEGACY_KEY_PREFIX):
            message_id = key[len(LEGACY_KEY_PREFIX):]
            if not message_id:
                continue
            legacy.append(
                LedgerEntry(
                    message_id=message_id,
                    recorded_at=_parse_legacy_timestamp(value),
                    subject=MIGRATED_SUBJECT,
                    sender=MIGRATED_SENDER,
                )
            )

        logger.info("Found %d legacy processed flags", len(legacy))
        legacy.sort(key=lambda e: e.recorded_at)
        fresh = [e for e in legacy if not self._store.contains(e.message_id)]
        imported = self._store.append_rows(fresh)
        logger.info("Migrated %d legacy entries (%d already present)",
                    imported, len(legacy) - imported)
        while self._evict_if_needed():
            pass
        return imported

    def purge_legacy(self, source: PropertyStore) -> int:
        """Delete the legacy processed flags once they have been migrated."""
        keys = [key for key, _ in source.items(prefix=LEGACY_KEY_PREFIX)]
        for key in keys:
            source.delete(key)
        logger.info("Removed %d legacy processed flags", len(keys))
        return len(keys)

    def stats(self) -> LedgerStats:
        oldest, newest = self._store.date_range()
        return LedgerStats(
            count=self._store.count(),
            capacity=self._capacity,
            oldest=oldest,
            newest=newest,
        )


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _parse_legacy_timestamp(value: str) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Unreadable legacy timestamp %r, using epoch", value)
        return datetime.fromtimestamp(0, tz=UTC)
