"""Tests for the deduplication ledger and its stores."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from gmail_forwarder.core.exceptions import LedgerReadError, LedgerWriteError
from gmail_forwarder.core.models import LedgerEntry
from gmail_forwarder.storage.ledger import (
    LEGACY_KEY_PREFIX,
    DeduplicationLedger,
    InMemoryLedgerStore,
    SqliteLedgerStore,
)
from gmail_forwarder.storage.properties import PropertyStore


@pytest.fixture
def memory_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def sqlite_store(tmp_db_path: Path) -> SqliteLedgerStore:
    store = SqliteLedgerStore(tmp_db_path)
    store.connect()
    yield store
    store.close()


@pytest.fixture
def properties(tmp_db_path: Path) -> PropertyStore:
    store = PropertyStore(tmp_db_path)
    store.connect()
    yield store
    store.close()


class TestRecordAndHas:
    """Basic idempotent recording."""

    def test_record_then_has(self, memory_store: InMemoryLedgerStore) -> None:
        ledger = DeduplicationLedger(memory_store)
        assert ledger.has("m1") is False
        assert ledger.record("m1", "subject", "sender") is True
        assert ledger.has("m1") is True

    def test_record_twice_stores_one_row(self, memory_store: InMemoryLedgerStore) -> None:
        ledger = DeduplicationLedger(memory_store)
        assert ledger.record("m1") is True
        assert ledger.record("m1") is False
        assert memory_store.count() == 1

    def test_record_twice_sqlite(self, sqlite_store: SqliteLedgerStore) -> None:
        ledger = DeduplicationLedger(sqlite_store)
        ledger.record("m1", "s", "f")
        ledger.record("m1", "s", "f")
        assert sqlite_store.count() == 1
        assert ledger.has("m1") is True

    def test_metadata_persisted(self, memory_store: InMemoryLedgerStore) -> None:
        DeduplicationLedger(memory_store).record("m1", "Hello", "a@example.org")
        entry = memory_store.entries[0]
        assert entry.subject == "Hello"
        assert entry.sender == "a@example.org"
        assert entry.recorded_at.tzinfo is not None

    def test_race_duplicate_tolerated(self, sqlite_store: SqliteLedgerStore) -> None:
        """Two writers that both saw 'absent' leave a harmless duplicate."""
        now = datetime.now(UTC)
        sqlite_store.append_rows([LedgerEntry("m1", now), LedgerEntry("m1", now)])
        ledger = DeduplicationLedger(sqlite_store)
        assert ledger.has("m1") is True
        assert sqlite_store.count() == 2


class TestFailureSemantics:
    """Reads fail open, writes are swallowed."""

    def test_read_error_fails_open(self) -> None:
        store = MagicMock()
        store.contains.side_effect = LedgerReadError("disk gone")
        assert DeduplicationLedger(store).has("m1") is False

    def test_write_error_swallowed(self) -> None:
        store = MagicMock()
        store.contains.return_value = False
        store.append_rows.side_effect = LedgerWriteError("read-only")
        ledger = DeduplicationLedger(store)
        assert ledger.record("m1") is False
        store.delete_oldest.assert_not_called()

    def test_eviction_error_swallowed(self) -> None:
        store = MagicMock()
        store.contains.return_value = False
        store.count.return_value = 50
        store.delete_oldest.side_effect = LedgerWriteError("locked")
        ledger = DeduplicationLedger(store, capacity=10, eviction_batch=5)
        assert ledger.record("m1") is True

    def test_invalid_bounds(self, memory_store: InMemoryLedgerStore) -> None:
        with pytest.raises(ValueError):
            DeduplicationLedger(memory_store, capacity=0)


class TestEviction:
    """Batch eviction of the oldest entries."""

    def test_bound_after_capacity_plus_batch_plus_one(
        self, memory_store: InMemoryLedgerStore
    ) -> None:
        capacity, batch = 10, 5
        ledger = DeduplicationLedger(memory_store, capacity=capacity, eviction_batch=batch)
        total = capacity + batch + 1
        for i in range(total):
            ledger.record(f"m{i}")

        assert memory_store.count() <= capacity + batch
        assert ledger.has(f"m{total - 1}") is True
        assert memory_store.delete_calls == [batch]

    def test_oldest_evicted_first(self, memory_store: InMemoryLedgerStore) -> None:
        ledger = DeduplicationLedger(memory_store, capacity=4, eviction_batch=2)
        for i in range(7):
            ledger.record(f"m{i}")
        ids = [e.message_id for e in memory_store.entries]
        assert ids == ["m2", "m3", "m4", "m5", "m6"]

    def test_no_eviction_within_slack(self, memory_store: InMemoryLedgerStore) -> None:
        ledger = DeduplicationLedger(memory_store, capacity=4, eviction_batch=2)
        for i in range(6):
            ledger.record(f"m{i}")
        assert memory_store.delete_calls == []
        assert memory_store.count() == 6

    def test_zero_slack_evicts_at_capacity(self, memory_store: InMemoryLedgerStore) -> None:
        ledger = DeduplicationLedger(memory_store, capacity=3, eviction_batch=10, slack=0)
        for i in range(4):
            ledger.record(f"m{i}")
        assert memory_store.delete_calls == [1]
        assert [e.message_id for e in memory_store.entries] == ["m1", "m2", "m3"]

    def test_sqlite_eviction(self, sqlite_store: SqliteLedgerStore) -> None:
        ledger = DeduplicationLedger(sqlite_store, capacity=5, eviction_batch=3)
        for i in range(9):
            ledger.record(f"m{i}")
        assert sqlite_store.count() == 6
        assert sqlite_store.message_ids() == ["m3", "m4", "m5", "m6", "m7", "m8"]


class TestLegacyMigration:
    """Import of PROCESSED_MSG_<id> flags."""

    def test_migrates_oldest_first(
        self, memory_store: InMemoryLedgerStore, properties: PropertyStore
    ) -> None:
        properties.put(f"{LEGACY_KEY_PREFIX}newer", "1700000002000")
        properties.put(f"{LEGACY_KEY_PREFIX}older", "1700000001000")
        properties.put("DRIVE_FOLDER_ID", "abc")

        count = DeduplicationLedger(memory_store).migrate_legacy(properties)

        assert count == 2
        assert [e.message_id for e in memory_store.entries] == ["older", "newer"]
        assert memory_store.entries[0].recorded_at == datetime.fromtimestamp(
            1700000001, tz=UTC
        )

    def test_skips_existing(
        self, memory_store: InMemoryLedgerStore, properties: PropertyStore
    ) -> None:
        ledger = DeduplicationLedger(memory_store)
        ledger.record("m1")
        properties.put(f"{LEGACY_KEY_PREFIX}m1", "1700000000000")
        properties.put(f"{LEGACY_KEY_PREFIX}m2", "1700000000000")

        assert ledger.migrate_legacy(properties) == 1
        assert memory_store.count() == 2

    def test_large_import_trimmed_to_bound(
        self, memory_store: InMemoryLedgerStore, properties: PropertyStore
    ) -> None:
        ledger = DeduplicationLedger(memory_store, capacity=4, eviction_batch=2)
        ledger.record("m0")
        ledger.record("m1")
        for i in range(9):
            properties.put(f"{LEGACY_KEY_PREFIX}old{i}", str(1700000000000 + i * 1000))

        assert ledger.migrate_legacy(properties) == 9

        assert memory_store.delete_calls == [2, 2, 2]
        assert memory_store.count() == 5
        # rows recorded before the import are evicted first
        assert [e.message_id for e in memory_store.entries] == [
            "old4", "old5", "old6", "old7", "old8",
        ]

    def test_small_import_not_trimmed(
        self, memory_store: InMemoryLedgerStore, properties: PropertyStore
    ) -> None:
        ledger = DeduplicationLedger(memory_store, capacity=4, eviction_batch=2)
        for i in range(3):
            properties.put(f"{LEGACY_KEY_PREFIX}old{i}", "1700000000000")
        ledger.migrate_legacy(properties)
        assert memory_store.delete_calls == []

    def test_bad_timestamp_uses_epoch(
        self, memory_store: InMemoryLedgerStore, properties: PropertyStore
    ) -> None:
        properties.put(f"{LEGACY_KEY_PREFIX}m1", "not-a-number")
        DeduplicationLedger(memory_store).migrate_legacy(properties)
        assert memory_store.entries[0].recorded_at == datetime.fromtimestamp(0, tz=UTC)

    def test_purge(self, memory_store: InMemoryLedgerStore, properties: PropertyStore) -> None:
        properties.put(f"{LEGACY_KEY_PREFIX}m1", "1")
        properties.put(f"{LEGACY_KEY_PREFIX}m2", "2")
        properties.put("OTHER", "x")

        assert DeduplicationLedger(memory_store).purge_legacy(properties) == 2
        assert properties.items() == [("OTHER", "x")]


class TestStats:
    """Ledger statistics."""

    def test_empty(self, sqlite_store: SqliteLedgerStore) -> None:
        stats = DeduplicationLedger(sqlite_store, capacity=100).stats()
        assert stats.count == 0
        assert stats.capacity == 100
        assert stats.oldest is None

    def test_populated(self, sqlite_store: SqliteLedgerStore) -> None:
        ledger = DeduplicationLedger(sqlite_store)
        ledger.record("m1")
        ledger.record("m2")
        stats = ledger.stats()
        assert stats.count == 2
        assert stats.oldest is not None
        assert stats.newest is not None
        assert stats.oldest <= stats.newest


class TestSqliteStore:
    """SqliteLedgerStore specifics."""

    def test_requires_connect(self, tmp_db_path: Path) -> None:
        store = SqliteLedgerStore(tmp_db_path)
        with pytest.raises(RuntimeError, match="not connected"):
            _ = store.conn

    def test_context_manager(self, tmp_db_path: Path) -> None:
        with SqliteLedgerStore(tmp_db_path) as store:
            store.append_rows([LedgerEntry("m1", datetime.now(UTC))])
        with SqliteLedgerStore(tmp_db_path) as store:
            assert store.contains("m1") is True

    def test_delete_oldest_non_positive(self, sqlite_store: SqliteLedgerStore) -> None:
        assert sqlite_store.delete_oldest(0) == 0
