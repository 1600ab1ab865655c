"""Frozen dataclasses for the Gmail Forwarder domain model."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


def _no_content() -> bytes:
    return b""


@dataclass(frozen=True)
class Attachment:
    """Attachment metadata with lazily loaded content."""

    name: str
    size_bytes: int
    content_type: str = "application/octet-stream"
    loader: Callable[[], bytes] = field(default=_no_content, repr=False, compare=False)

    def read(self) -> bytes:
        """Fetch the attachment bytes."""
        return self.loader()

    @property
    def extension(self) -> str:
        """Lowercased extension without the dot, or '' if there is none."""
        _, dot, ext = self.name.rpartition(".")
        return ext.lower() if dot and ext else ""


@dataclass(frozen=True)
class Message:
    """A single inbound email, consumed once by the pipeline."""

    message_id: str
    thread_id: str
    subject: str
    sender: str
    received_at: datetime
    body_text: str = ""
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)
    in_trash: bool = False


class MatchMode(str, Enum):
    """How multiple subject patterns are combined."""

    ANY = "any"
    ALL = "all"


@dataclass(frozen=True)
class PatternOutcome:
    """Result of testing one pattern against a subject."""

    pattern: str
    is_match: bool
    error: str | None = None


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying a subject against an ordered pattern set."""

    is_match: bool
    matched_pattern: str | None
    evaluated_patterns: tuple[str, ...]
    mode: MatchMode
    outcomes: tuple[PatternOutcome, ...] = field(default_factory=tuple)

    @property
    def matched_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.is_match)


@dataclass(frozen=True)
class LedgerEntry:
    """One processed message id in the deduplication ledger."""

    message_id: str
    recorded_at: datetime
    subject: str = ""
    sender: str = ""


@dataclass(frozen=True)
class LedgerStats:
    """Size and age of the ledger contents."""

    count: int
    capacity: int
    oldest: datetime | None = None
    newest: datetime | None = None


@dataclass(frozen=True)
class ArchiveFolder:
    """A folder in the hierarchical blob store."""

    name: str
    folder_id: str
    parent_id: str | None = None
    url: str = ""


@dataclass(frozen=True)
class StoredFile:
    """A blob written to the archive.

    Listings also fill in the size and creation time.
    """

    file_id: str
    name: str
    url: str = ""
    size_bytes: int = 0
    created_at: datetime | None = None


@dataclass(frozen=True)
class ArchiveStats:
    """Usage of the archive root, counted through every subfolder."""

    folder_name: str
    file_count: int
    total_bytes: int
    url: str = ""


@dataclass(frozen=True)
class CleanupResult:
    """Outcome of removing old files from the archive."""

    deleted_count: int = 0
    freed_bytes: int = 0
    failed_count: int = 0


@dataclass(frozen=True)
class ArchiveResult:
    """Per-attachment archive report: archived, skipped, or failed."""

    original_name: str
    size_bytes: int
    stored_name: str | None = None
    location_ref: str | None = None
    url: str = ""
    folder: ArchiveFolder | None = None
    upload_ms: int = 0
    error_kind: str | None = None
    error: str | None = None
    skipped: str | None = None

    @property
    def ok(self) -> bool:
        return self.stored_name is not None and self.error_kind is None

    @property
    def failed(self) -> bool:
        return self.error_kind is not None

    @classmethod
    def failure(
        cls, original_name: str, size_bytes: int, error_kind: str, error: str
    ) -> ArchiveResult:
        return cls(
            original_name=original_name,
            size_bytes=size_bytes,
            error_kind=error_kind,
            error=error,
        )


class UnitKind(str, Enum):
    """Role of a dispatch unit within one notification."""

    PRIMARY = "primary"
    CONTINUATION = "continuation"
    ARCHIVE_SUMMARY = "archive_summary"


@dataclass(frozen=True)
class DispatchUnit:
    """One outbound chat message.

    ``thread_ref`` is filled in when a follow-up is sent under a threaded
    primary post; built units never carry one.
    """

    channel: str
    payload: dict[str, Any]
    kind: UnitKind
    thread_ref: str | None = None


@dataclass(frozen=True)
class DeliveryOutcome:
    """What happened when a message's dispatch units were sent."""

    primary_delivered: bool
    units_sent: int = 0
    units_failed: int = 0
    thread_ref: str | None = None
    fell_back: bool = False
    error: str | None = None


class MessageState(str, Enum):
    """Per-message pipeline state."""

    UNSEEN = "unseen"
    CLASSIFYING = "classifying"
    SKIPPED = "skipped"
    ARCHIVING = "archiving"
    NOTIFYING = "notifying"
    RECORDED = "recorded"


@dataclass(frozen=True)
class MessageReport:
    """Terminal state of one processed message."""

    message_id: str
    state: MessageState
    reason: str = ""


@dataclass
class RunSummary:
    """Mutable run counters for progress reporting and the end-of-run summary."""

    checked: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    current_stage: str = "idle"
    elapsed_seconds: float = 0.0
    digest: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> int:
        total = self.processed + self.errors
        return round(self.processed / total * 100) if total else 100
