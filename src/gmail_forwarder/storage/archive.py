"""Attachment archiving into date/subject folders with collision-safe file names."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import UTC, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from gmail_forwarder.core.exceptions import ArchiveError
from gmail_forwarder.core.models import (
    ArchiveFolder,
    ArchiveResult,
    ArchiveStats,
    Attachment,
    CleanupResult,
    StoredFile,
)
from gmail_forwarder.storage.properties import ARCHIVE_ROOT_ID_KEY, PropertyStore

logger = logging.getLogger(__name__)

MAX_SUBJECT_LENGTH = 100
DEFAULT_CLEANUP_DAYS = 90

_ILLEGAL_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")
# Full-width brackets and slash are legal but awkward in Drive paths.
_AWKWARD_CHARS = re.compile(r"[【】「」／]")

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


class BlobStore(Protocol):
    """Hierarchical folder/file store the archiver writes into."""

    def find_folder(self, name: str, parent_id: str | None) -> ArchiveFolder | None: ...

    def create_folder(self, name: str, parent_id: str | None) -> ArchiveFolder: ...

    def get_folder(self, folder_id: str) -> ArchiveFolder | None: ...

    def file_exists(self, name: str, folder_id: str) -> bool: ...

    def create_file(
        self, name: str, content: bytes, content_type: str, folder_id: str
    ) -> StoredFile: ...

    def list_folders(self, parent_id: str) -> list[ArchiveFolder]: ...

    def list_files(
        self, folder_id: str, *, created_before: datetime | None = None
    ) -> list[StoredFile]: ...

    def trash_file(self, file_id: str) -> None: ...


def sanitize_subject(subject: str, max_length: int = MAX_SUBJECT_LENGTH) -> str:
    """Make a subject usable as a folder name. May return ''."""
    cleaned = _ILLEGAL_NAME_CHARS.sub("_", subject)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()[:max_length].strip()
    return _AWKWARD_CHARS.sub("_", cleaned)


def sanitize_filename(name: str) -> str:
    return _ILLEGAL_NAME_CHARS.sub("_", name).strip()


def split_extension(name: str) -> tuple[str, str]:
    """Split ``report.v2.pdf`` into ``("report.v2", ".pdf")``."""
    base, dot, ext = name.rpartition(".")
    if not dot:
        return name, ""
    return base, f".{ext}"


def format_file_size(size_bytes: int) -> str:
    """Human readable size with one decimal, e.g. ``1.5 MB``."""
    if size_bytes <= 0:
        return "0 B"
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(_SIZE_UNITS) - 1:
        size /= 1024
        unit += 1
    return f"{round(size, 1):g} {_SIZE_UNITS[unit]}"


def resolve_archive_root(
    store: BlobStore,
    name: str,
    properties: PropertyStore | None = None,
    configured_id: str = "",
) -> ArchiveFolder:
    """Locate the archive root folder.

    Order: explicitly configured id, id cached in the property store (verified to
    still exist), a top-level folder with the given name, a newly created folder.
    The resolved id is cached for later runs.

    Raises:
        ArchiveError: If a configured id does not exist or the store fails.
    """
    try:
        if configured_id:
            folder = store.get_folder(configured_id)
            if folder is None:
                raise ArchiveError(f"Configured archive root {configured_id} not found")
            return folder

        cached = properties.get(ARCHIVE_ROOT_ID_KEY) if properties else None
        if cached:
            folder = store.get_folder(cached)
            if folder is not None:
                return folder
            logger.warning("Cached archive root %s no longer exists", cached)

        folder = store.find_folder(name, None)
        if folder is None:
            folder = store.create_folder(name, None)
            logger.info("Created archive root folder: %s (%s)", name, folder.folder_id)
    except ArchiveError:
        raise
    except Exception as e:
        raise ArchiveError(f"Failed to resolve archive root '{name}': {e}") from e

    if properties:
        properties.put(ARCHIVE_ROOT_ID_KEY, folder.folder_id)
    return folder


class AttachmentArchiver:
    """Stores a message's attachments in a ``YYYY-MM-DD_<subject>`` folder."""

    def __init__(
        self,
        store: BlobStore,
        root: ArchiveFolder,
        *,
        timezone: str = "Asia/Tokyo",
        max_attempts: int = 100,
        extensions: Iterable[str] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._root = root
        self._tz = ZoneInfo(timezone)
        self._max_attempts = max_attempts
        self._extensions = frozenset(ext.lower().lstrip(".") for ext in extensions)
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def root(self) -> ArchiveFolder:
        return self._root

    def folder_name(self, subject: str, received_at: datetime) -> str:
        date_str = received_at.astimezone(self._tz).strftime("%Y-%m-%d")
        clean = sanitize_subject(subject) or f"Email_{self._local_now():%H%M%S}"
        return f"{date_str}_{clean}"

    def archive(
        self,
        attachments: Sequence[Attachment],
        subject: str,
        received_at: datetime,
    ) -> list[ArchiveResult]:
        """Archive attachments in input order, one result per attachment.

        A failure on one attachment is reported in its result and does not stop
        the others.
        """
        if not attachments:
            return []

        logger.info("Archiving %d attachments for: %s", len(attachments), subject)
        folder = self._resolve_folder(self.folder_name(subject, received_at))

        results: list[ArchiveResult] = []
        seen: set[str] = set()
        reserved: set[str] = set()

        for index, attachment in enumerate(attachments):
            if self._extensions and attachment.extension not in self._extensions:
                reason = f"file type '.{attachment.extension}' is not archived"
                if not attachment.extension:
                    reason = "file has no extension"
                logger.info("Skipping attachment %s: %s", attachment.name, reason)
                results.append(
                    ArchiveResult(
                        original_name=attachment.name,
                        size_bytes=attachment.size_bytes,
                        skipped=reason,
                    )
                )
                continue

            try:
                result = self._archive_one(attachment, index, folder, seen, reserved)
            except Exception as e:
                logger.error(
                    "Failed to archive attachment %d (%s): %s", index + 1, attachment.name, e
                )
                result = ArchiveResult.failure(
                    attachment.name, attachment.size_bytes, type(e).__name__, str(e)
                )
            results.append(result)

        logger.info(
            "Archived %d/%d attachments into %s",
            sum(1 for r in results if r.ok), len(attachments), folder.name,
        )
        return results

    def stats(self) -> ArchiveStats:
        """Count the files under the archive root and their total size.

        Raises:
            ArchiveError: If the store cannot be listed.
        """
        try:
            files = list(self._walk_files(self._root))
        except Exception as e:
            raise ArchiveError(f"Failed to list archive '{self._root.name}': {e}") from e
        return ArchiveStats(
            folder_name=self._root.name,
            file_count=len(files),
            total_bytes=sum(f.size_bytes for f in files),
            url=self._root.url,
        )

    def cleanup(self, days: int = DEFAULT_CLEANUP_DAYS) -> CleanupResult:
        """Trash archived files created more than ``days`` days ago.

        Folders are left in place. A file that cannot be removed is counted
        in ``failed_count`` and does not stop the others.

        Raises:
            ValueError: If ``days`` is not positive.
            ArchiveError: If the store cannot be listed.
        """
        if days <= 0:
            raise ValueError(f"days must be positive, got {days}")

        cutoff = self._clock() - timedelta(days=days)
        logger.info("Starting cleanup of files older than %d days (before %s)", days, cutoff)
        try:
            old_files = list(self._walk_files(self._root, created_before=cutoff))
        except Exception as e:
            raise ArchiveError(f"Failed to list archive '{self._root.name}': {e}") from e

        deleted = freed = failed = 0
        for stored in old_files:
            try:
                self._store.trash_file(stored.file_id)
            except Exception as e:
                logger.error("Failed to remove %s: %s", stored.name, e)
                failed += 1
                continue
            logger.info("Removed old file: %s (%s)", stored.name, stored.created_at)
            deleted += 1
            freed += stored.size_bytes

        logger.info(
            "Cleanup completed: removed %d files, freed %s", deleted, format_file_size(freed)
        )
        return CleanupResult(deleted_count=deleted, freed_bytes=freed, failed_count=failed)

    def _walk_files(
        self, folder: ArchiveFolder, created_before: datetime | None = None
    ) -> Iterator[StoredFile]:
        yield from self._store.list_files(folder.folder_id, created_before=created_before)
        for child in self._store.list_folders(folder.folder_id):
            yield from self._walk_files(child, created_before)

    def _archive_one(
        self,
        attachment: Attachment,
        index: int,
        folder: ArchiveFolder,
        seen: set[str],
        reserved: set[str],
    ) -> ArchiveResult:
        start = time.monotonic()
        candidate = self._candidate_name(attachment.name, index, seen)
        stored_name = self._unique_name(candidate, folder.folder_id, reserved)
        reserved.add(stored_name)

        content = attachment.read()
        stored = self._store.create_file(
            stored_name, content, attachment.content_type, folder.folder_id
        )
        upload_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Saved %s as %s (%s) in %dms",
            attachment.name, stored.name, format_file_size(attachment.size_bytes), upload_ms,
        )

        return ArchiveResult(
            original_name=attachment.name,
            size_bytes=attachment.size_bytes,
            stored_name=stored.name,
            location_ref=stored.file_id,
            url=stored.url,
            folder=folder,
            upload_ms=upload_ms,
        )

    def _resolve_folder(self, name: str) -> ArchiveFolder:
        try:
            folder = self._store.find_folder(name, self._root.folder_id)
            if folder is not None:
                logger.debug("Using existing folder: %s", name)
                return folder
            folder = self._store.create_folder(name, self._root.folder_id)
            logger.info("Created folder: %s", name)
            return folder
        except Exception as e:
            logger.error("Folder %s unavailable, using archive root: %s", name, e)
            return self._root

    def _candidate_name(self, original_name: str, index: int, seen: set[str]) -> str:
        clean = sanitize_filename(original_name)
        if not clean:
            return f"attachment_{index + 1}_{self._local_now():%H%M%S}"
        if clean in seen:
            base, ext = split_extension(clean)
            return f"{base}_{index + 1}{ext}"
        seen.add(clean)
        return clean

    def _unique_name(self, candidate: str, folder_id: str, reserved: set[str]) -> str:
        def taken(name: str) -> bool:
            return name in reserved or self._store.file_exists(name, folder_id)

        try:
            if not taken(candidate):
                return candidate
            base, ext = split_extension(candidate)
            for counter in range(1, self._max_attempts + 1):
                name = f"{base}_{counter}{ext}"
                if not taken(name):
                    return name
            logger.warning("No free name for %s after %d attempts", candidate, self._max_attempts)
        except Exception as e:
            logger.warning("Name lookup failed for %s: %s", candidate, e)

        # Not checked against the store; only against names chosen in this call
        base, ext = split_extension(candidate)
        stamp = int(self._clock().timestamp() * 1000)
        name = f"{base}_{stamp}{ext}"
        counter = 1
        while name in reserved:
            name = f"{base}_{stamp}_{counter}{ext}"
            counter += 1
        return name

    def _local_now(self) -> datetime:
        return self._clock().astimezone(self._tz)
