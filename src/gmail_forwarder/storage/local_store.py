"""Local filesystem blob store: folders are directories, ids are paths."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from gmail_forwarder.core.exceptions import ArchiveError
from gmail_forwarder.core.models import ArchiveFolder, StoredFile

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """Archive attachments under a base directory on disk."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir.resolve()
        self._base_dir.mkdir(parents=True, exist_ok=True)

    def find_folder(self, name: str, parent_id: str | None) -> ArchiveFolder | None:
        path = self._parent(parent_id) / name
        return self._to_folder(path) if path.is_dir() else None

    def create_folder(self, name: str, parent_id: str | None) -> ArchiveFolder:
        path = self._parent(parent_id) / name
        path.mkdir(parents=True, exist_ok=True)
        logger.debug("Created directory: %s", path)
        return self._to_folder(path)

    def get_folder(self, folder_id: str) -> ArchiveFolder | None:
        path = Path(folder_id)
        return self._to_folder(path) if path.is_dir() else None

    def file_exists(self, name: str, folder_id: str) -> bool:
        return (Path(folder_id) / name).exists()

    def create_file(
        self, name: str, content: bytes, content_type: str, folder_id: str
    ) -> StoredFile:
        folder = Path(folder_id)
        if not folder.is_dir():
            raise ArchiveError(f"Folder does not exist: {folder_id}")
        path = folder / name
        path.write_bytes(content)
        logger.debug("Wrote %s (%s, %d bytes)", path, content_type, len(content))
        return StoredFile(file_id=str(path), name=name, url=path.as_uri())

    def list_folders(self, parent_id: str) -> list[ArchiveFolder]:
        return [self._to_folder(p) for p in sorted(Path(parent_id).iterdir()) if p.is_dir()]

    def list_files(
        self, folder_id: str, *, created_before: datetime | None = None
    ) -> list[StoredFile]:
        """Files directly in ``folder_id``; the modification time stands in for creation."""
        files: list[StoredFile] = []
        for path in sorted(Path(folder_id).iterdir()):
            if not path.is_file():
                continue
            stat = path.stat()
            modified = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
            if created_before is not None and modified >= created_before:
                continue
            files.append(
                StoredFile(
                    file_id=str(path),
                    name=path.name,
                    url=path.as_uri(),
                    size_bytes=stat.st_size,
                    created_at=modified,
                )
            )
        return files

    def trash_file(self, file_id: str) -> None:
        # No trash on disk
        Path(file_id).unlink()
        logger.debug("Deleted %s", file_id)

    def _parent(self, parent_id: str | None) -> Path:
        return Path(parent_id) if parent_id else self._base_dir

    def _to_folder(self, path: Path) -> ArchiveFolder:
        path = path.resolve()
        # Top-level folders have no parent, like Drive's own root
        parent = None if path.parent == self._base_dir else str(path.parent)
        return ArchiveFolder(
            name=path.name,
            folder_id=str(path),
            parent_id=parent,
            url=path.as_uri(),
        )
