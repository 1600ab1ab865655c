"""Shared fixtures for Gmail Forwarder tests."""

from __future__ import annotations

import base64
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from gmail_forwarder.config.settings import ForwarderSettings
from gmail_forwarder.core.exceptions import ArchiveError, DispatchError
from gmail_forwarder.core.models import ArchiveFolder, Attachment, Message, StoredFile

WEBHOOK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"


class MemoryBlobStore:
    """In-memory BlobStore that records every call."""

    def __init__(self) -> None:
        self.folders: dict[str, ArchiveFolder] = {}
        self.files: dict[str, dict[str, bytes]] = {}
        self.created_folders: list[str] = []
        self.fail_create_file: set[str] = set()
        self.fail_folders = False
        self.fail_lookup = False
        self.fail_trash: set[str] = set()
        self.trashed: list[str] = []
        # Creation time given to new files
        self.now = datetime(2025, 6, 5, 1, 0, tzinfo=UTC)
        self._file_meta: dict[str, tuple[str, str, datetime]] = {}
        self._next_id = 0

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}{self._next_id}"

    def add_folder(self, name: str, parent_id: str | None = None) -> ArchiveFolder:
        folder_id = self._new_id("folder")
        folder = ArchiveFolder(
            name=name,
            folder_id=folder_id,
            parent_id=parent_id,
            url=f"https://drive.test/folders/{folder_id}",
        )
        self.folders[folder_id] = folder
        self.files[folder_id] = {}
        return folder

    def find_folder(self, name: str, parent_id: str | None) -> ArchiveFolder | None:
        if self.fail_folders:
            raise ArchiveError("folder lookup failed")
        for folder in self.folders.values():
            if folder.name == name and folder.parent_id == parent_id:
                return folder
        return None

    def create_folder(self, name: str, parent_id: str | None) -> ArchiveFolder:
        if self.fail_folders:
            raise ArchiveError("folder creation failed")
        self.created_folders.append(name)
        return self.add_folder(name, parent_id)

    def get_folder(self, folder_id: str) -> ArchiveFolder | None:
        return self.folders.get(folder_id)

    def file_exists(self, name: str, folder_id: str) -> bool:
        if self.fail_lookup:
            raise ArchiveError("name lookup failed")
        return name in self.files.get(folder_id, {})

    def create_file(
        self, name: str, content: bytes, content_type: str, folder_id: str
    ) -> StoredFile:
        if name in self.fail_create_file:
            raise ArchiveError(f"upload of {name} failed")
        self.files.setdefault(folder_id, {})[name] = content
        file_id = self._new_id("file")
        self._file_meta[file_id] = (folder_id, name, self.now)
        return StoredFile(file_id=file_id, name=name, url=f"https://drive.test/files/{file_id}")

    def add_file(
        self, folder_id: str, name: str, content: bytes = b"x", *, age_days: int = 0
    ) -> StoredFile:
        """Place a file created ``age_days`` before ``now``."""
        created = self.now
        self.now = created - timedelta(days=age_days)
        try:
            return self.create_file(name, content, "application/pdf", folder_id)
        finally:
            self.now = created

    def list_folders(self, parent_id: str) -> list[ArchiveFolder]:
        return [f for f in self.folders.values() if f.parent_id == parent_id]

    def list_files(
        self, folder_id: str, *, created_before: datetime | None = None
    ) -> list[StoredFile]:
        listed = []
        for file_id, (folder, name, created) in self._file_meta.items():
            if folder != folder_id:
                continue
            if created_before is not None and created >= created_before:
                continue
            content = self.files[folder][name]
            listed.append(
                StoredFile(
                    file_id=file_id,
                    name=name,
                    url=f"https://drive.test/files/{file_id}",
                    size_bytes=len(content),
                    created_at=created,
                )
            )
        return listed

    def trash_file(self, file_id: str) -> None:
        if file_id in self.fail_trash:
            raise ArchiveError(f"trash of {file_id} failed")
        folder, name, _ = self._file_meta.pop(file_id)
        del self.files[folder][name]
        self.trashed.append(name)


class RecordingTransport:
    """ChatTransport fake. ``fail_on`` holds 1-based call numbers that raise."""

    def __init__(self, refs: bool = False, fail_on: set[int] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any], str | None]] = []
        self.refs = refs
        self.fail_on = fail_on or set()

    def post_message(
        self, channel: str, payload: dict[str, Any], thread_ref: str | None = None
    ) -> str | None:
        self.calls.append((channel, payload, thread_ref))
        if len(self.calls) in self.fail_on:
            raise DispatchError(f"post {len(self.calls)} rejected")
        return f"1700000000.{len(self.calls):06d}" if self.refs else None


@pytest.fixture
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def archive_root(blob_store: MemoryBlobStore) -> ArchiveFolder:
    return blob_store.add_folder("Gmail Attachments")


@pytest.fixture
def transport_factory() -> Callable[..., RecordingTransport]:
    return RecordingTransport


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2025, 6, 5, 6, 30, 15, tzinfo=UTC)


@pytest.fixture
def make_attachment() -> Callable[..., Attachment]:
    def _make(name: str = "report.pdf", content: bytes = b"%PDF-1.4 test") -> Attachment:
        return Attachment(
            name=name,
            size_bytes=len(content),
            content_type="application/pdf",
            loader=lambda: content,
        )

    return _make


@pytest.fixture
def make_message() -> Callable[..., Message]:
    def _make(
        message_id: str = "msg_001",
        subject: str = "第14回部会開催のご案内",
        body_text: str = "本日15:00より開催します。",
        attachments: tuple[Attachment, ...] = (),
        thread_id: str = "thread_001",
        in_trash: bool = False,
    ) -> Message:
        return Message(
            message_id=message_id,
            thread_id=thread_id,
            subject=subject,
            sender="info@example.org",
            received_at=datetime(2025, 6, 5, 1, 0, 0, tzinfo=UTC),
            body_text=body_text,
            attachments=attachments,
            in_trash=in_trash,
        )

    return _make


@pytest.fixture
def tmp_settings(tmp_path: Path) -> ForwarderSettings:
    """Valid settings pointing to temporary directories."""
    return ForwarderSettings(
        _env_file=None,
        credentials_path=tmp_path / "creds" / "client_secret.json",
        token_path=tmp_path / "creds" / "token.json",
        database_path=tmp_path / "data" / "test.db",
        local_archive_dir=tmp_path / "archive",
        sender_email="info@example.org",
        slack_webhook_url=WEBHOOK_URL,
        inter_message_delay_seconds=0.0,
        thread_delay_seconds=0.0,
    )


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


def b64url(text: str | bytes) -> str:
    raw = text.encode("utf-8") if isinstance(text, str) else text
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@pytest.fixture
def encode() -> Callable[[str | bytes], str]:
    """Gmail-style unpadded base64url encoder."""
    return b64url


@pytest.fixture
def raw_message_with_pdf() -> dict[str, Any]:
    """Raw Gmail API message: multipart/mixed with text, HTML and a PDF attachment."""
    return {
        "id": "msg_mixed",
        "threadId": "thread_mixed",
        "labelIds": ["INBOX", "UNREAD"],
        "internalDate": "1749085200000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": "【本日開催】第14回部会開催のご案内"},
                {"name": "From", "value": "Info <info@example.org>"},
                {"name": "Date", "value": "Thu, 05 Jun 2025 10:00:00 +0900"},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "filename": "",
                    "parts": [
                        {
                            "mimeType": "text/plain",
                            "filename": "",
                            "body": {"data": b64url("Line one\n\n\n\nLine two\n")},
                        },
                        {
                            "mimeType": "text/html",
                            "filename": "",
                            "body": {"data": b64url("<p>Line one</p><p>Line two</p>")},
                        },
                    ],
                },
                {
                    "mimeType": "application/pdf",
                    "filename": "agenda.pdf",
                    "body": {"attachmentId": "att_001", "size": 2048},
                },
            ],
        },
    }
