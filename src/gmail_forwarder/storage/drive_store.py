"""Google Drive v3 blob store."""

from __future__ import annotations

import io
import logging
from datetime import UTC, datetime
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from gmail_forwarder.core.exceptions import ForwarderError
from gmail_forwarder.core.google_api import GoogleApiClient
from gmail_forwarder.core.models import ArchiveFolder, StoredFile

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
_FOLDER_FIELDS = "id, name, parents, webViewLink"
_FILE_FIELDS = "id, name, webViewLink"
_LISTED_FILE_FIELDS = "id, name, size, createdTime, webViewLink"
_PAGE_SIZE = 100


def _quote(value: str) -> str:
    """Quote a string literal for a Drive search query."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _is_not_found(exc: ForwarderError) -> bool:
    cause = exc.__cause__
    return isinstance(cause, HttpError) and cause.status_code == 404


class GoogleDriveStore(GoogleApiClient):
    """Folders and files in Google Drive, addressed by Drive file id."""

    def find_folder(self, name: str, parent_id: str | None) -> ArchiveFolder | None:
        query = f"mimeType = '{FOLDER_MIME_TYPE}' and name = {_quote(name)} and trashed = false"
        if parent_id:
            query += f" and {_quote(parent_id)} in parents"
        files = self._search(query, _FOLDER_FIELDS, context=f"find folder {name}")
        return self._to_folder(files[0]) if files else None

    def create_folder(self, name: str, parent_id: str | None) -> ArchiveFolder:
        body: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]
        request = self._service.files().create(body=body, fields=_FOLDER_FIELDS)
        created = self._execute_with_retry(request, f"create folder {name}")
        logger.debug("Created Drive folder %s (%s)", name, created["id"])
        return self._to_folder(created)

    def get_folder(self, folder_id: str) -> ArchiveFolder | None:
        request = self._service.files().get(
            fileId=folder_id, fields=f"{_FOLDER_FIELDS}, trashed, mimeType"
        )
        try:
            meta = self._execute_with_retry(request, f"get folder {folder_id}")
        except ForwarderError as e:
            if _is_not_found(e):
                return None
            raise
        if meta.get("trashed") or meta.get("mimeType") != FOLDER_MIME_TYPE:
            return None
        return self._to_folder(meta)

    def file_exists(self, name: str, folder_id: str) -> bool:
        query = f"name = {_quote(name)} and {_quote(folder_id)} in parents and trashed = false"
        return bool(self._search(query, "id", context=f"check for {name}"))

    def create_file(
        self, name: str, content: bytes, content_type: str, folder_id: str
    ) -> StoredFile:
        media = MediaIoBaseUpload(io.BytesIO(content), mimetype=content_type, resumable=False)
        request = self._service.files().create(
            body={"name": name, "parents": [folder_id]},
            media_body=media,
            fields=_FILE_FIELDS,
        )
        created = self._execute_with_retry(request, f"upload {name}")
        return StoredFile(
            file_id=created["id"],
            name=created.get("name", name),
            url=created.get("webViewLink", ""),
        )

    def list_folders(self, parent_id: str) -> list[ArchiveFolder]:
        query = (
            f"mimeType = '{FOLDER_MIME_TYPE}' and {_quote(parent_id)} in parents "
            "and trashed = false"
        )
        folders = self._list_all(query, _FOLDER_FIELDS, context=f"list folders in {parent_id}")
        return [self._to_folder(meta) for meta in folders]

    def list_files(
        self, folder_id: str, *, created_before: datetime | None = None
    ) -> list[StoredFile]:
        query = (
            f"mimeType != '{FOLDER_MIME_TYPE}' and {_quote(folder_id)} in parents "
            "and trashed = false"
        )
        if created_before is not None:
            # RFC 3339 without offset is read as UTC
            cutoff = created_before.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")
            query += f" and createdTime < '{cutoff}'"
        files = self._list_all(query, _LISTED_FILE_FIELDS, context=f"list files in {folder_id}")
        return [self._to_stored(meta) for meta in files]

    def trash_file(self, file_id: str) -> None:
        request = self._service.files().update(
            fileId=file_id, body={"trashed": True}, fields="id"
        )
        self._execute_with_retry(request, f"trash file {file_id}")

    def _list_all(self, query: str, fields: str, *, context: str) -> list[dict[str, Any]]:
        """Follow ``nextPageToken`` until every match is listed."""
        results: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            kwargs: dict[str, Any] = {
                "q": query,
                "spaces": "drive",
                "fields": f"nextPageToken, files({fields})",
                "pageSize": _PAGE_SIZE,
            }
            if page_token:
                kwargs["pageToken"] = page_token
            response = self._execute_with_retry(self._service.files().list(**kwargs), context)
            results.extend(response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return results

    def _search(self, query: str, fields: str, *, context: str) -> list[dict[str, Any]]:
        request = self._service.files().list(
            q=query, spaces="drive", fields=f"files({fields})", pageSize=10
        )
        response = self._execute_with_retry(request, context)
        return response.get("files", [])

    @staticmethod
    def _to_folder(meta: dict[str, Any]) -> ArchiveFolder:
        parents = meta.get("parents") or [None]
        return ArchiveFolder(
            name=meta.get("name", ""),
            folder_id=meta["id"],
            parent_id=parents[0],
            url=meta.get("webViewLink", ""),
        )

    @staticmethod
    def _to_stored(meta: dict[str, Any]) -> StoredFile:
        created = meta.get("createdTime")
        return StoredFile(
            file_id=meta["id"],
            name=meta.get("name", ""),
            url=meta.get("webViewLink", ""),
            # Google Docs files report no size
            size_bytes=int(meta.get("size", 0)),
            created_at=datetime.fromisoformat(created) if created else None,
        )
