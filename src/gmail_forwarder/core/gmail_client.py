"""Gmail API mailbox: thread search, attachment download, processed labelling."""

from __future__ import annotations

import base64
import logging
from typing import Any

from googleapiclient.discovery import Resource

from gmail_forwarder.core.exceptions import ParseError
from gmail_forwarder.core.google_api import GoogleApiClient
from gmail_forwarder.core.models import Message
from gmail_forwarder.core.parser import GmailParser

logger = logging.getLogger(__name__)


class GmailMailbox(GoogleApiClient):
    """Thin wrapper around the Gmail API for the forwarder's mailbox needs."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        processed_label: str = "Processed",
        parser: GmailParser | None = None,
        **retry: Any,
    ) -> None:
        super().__init__(service, **retry)
        self._user_id = user_id
        self._processed_label = processed_label
        self._parser = parser or GmailParser()
        self._label_id: str | None = None

    def search(self, query: str, max_threads: int) -> list[Message]:
        """Return every message of the first ``max_threads`` threads matching ``query``.

        Threads come back newest first; messages keep their in-thread order.
        Messages that cannot be parsed are logged and left out.
        """
        request = self._service.users().threads().list(
            userId=self._user_id, q=query, maxResults=max_threads
        )
        response = self._execute_with_retry(request, "search threads")
        thread_stubs = response.get("threads", [])
        logger.info("Search '%s' returned %d threads", query, len(thread_stubs))

        messages: list[Message] = []
        for stub in thread_stubs:
            request = self._service.users().threads().get(
                userId=self._user_id, id=stub["id"], format="full"
            )
            thread = self._execute_with_retry(request, f"get thread {stub['id']}")
            for raw in thread.get("messages", []):
                try:
                    messages.append(self._parser.parse(raw, self.fetch_attachment))
                except ParseError as e:
                    logger.error("Skipping unparseable message: %s", e)
        return messages

    def fetch_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download one attachment body."""
        request = (
            self._service.users()
            .messages()
            .attachments()
            .get(userId=self._user_id, messageId=message_id, id=attachment_id)
        )
        response = self._execute_with_retry(request, f"fetch attachment of {message_id}")
        data = response.get("data", "")
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded)

    def mark_handled(self, thread_id: str) -> None:
        """Add the processed label to a thread, creating the label on first use."""
        label_id = self._ensure_label()
        request = self._service.users().threads().modify(
            userId=self._user_id, id=thread_id, body={"addLabelIds": [label_id]}
        )
        self._execute_with_retry(request, f"label thread {thread_id}")
        logger.debug("Labelled thread %s as %s", thread_id, self._processed_label)

    def list_labels(self) -> list[dict[str, str]]:
        request = self._service.users().labels().list(userId=self._user_id)
        results = self._execute_with_retry(request, "list labels")
        return [{"id": lbl["id"], "name": lbl["name"]} for lbl in results.get("labels", [])]

    def _ensure_label(self) -> str:
        if self._label_id is not None:
            return self._label_id

        for label in self.list_labels():
            if label["name"] == self._processed_label:
                self._label_id = label["id"]
                return self._label_id

        request = self._service.users().labels().create(
            userId=self._user_id,
            body={
                "name": self._processed_label,
                "labelListVisibility": "labelShow",
                "messageListVisibility": "show",
            },
        )
        created = self._execute_with_retry(request, "create label")
        logger.info("Created Gmail label: %s", self._processed_label)
        self._label_id = created["id"]
        return self._label_id
