"""Gmail message parser: MIME tree walking, base64url decoding, attachment discovery."""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Any

from gmail_forwarder.core.converter import BodyConverter
from gmail_forwarder.core.exceptions import ParseError
from gmail_forwarder.core.models import Attachment, Message

logger = logging.getLogger(__name__)

AttachmentFetcher = Callable[[str, str], bytes]

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class GmailParser:
    """Parses raw Gmail API message dicts into Message objects."""

    def __init__(self, converter: BodyConverter | None = None) -> None:
        self._converter = converter or BodyConverter()

    def parse(
        self,
        raw_message: dict[str, Any],
        fetch_attachment: AttachmentFetcher | None = None,
    ) -> Message:
        """Parse a raw Gmail API message dict into a Message.

        Args:
            raw_message: Full message dict from Gmail API (format=full).
            fetch_attachment: Called as ``fetch_attachment(message_id, attachment_id)``
                to download attachment bodies that are not inlined.

        Returns:
            Parsed Message.

        Raises:
            ParseError: If the message structure is invalid.
        """
        try:
            message_id = raw_message["id"]
            payload = raw_message.get("payload", {})
            headers = self._extract_headers(payload)
            plain_text, html = self._extract_body(payload)
            attachments = self._collect_attachments(payload, message_id, fetch_attachment)

            return Message(
                message_id=message_id,
                thread_id=raw_message.get("threadId", ""),
                subject=headers.get("subject", ""),
                sender=headers.get("from", ""),
                received_at=self._received_at(raw_message, headers.get("date", "")),
                body_text=self._converter.to_text(plain_text, html),
                attachments=tuple(attachments),
                in_trash="TRASH" in raw_message.get("labelIds", []),
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse message {raw_message.get('id', '?')}: {e}") from e

    @staticmethod
    def _extract_headers(payload: dict[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        for h in payload.get("headers", []):
            name = h.get("name", "").lower()
            if name in ("subject", "from", "date"):
                headers[name] = h.get("value", "")
        return headers

    def _extract_body(self, payload: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recursively walk the MIME tree to extract text/html bodies."""
        plain_text, html = self._walk_parts(payload)

        if plain_text is None and html is None and not payload.get("filename"):
            body_data = payload.get("body", {}).get("data")
            if body_data:
                decoded = self._decode_text(body_data)
                if "html" in payload.get("mimeType", ""):
                    html = decoded
                else:
                    plain_text = decoded

        return plain_text, html

    def _walk_parts(self, part: dict[str, Any]) -> tuple[str | None, str | None]:
        plain_text: str | None = None
        html: str | None = None
        mime_type = part.get("mimeType", "")

        if mime_type == "text/plain":
            data = part.get("body", {}).get("data")
            if data:
                plain_text = self._decode_text(data)
        elif mime_type == "text/html":
            data = part.get("body", {}).get("data")
            if data:
                html = self._decode_text(data)
        elif mime_type.startswith("multipart/"):
            for sub_part in part.get("parts", []):
                # Skip attachments
                if sub_part.get("filename"):
                    continue

                sub_plain, sub_html = self._walk_parts(sub_part)
                if sub_plain and not plain_text:
                    plain_text = sub_plain
                if sub_html and not html:
                    html = sub_html

        return plain_text, html

    def _collect_attachments(
        self,
        part: dict[str, Any],
        message_id: str,
        fetch_attachment: AttachmentFetcher | None,
    ) -> list[Attachment]:
        """Depth-first list of parts that carry a filename, in MIME order."""
        found: list[Attachment] = []
        filename = part.get("filename", "")
        body = part.get("body", {})

        if filename:
            if body.get("data"):
                loader = partial(self._decode_bytes, body["data"])
            elif body.get("attachmentId") and fetch_attachment is not None:
                loader = partial(fetch_attachment, message_id, body["attachmentId"])
            else:
                logger.warning("Attachment %s in %s has no retrievable body", filename, message_id)
                loader = partial(bytes)
            found.append(
                Attachment(
                    name=filename,
                    size_bytes=int(body.get("size", 0)),
                    content_type=part.get("mimeType") or "application/octet-stream",
                    loader=loader,
                )
            )

        for sub_part in part.get("parts", []):
            found.extend(self._collect_attachments(sub_part, message_id, fetch_attachment))
        return found

    @staticmethod
    def _decode_bytes(data: str) -> bytes:
        # Gmail uses base64url encoding (RFC 4648 §5)
        padded = data + "=" * (4 - len(data) % 4) if len(data) % 4 else data
        return base64.urlsafe_b64decode(padded)

    @classmethod
    def _decode_text(cls, data: str) -> str:
        return cls._decode_bytes(data).decode("utf-8", errors="replace")

    @staticmethod
    def _received_at(raw_message: dict[str, Any], date_str: str) -> datetime:
        """Prefer Gmail's internalDate (epoch ms), then the Date header."""
        internal = raw_message.get("internalDate")
        if internal:
            try:
                return datetime.fromtimestamp(int(internal) / 1000, tz=UTC)
            except (TypeError, ValueError, OverflowError):
                logger.warning("Bad internalDate: %s", internal)
        if not date_str:
            return EPOCH
        try:
            return parsedate_to_datetime(date_str)
        except Exception:
            logger.warning("Failed to parse date: %s", date_str)
            return EPOCH
