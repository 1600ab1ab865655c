"""Turns a matched message into ordered Slack posts and delivers them."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from gmail_forwarder.config.settings import ForwarderSettings
from gmail_forwarder.core.exceptions import DispatchError
from gmail_forwarder.core.models import (
    ArchiveFolder,
    ArchiveResult,
    ClassificationResult,
    DeliveryOutcome,
    DispatchUnit,
    Message,
    RunSummary,
    UnitKind,
)
from gmail_forwarder.notify.slack import ChatTransport, WebApiTransport, WebhookTransport
from gmail_forwarder.storage.archive import format_file_size

logger = logging.getLogger(__name__)

BOT_NAME = "Gmail Bot"
FOOTER = "Gmail to Slack Forwarder"
CONTINUED_MARKER = "\n\n_[The full text follows in the next messages]_"
_TIME_FORMAT = "%Y/%m/%d %H:%M:%S"


@dataclass(frozen=True)
class BodyLayout:
    """Primary-unit body text plus the continuation chunks, if any."""

    preview: str
    continuations: tuple[str, ...] = ()

    @property
    def is_split(self) -> bool:
        return bool(self.continuations)


def split_body(body: str, threshold: int, preview_length: int, chunk_size: int) -> BodyLayout:
    """Lay out a body for delivery.

    Bodies up to ``threshold`` characters go out whole in the primary unit.
    Longer bodies get a ``preview_length`` prefix in the primary unit and are
    re-sent in full, from the first character, in ``chunk_size`` pieces.
    """
    if len(body) <= threshold:
        return BodyLayout(preview=body)
    chunks = tuple(body[i : i + chunk_size] for i in range(0, len(body), chunk_size))
    return BodyLayout(preview=body[:preview_length], continuations=chunks)


def attachment_line(result: ArchiveResult) -> str:
    size = format_file_size(result.size_bytes)
    if result.failed:
        return f"• ❌ {result.original_name} ({size}) - failed: {result.error}"
    if result.skipped:
        return f"• ⚠️ {result.original_name} ({size}) - skipped: {result.skipped}"

    folder = result.folder
    where = f" in {folder.name}" if folder and folder.name else ""
    line = f"• ✅ {result.original_name} ({size}){where}"
    if result.url:
        line += f" - <{result.url}|📄 File>"
    if folder and folder.url:
        line += f" | <{folder.url}|📁 Folder>"
    return line


def distinct_folders(results: Sequence[ArchiveResult]) -> list[ArchiveFolder]:
    """Destination folders of successful results, first-seen order."""
    folders: dict[str, ArchiveFolder] = {}
    for result in results:
        if result.ok and result.folder is not None:
            folders.setdefault(result.folder.folder_id, result.folder)
    return list(folders.values())


class NotificationDispatcher:
    """Builds DispatchUnits for a message and sends them over a ChatTransport.

    With a ``threaded`` transport the primary unit is posted through it and its
    handle threads every later unit. Without one, or when the threaded primary
    fails or returns no handle, units go out as top-level ``stateless`` posts.
    """

    def __init__(
        self,
        channel: str,
        stateless: ChatTransport,
        threaded: ChatTransport | None = None,
        *,
        preview_threshold: int = 1000,
        preview_length: int = 500,
        chunk_size: int = 3500,
        send_archive_summary: bool = True,
        inter_message_delay: float = 1.0,
        thread_delay: float = 0.5,
        timezone: str = "Asia/Tokyo",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._channel = channel
        self._stateless = stateless
        self._threaded = threaded
        self._threshold = preview_threshold
        self._preview_length = preview_length
        self._chunk_size = chunk_size
        self._send_archive_summary = send_archive_summary
        self._inter_message_delay = inter_message_delay
        self._thread_delay = thread_delay
        try:
            self._tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            # Reported by configuration_problems(); notices still render in UTC
            logger.warning("Unknown time zone %r, showing times in UTC", timezone)
            self._tz = ZoneInfo("UTC")
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_settings(
        cls, settings: ForwarderSettings, session: requests.Session | None = None
    ) -> NotificationDispatcher:
        session = session or requests.Session()
        stateless = WebhookTransport(
            settings.slack_webhook_url,
            session=session,
            timeout=settings.request_timeout_seconds,
        )
        threaded = None
        if settings.transport_mode == "threaded":
            threaded = WebApiTransport(
                settings.slack_bot_token,
                session=session,
                timeout=settings.request_timeout_seconds,
            )
        return cls(
            settings.slack_channel,
            stateless,
            threaded,
            preview_threshold=settings.body_preview_threshold,
            preview_length=settings.body_preview_length,
            chunk_size=settings.body_chunk_size,
            send_archive_summary=settings.send_archive_summary,
            inter_message_delay=settings.inter_message_delay_seconds,
            thread_delay=settings.thread_delay_seconds,
            timezone=settings.archive_timezone,
        )

    def build_units(
        self,
        message: Message,
        classification: ClassificationResult,
        archive_results: Sequence[ArchiveResult],
    ) -> list[DispatchUnit]:
        """Primary unit, then body continuations in order, then the archive summary."""
        layout = split_body(
            message.body_text, self._threshold, self._preview_length, self._chunk_size
        )
        units = [
            DispatchUnit(
                channel=self._channel,
                payload=self._primary_payload(message, classification, archive_results, layout),
                kind=UnitKind.PRIMARY,
            )
        ]

        total = len(layout.continuations)
        for number, chunk in enumerate(layout.continuations, start=1):
            units.append(
                DispatchUnit(
                    channel=self._channel,
                    payload=self._continuation_payload(message, chunk, number, total),
                    kind=UnitKind.CONTINUATION,
                )
            )

        folders = distinct_folders(archive_results)
        if self._send_archive_summary and folders:
            saved = sum(1 for r in archive_results if r.ok)
            units.append(
                DispatchUnit(
                    channel=self._channel,
                    payload=self._archive_summary_payload(message, folders, saved),
                    kind=UnitKind.ARCHIVE_SUMMARY,
                )
            )
        return units

    def _primary_payload(
        self,
        message: Message,
        classification: ClassificationResult,
        archive_results: Sequence[ArchiveResult],
        layout: BodyLayout,
    ) -> dict[str, Any]:
        archived = sum(1 for r in archive_results if r.ok)
        skipped = sum(1 for r in archive_results if r.skipped)
        count_text = f"{archived}/{len(archive_results)}"
        if skipped:
            count_text += f", {skipped} skipped"

        preview = layout.preview or "_No body_"
        if layout.is_split:
            preview += CONTINUED_MARKER

        footer = FOOTER
        if classification.matched_pattern:
            footer += f" | matched: {classification.matched_pattern}"

        attachment_text = "\n".join(attachment_line(r) for r in archive_results) or "None"
        return {
            "username": BOT_NAME,
            "icon_emoji": ":email:",
            "attachments": [
                {
                    "color": "warning" if any(r.failed for r in archive_results) else "good",
                    "title": f"📧 New email: {message.subject}",
                    "title_link": f"mailto:{message.sender}",
                    "fields": [
                        {"title": "👤 Sender", "value": message.sender, "short": True},
                        {
                            "title": "📅 Received",
                            "value": self._local(message.received_at).strftime(_TIME_FORMAT),
                            "short": True,
                        },
                        {"title": "📝 Body", "value": preview, "short": False},
                        {
                            "title": f"📎 Attachments ({count_text})",
                            "value": attachment_text,
                            "short": False,
                        },
                    ],
                    "footer": footer,
                    "ts": int(message.received_at.timestamp()),
                }
            ],
        }

    def _continuation_payload(
        self, message: Message, chunk: str, number: int, total: int
    ) -> dict[str, Any]:
        title = "(final part)" if number == total else f"(part {number})"
        payload: dict[str, Any] = {
            "username": BOT_NAME,
            "icon_emoji": ":speech_balloon:",
            "attachments": [
                {
                    "color": "#E0E0E0",
                    "title": title,
                    "text": chunk,
                    "footer": f"📧 {message.subject}",
                }
            ],
        }
        if number == 1:
            payload["text"] = f"↳ Full text of the {self._reference(message)}"
        return payload

    def _archive_summary_payload(
        self, message: Message, folders: list[ArchiveFolder], saved: int
    ) -> dict[str, Any]:
        links = "\n".join(
            f"📁 <{folder.url}|{folder.name}>" if folder.url else f"📁 {folder.name}"
            for folder in folders
        )
        return {
            "username": BOT_NAME,
            "icon_emoji": ":file_folder:",
            "text": f"↳ Attachments of the {self._reference(message)} were archived",
            "attachments": [
                {
                    "color": "#4CAF50",
                    "title": "📁 Attachments archived",
                    "text": f"Saved {saved} file(s)\n\n{links}",
                    "footer": f"📧 {message.subject}",
                }
            ],
            "unfurl_links": False,
            "unfurl_media": False,
        }

    def _reference(self, message: Message) -> str:
        return f"{self._local(message.received_at):%H:%M} email"

    def dispatch(
        self,
        message: Message,
        classification: ClassificationResult,
        archive_results: Sequence[ArchiveResult],
    ) -> DeliveryOutcome:
        """Send the notification for one message.

        A primary unit that cannot be delivered by any transport makes the
        outcome ``primary_delivered=False``; follow-up failures are only counted.
        """
        units = self.build_units(message, classification, archive_results)
        primary, follow_ups = units[0], units[1:]
        logger.info(
            "Dispatching %s: %d unit(s), body %d chars",
            message.message_id, len(units), len(message.body_text),
        )

        thread_ref: str | None = None
        fell_back = False
        try:
            if self._threaded is not None:
                try:
                    thread_ref = self._threaded.post_message(self._channel, primary.payload)
                except DispatchError as e:
                    logger.warning("Threaded post failed, falling back to webhook: %s", e)
                    fell_back = True
                    self._stateless.post_message(self._channel, primary.payload)
                else:
                    if not thread_ref:
                        logger.warning("No thread handle returned, follow-ups go unthreaded")
                        fell_back = True
            else:
                self._stateless.post_message(self._channel, primary.payload)
        except DispatchError as e:
            logger.error("Primary notification for %s failed: %s", message.message_id, e)
            return DeliveryOutcome(primary_delivered=False, units_failed=1, error=str(e))

        sent, failed = 1, 0
        continuations_broken = False
        for unit in follow_ups:
            if unit.kind is UnitKind.CONTINUATION and continuations_broken:
                continue
            try:
                self._send_follow_up(replace(unit, thread_ref=thread_ref))
                sent += 1
            except DispatchError as e:
                failed += 1
                logger.error(
                    "Follow-up %s for %s failed: %s", unit.kind.value, message.message_id, e
                )
                if unit.kind is UnitKind.CONTINUATION:
                    continuations_broken = True

        if continuations_broken:
            logger.warning("Body of %s was only partly delivered", message.message_id)
        logger.info("Sent %d/%d unit(s) for %s", sent, len(units), message.message_id)
        return DeliveryOutcome(
            primary_delivered=True,
            units_sent=sent,
            units_failed=failed,
            thread_ref=thread_ref,
            fell_back=fell_back,
        )

    def _send_follow_up(self, unit: DispatchUnit) -> None:
        if unit.thread_ref and self._threaded is not None:
            self._sleep(self._thread_delay)
            self._threaded.post_message(unit.channel, unit.payload, unit.thread_ref)
        else:
            self._sleep(self._inter_message_delay)
            self._stateless.post_message(unit.channel, unit.payload)

    def send_error_notice(self, error: str) -> None:
        """Report a run-level failure to the channel."""
        payload = {
            "username": BOT_NAME,
            "icon_emoji": ":warning:",
            "attachments": [
                {
                    "color": "danger",
                    "title": "🚨 Gmail forwarder error",
                    "text": f"```{error}```",
                    "fields": [
                        {"title": "Occurred at", "value": self._now_text(), "short": True}
                    ],
                    "footer": f"{FOOTER} - Error Handler",
                }
            ],
        }
        self._stateless.post_message(self._channel, payload)
        logger.info("Error notice sent")

    def send_run_summary(self, summary: RunSummary) -> None:
        color = "warning" if summary.errors else "good"
        fields = [
            {"title": "✅ Processed", "value": str(summary.processed), "short": True},
            {"title": "❌ Errors", "value": str(summary.errors), "short": True},
            {"title": "📈 Success rate", "value": f"{summary.success_rate}%", "short": True},
            {
                "title": "⏱️ Elapsed",
                "value": f"{summary.elapsed_seconds:.1f}s",
                "short": True,
            },
        ]
        attachment: dict[str, Any] = {
            "color": color,
            "title": "📊 Gmail forwarder run summary",
            "fields": fields,
            "footer": f"{FOOTER} - Summary",
        }
        if summary.digest:
            attachment["text"] = "\n".join(f"• {line}" for line in summary.digest)

        payload = {"username": BOT_NAME, "icon_emoji": ":bar_chart:", "attachments": [attachment]}
        self._stateless.post_message(self._channel, payload)
        logger.info("Run summary sent")

    def send_test_notification(self) -> None:
        payload = {
            "username": BOT_NAME,
            "icon_emoji": ":test_tube:",
            "attachments": [
                {
                    "color": "good",
                    "title": "🧪 Gmail forwarder test notification",
                    "text": "The forwarder can reach this channel.",
                    "fields": [
                        {"title": "Sent at", "value": self._now_text(), "short": True},
                        {"title": "Status", "value": "✅ OK", "short": True},
                    ],
                    "footer": f"{FOOTER} - Test",
                }
            ],
        }
        self._stateless.post_message(self._channel, payload)

    def _local(self, moment: datetime) -> datetime:
        return moment.astimezone(self._tz)

    def _now_text(self) -> str:
        return self._local(self._clock()).strftime(_TIME_FORMAT)
