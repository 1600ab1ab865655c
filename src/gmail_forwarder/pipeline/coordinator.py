"""Pipeline orchestrator: search → classify → dedupe → archive → notify → record."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from gmail_forwarder.config.settings import ForwarderSettings
from gmail_forwarder.core.auth import (
    authenticate,
    build_drive_service,
    build_gmail_service,
    scopes_for,
)
from gmail_forwarder.core.classifier import SubjectClassifier
from gmail_forwarder.core.exceptions import ArchiveError, CriticalError, DispatchError
from gmail_forwarder.core.gmail_client import GmailMailbox
from gmail_forwarder.core.models import (
    ArchiveResult,
    ArchiveStats,
    CleanupResult,
    Message,
    MessageReport,
    MessageState,
    RunSummary,
)
from gmail_forwarder.notify.dispatcher import NotificationDispatcher
from gmail_forwarder.storage.archive import (
    DEFAULT_CLEANUP_DAYS,
    AttachmentArchiver,
    BlobStore,
    resolve_archive_root,
)
from gmail_forwarder.storage.drive_store import GoogleDriveStore
from gmail_forwarder.storage.ledger import DeduplicationLedger, SqliteLedgerStore
from gmail_forwarder.storage.local_store import LocalBlobStore
from gmail_forwarder.storage.properties import PropertyStore
from gmail_forwarder.storage.runs import RunHistory

logger = logging.getLogger(__name__)


class Mailbox(Protocol):
    def search(self, query: str, max_threads: int) -> list[Message]: ...

    def mark_handled(self, thread_id: str) -> None: ...


class IngestionCoordinator:
    """Runs one forwarding pass over the mailbox.

    Each message moves UNSEEN → CLASSIFYING → (SKIPPED | ARCHIVING → NOTIFYING →
    RECORDED) before the next one starts. A failure while handling one message
    is counted and digested; it never stops the batch. Configuration, auth and
    search failures are critical: they are reported to the channel and re-raised.
    """

    def __init__(
        self,
        settings: ForwarderSettings | None = None,
        *,
        mailbox: Mailbox | None = None,
        ledger: DeduplicationLedger | None = None,
        archiver: AttachmentArchiver | None = None,
        dispatcher: NotificationDispatcher | None = None,
        classifier: SubjectClassifier | None = None,
        run_history: RunHistory | None = None,
        on_progress: Callable[[RunSummary], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or ForwarderSettings()
        self._on_progress = on_progress
        self._clock = clock
        self._summary = RunSummary()

        # Components not injected are built lazily from settings
        self._mailbox = mailbox
        self._ledger = ledger
        self._archiver = archiver
        self._dispatcher = dispatcher
        self._classifier = classifier
        self._run_history = run_history
        self._properties: PropertyStore | None = None
        self._ledger_store: SqliteLedgerStore | None = None
        self._validated = False

    @property
    def on_progress(self) -> Callable[[RunSummary], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[RunSummary], None] | None) -> None:
        self._on_progress = callback

    @property
    def dispatcher(self) -> NotificationDispatcher:
        if self._dispatcher is None:
            self._dispatcher = NotificationDispatcher.from_settings(self._settings)
        return self._dispatcher

    @property
    def properties(self) -> PropertyStore:
        if self._properties is None:
            self._properties = PropertyStore(self._settings.database_path)
            self._properties.connect()
        return self._properties

    def _ensure_ledger(self) -> DeduplicationLedger:
        if self._ledger is None:
            self._ledger_store = SqliteLedgerStore(self._settings.database_path)
            self._ledger_store.connect()
            self._ledger = DeduplicationLedger(
                self._ledger_store,
                capacity=self._settings.ledger_capacity,
                eviction_batch=self._settings.ledger_eviction_batch,
                slack=self._settings.ledger_eviction_slack,
            )
        return self._ledger

    def _ensure_history(self) -> RunHistory:
        if self._run_history is None:
            self._run_history = RunHistory(self._settings.database_path)
            self._run_history.connect()
        return self._run_history

    def _ensure_initialized(
        self,
    ) -> tuple[Mailbox, DeduplicationLedger, AttachmentArchiver, SubjectClassifier]:
        """Validate settings and build every component that was not injected.

        Raises:
            CriticalError: On invalid configuration, failed authentication, an
                unreachable archive root, or any other failure while building
                components.
        """
        s = self._settings
        if not self._validated:
            problems = s.configuration_problems()
            if problems:
                raise CriticalError("Invalid configuration: " + "; ".join(problems))
            self._validated = True

        try:
            if self._classifier is None:
                self._classifier = SubjectClassifier(s.active_patterns, s.active_match_mode)

            if self._mailbox is None or self._archiver is None:
                s.ensure_directories()
                retry = {
                    "max_retries": s.max_retries,
                    "initial_backoff_seconds": s.initial_backoff_seconds,
                    "max_backoff_seconds": s.max_backoff_seconds,
                    "num_retries": s.num_retries,
                }
                creds = authenticate(
                    s.credentials_path,
                    s.token_path,
                    scopes_for(s.archive_backend),
                    interactive=s.interactive_auth,
                )

                if self._mailbox is None:
                    self._mailbox = GmailMailbox(
                        build_gmail_service(creds),
                        processed_label=s.processed_label,
                        **retry,
                    )

                if self._archiver is None:
                    store: BlobStore
                    if s.archive_backend == "local":
                        store = LocalBlobStore(s.local_archive_dir)
                    else:
                        store = GoogleDriveStore(build_drive_service(creds), **retry)
                    root = resolve_archive_root(
                        store, s.archive_root_name, self.properties, s.archive_root_id
                    )
                    self._archiver = AttachmentArchiver(
                        store,
                        root,
                        timezone=s.archive_timezone,
                        max_attempts=s.max_name_attempts,
                        extensions=s.archive_extensions,
                    )

            ledger = self._ensure_ledger()
        except Exception as e:
            raise CriticalError(f"Initialization failed: {e}") from e

        return self._mailbox, ledger, self._archiver, self._classifier

    def run(self) -> RunSummary:
        """Process up to ``max_messages_per_run`` new matching messages.

        Returns:
            RunSummary with final counts.

        Raises:
            CriticalError: After reporting it to the channel.
        """
        started = self._clock()
        self._summary = RunSummary(current_stage="starting")
        self._notify()

        try:
            mailbox, _, _, _ = self._ensure_initialized()
        except CriticalError as e:
            self._summary.current_stage = f"error: {e}"
            self._report_critical(e)
            raise

        s = self._settings
        query = s.search_query
        history = self._ensure_history()
        run_id = history.start_run(query)
        status = "complete"

        try:
            try:
                messages = mailbox.search(query, s.max_messages_per_run * s.thread_search_multiplier)
            except Exception as e:
                raise CriticalError(f"Mailbox search failed: {e}") from e

            logger.info("Found %d candidate messages for %s", len(messages), query)
            self._summary.current_stage = "processing"
            self._notify()

            handled_threads: list[str] = []
            for message in messages:
                if self._summary.processed >= s.max_messages_per_run:
                    logger.info("Reached %d messages for this run", s.max_messages_per_run)
                    break
                report = self._process_isolated(message)
                if (
                    report is not None
                    and report.state is MessageState.RECORDED
                    and message.thread_id not in handled_threads
                ):
                    handled_threads.append(message.thread_id)

            for thread_id in handled_threads:
                try:
                    mailbox.mark_handled(thread_id)
                except Exception as e:
                    logger.warning("Failed to label thread %s: %s", thread_id, e)

            self._summary.current_stage = "complete"
            self._notify()
        except CriticalError as e:
            status = "failed"
            self._summary.current_stage = f"error: {e}"
            self._notify()
            self._report_critical(e)
            raise
        finally:
            self._summary.elapsed_seconds = self._clock() - started
            history.complete_run(run_id, self._summary, status)

        logger.info(
            "Run complete: checked=%d processed=%d skipped=%d errors=%d (%.1fs)",
            self._summary.checked, self._summary.processed, self._summary.skipped,
            self._summary.errors, self._summary.elapsed_seconds,
        )
        if self._summary.errors > 0:
            try:
                self.dispatcher.send_run_summary(self._summary)
            except Exception as e:
                logger.error("Failed to send run summary: %s", e)

        return self._summary

    def process_message(self, message: Message) -> MessageReport:
        """Take one message to a terminal state.

        Raises:
            DispatchError: If the primary notification could not be delivered;
                the message is then not recorded.
        """
        _, ledger, archiver, classifier = self._ensure_initialized()
        logger.debug("%s: %s", message.message_id, MessageState.CLASSIFYING.value)

        if message.in_trash:
            return self._skip(message, "in trash")

        classification = classifier.classify(message.subject)
        if not classification.is_match:
            return self._skip(message, "subject did not match")

        if ledger.has(message.message_id):
            return self._skip(message, "already processed")

        logger.info("Processing %s: %s", message.message_id, message.subject)
        results: list[ArchiveResult] = []
        if message.attachments:
            logger.debug("%s: %s", message.message_id, MessageState.ARCHIVING.value)
            try:
                results = archiver.archive(
                    message.attachments, message.subject, message.received_at
                )
            except Exception as e:
                logger.error("Archiving failed for %s: %s", message.message_id, e)
                results = [
                    ArchiveResult.failure(
                        a.name, a.size_bytes, type(e).__name__, f"Processing failed: {e}"
                    )
                    for a in message.attachments
                ]

        logger.debug("%s: %s", message.message_id, MessageState.NOTIFYING.value)
        outcome = self.dispatcher.dispatch(message, classification, results)
        if not outcome.primary_delivered:
            raise DispatchError(f"Notification failed: {outcome.error}")

        ledger.record(message.message_id, message.subject, message.sender)
        archived = sum(1 for r in results if r.ok)
        return MessageReport(
            message_id=message.message_id,
            state=MessageState.RECORDED,
            reason=f"{archived}/{len(results)} attachments archived, "
            f"{outcome.units_sent} posts sent",
        )

    def status(self) -> dict[str, object]:
        """Ledger statistics, archive usage and the most recent runs.

        ``archive`` is None when the archive cannot be reached.
        """
        ledger = self._ensure_ledger()
        return {
            "ledger": ledger.stats(),
            "archive": self._archive_stats(),
            "runs": self._ensure_history().recent_runs(5),
        }

    def cleanup_archive(self, days: int = DEFAULT_CLEANUP_DAYS) -> CleanupResult:
        """Remove archived files older than ``days`` days.

        Raises:
            CriticalError: If the archive cannot be set up.
            ArchiveError: If the archive cannot be listed.
        """
        _, _, archiver, _ = self._ensure_initialized()
        return archiver.cleanup(days)

    def migrate_legacy(self) -> int:
        return self._ensure_ledger().migrate_legacy(self.properties)

    def purge_legacy(self) -> int:
        return self._ensure_ledger().purge_legacy(self.properties)

    def close(self) -> None:
        """Clean up resources."""
        for resource in (self._ledger_store, self._properties, self._run_history):
            if resource is not None:
                resource.close()

    def _process_isolated(self, message: Message) -> MessageReport | None:
        self._summary.checked += 1
        try:
            report = self.process_message(message)
        except Exception as e:
            logger.error("Failed to process message %s: %s", message.message_id, e)
            self._summary.errors += 1
            self._summary.digest.append(f"{message.subject or message.message_id}: {e}")
            self._notify()
            return None

        if report.state is MessageState.SKIPPED:
            self._summary.skipped += 1
        else:
            self._summary.processed += 1
        self._notify()
        return report

    def _archive_stats(self) -> ArchiveStats | None:
        try:
            _, _, archiver, _ = self._ensure_initialized()
            return archiver.stats()
        except (CriticalError, ArchiveError) as e:
            logger.warning("Archive statistics unavailable: %s", e)
            return None

    def _skip(self, message: Message, reason: str) -> MessageReport:
        logger.debug("Skipping %s: %s", message.message_id, reason)
        return MessageReport(
            message_id=message.message_id, state=MessageState.SKIPPED, reason=reason
        )

    def _report_critical(self, error: CriticalError) -> None:
        logger.error("Critical error: %s", error)
        try:
            self.dispatcher.send_error_notice(f"Critical error in Gmail forwarder: {error}")
        except Exception as e:
            logger.error("Failed to send error notice: %s", e)

    def _notify(self) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(self._summary)
