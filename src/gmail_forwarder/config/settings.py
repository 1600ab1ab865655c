"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gmail_forwarder.core.models import MatchMode

DEFAULT_SUBJECT_PATTERNS = [
    r".*お知らせ.*PR",
    r"【.*】第\d+回.*部会",
    r".*第\d+回.*部会",
    r".*勉強会",
]

WEBHOOK_URL_PREFIX = "https://hooks.slack.com/"


class ForwarderSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="FORWARDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")
    interactive_auth: bool = True

    # Mailbox
    sender_email: str = ""
    processed_label: str = "Processed"
    max_messages_per_run: int = 10
    thread_search_multiplier: int = 3

    # Subject classification
    subject_patterns: list[str] = DEFAULT_SUBJECT_PATTERNS
    match_mode: MatchMode = MatchMode.ANY
    enable_multiple_patterns: bool = True
    legacy_subject_pattern: str = r"第\d+回.*部会.*開催.*案内|.*メルマガ.*|.*勉強会.*"

    # Slack delivery
    slack_channel: str = "#general"
    slack_webhook_url: str = ""
    slack_bot_token: str = ""
    transport_mode: Literal["stateless", "threaded"] = "stateless"
    inter_message_delay_seconds: float = 1.0
    thread_delay_seconds: float = 0.5
    request_timeout_seconds: float = 30.0
    body_preview_threshold: int = 1000
    body_preview_length: int = 500
    body_chunk_size: int = 3500
    send_archive_summary: bool = True

    # Attachment archive
    archive_backend: Literal["drive", "local"] = "drive"
    archive_root_name: str = "Gmail Attachments"
    archive_root_id: str = ""
    local_archive_dir: Path = Path("output/attachments")
    archive_timezone: str = "Asia/Tokyo"
    archive_extensions: list[str] = []
    max_name_attempts: int = 100

    # Database
    database_path: Path = Path("data/gmail_forwarder.db")
    ledger_capacity: int = 10000
    ledger_eviction_batch: int = 1000
    ledger_eviction_slack: int | None = None

    # Rate limiting & retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    num_retries: int = 3

    # Logging
    log_level: str = "INFO"

    @field_validator("archive_extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        return [ext.strip().lstrip(".").lower() for ext in value if ext.strip()]

    @property
    def active_patterns(self) -> list[str]:
        """Patterns in effect, honoring the legacy single-pattern switch."""
        if self.enable_multiple_patterns:
            return list(self.subject_patterns)
        return [self.legacy_subject_pattern]

    @property
    def active_match_mode(self) -> MatchMode:
        return self.match_mode if self.enable_multiple_patterns else MatchMode.ANY

    @property
    def effective_eviction_slack(self) -> int:
        if self.ledger_eviction_slack is None:
            return self.ledger_eviction_batch
        return self.ledger_eviction_slack

    @property
    def search_query(self) -> str:
        return f"from:{self.sender_email}"

    def configuration_problems(self) -> list[str]:
        """Return a description of every setting that would prevent a run."""
        problems: list[str] = []

        if not self.sender_email.strip():
            problems.append("sender_email is not set")
        if not self.slack_webhook_url.startswith(WEBHOOK_URL_PREFIX):
            problems.append(f"slack_webhook_url must start with {WEBHOOK_URL_PREFIX}")
        if self.transport_mode == "threaded" and not self.slack_bot_token:
            problems.append("transport_mode 'threaded' requires slack_bot_token")

        patterns = self.active_patterns
        if not patterns:
            problems.append("no subject patterns configured")
        elif not any(_compiles(p) for p in patterns):
            problems.append("none of the configured subject patterns compile")

        if self.body_preview_threshold <= 0:
            problems.append("body_preview_threshold must be positive")
        if not 0 < self.body_preview_length <= self.body_preview_threshold:
            problems.append("body_preview_length must be in (0, body_preview_threshold]")
        if self.body_chunk_size <= 0:
            problems.append("body_chunk_size must be positive")
        if self.ledger_capacity <= 0:
            problems.append("ledger_capacity must be positive")
        if self.ledger_eviction_batch <= 0:
            problems.append("ledger_eviction_batch must be positive")
        if self.effective_eviction_slack < 0:
            problems.append("ledger_eviction_slack must not be negative")
        if self.max_messages_per_run <= 0:
            problems.append("max_messages_per_run must be positive")
        if self.max_name_attempts <= 0:
            problems.append("max_name_attempts must be positive")
        if not _known_timezone(self.archive_timezone):
            problems.append(f"archive_timezone '{self.archive_timezone}' is not a known time zone")

        return problems

    def ensure_directories(self) -> None:
        """Create output and data directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        if self.archive_backend == "local":
            self.local_archive_dir.mkdir(parents=True, exist_ok=True)


def _known_timezone(key: str) -> bool:
    try:
        ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _compiles(pattern: str) -> bool:
    try:
        re.compile(pattern)
    except re.error:
        return False
    return True
