"""Gmail Forwarder - Forward matching Gmail messages and attachments to Slack."""

from gmail_forwarder.core.models import (
    ArchiveResult,
    Attachment,
    ClassificationResult,
    DeliveryOutcome,
    MatchMode,
    Message,
    MessageReport,
    MessageState,
    RunSummary,
)
from gmail_forwarder.pipeline.coordinator import IngestionCoordinator

__all__ = [
    "ArchiveResult",
    "Attachment",
    "ClassificationResult",
    "DeliveryOutcome",
    "IngestionCoordinator",
    "MatchMode",
    "Message",
    "MessageReport",
    "MessageState",
    "RunSummary",
]
