"""Custom exceptions for the Gmail Forwarder."""


class ForwarderError(Exception):
    """Base exception for all Gmail Forwarder errors."""


class AuthenticationError(ForwarderError):
    """Failed to authenticate with the Google APIs."""


class RateLimitError(ForwarderError):
    """Google API rate limit exceeded."""


class ParseError(ForwarderError):
    """Failed to parse email MIME content."""


class ClassificationError(ForwarderError):
    """A subject pattern could not be evaluated."""

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class LedgerError(ForwarderError):
    """Base class for deduplication ledger store failures."""


class LedgerReadError(LedgerError):
    """The ledger store could not be read."""


class LedgerWriteError(LedgerError):
    """The ledger store could not be written."""


class ArchiveError(ForwarderError):
    """Failed to place an attachment into the archive."""


class DispatchError(ForwarderError):
    """A chat message could not be delivered."""


class CriticalError(ForwarderError):
    """Unrecoverable condition that aborts the whole run."""
