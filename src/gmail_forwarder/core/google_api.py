"""Retry/backoff shared by the Gmail and Drive API wrappers."""

from __future__ import annotations

import logging
import random
import time
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from gmail_forwarder.core.exceptions import ForwarderError, RateLimitError

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({500, 502, 503, 504})


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception is a Google API rate limit (429 or a rate-limit 403)."""
    if isinstance(exc, HttpError) and exc.status_code == 429:
        return True
    error_str = str(exc)
    return "429" in error_str or "ratelimitexceeded" in error_str.lower()


def _is_transient_error(exc: Exception) -> bool:
    return isinstance(exc, HttpError) and exc.status_code in TRANSIENT_STATUSES


class GoogleApiClient:
    """Base for thin Google API wrappers.

    Rate limits and transient 5xx responses are retried with jittered
    exponential backoff; anything else fails on the first attempt.
    """

    def __init__(
        self,
        service: Resource,
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        num_retries: int = 3,
    ) -> None:
        self._service = service
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._num_retries = num_retries

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Execute one API request.

        Args:
            request: A googleapiclient HttpRequest object.
            context: What the request does, for errors and logs (e.g. "list labels").

        Returns:
            The API response dict.

        Raises:
            RateLimitError: When retries are exhausted on rate limit errors.
            ForwarderError: On any other API error, including 5xx responses
                that persist after retrying.
        """
        backoff = self._initial_backoff
        attempt = 0
        while True:
            try:
                return request.execute(num_retries=self._num_retries)
            except Exception as e:
                rate_limited = _is_rate_limit_error(e)
                if not rate_limited and not _is_transient_error(e):
                    raise ForwarderError(f"Failed to {context}: {e}") from e
                if attempt >= self._max_retries:
                    if rate_limited:
                        raise RateLimitError(
                            f"Rate limited during {context} after "
                            f"{self._max_retries} retries: {e}"
                        ) from e
                    raise ForwarderError(
                        f"Failed to {context} after {self._max_retries} retries: {e}"
                    ) from e

                delay = random.uniform(0, min(backoff, self._max_backoff))
                logger.warning(
                    "%s during %s (attempt %d/%d), sleeping %.2fs",
                    "Rate limited" if rate_limited else "Server error",
                    context, attempt + 1, self._max_retries, delay,
                )
                time.sleep(delay)
                backoff = min(backoff * 2, self._max_backoff)
                attempt += 1
