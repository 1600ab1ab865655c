"""Email body to plain text, using trafilatura when only HTML is available."""

from __future__ import annotations

import logging
import re

import trafilatura

logger = logging.getLogger(__name__)

_EXCESS_BLANK_LINES = re.compile(r"\n\s*\n\s*\n")


class BodyConverter:
    """Produce the notification body text for a message."""

    def to_text(self, plain_text: str | None, html: str | None) -> str:
        """Pick the best text rendition and normalize it.

        Strategy:
        1. Use text/plain when present.
        2. Otherwise extract text from HTML via trafilatura (favor_recall=True).
        3. Collapse runs of blank lines and trim.

        Returns an empty string when the message has no usable body.
        """
        text = plain_text
        if not text and html:
            text = self._extract_html(html)
        return self.normalize(text or "")

    @staticmethod
    def normalize(text: str) -> str:
        return _EXCESS_BLANK_LINES.sub("\n\n", text).strip()

    @staticmethod
    def _extract_html(html: str) -> str | None:
        try:
            return trafilatura.extract(
                html,
                output_format="txt",
                favor_recall=True,
                include_links=True,
                include_tables=True,
            )
        except Exception as e:
            logger.warning("Trafilatura extraction failed: %s", e)
            return None
