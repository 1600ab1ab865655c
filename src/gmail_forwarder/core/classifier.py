"""Subject classification against an ordered set of regular expressions."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from gmail_forwarder.core.exceptions import ClassificationError
from gmail_forwarder.core.models import ClassificationResult, MatchMode, PatternOutcome

logger = logging.getLogger(__name__)

PatternLike = str | re.Pattern[str]


def classify(
    subject: str,
    patterns: Sequence[PatternLike],
    mode: MatchMode = MatchMode.ANY,
) -> ClassificationResult:
    """Classify a subject against ``patterns`` under ``mode``.

    ANY mode stops at the first match. ALL mode tests every pattern so the
    outcomes are complete even after a miss. A pattern that fails to compile
    or evaluate counts as a non-match for that pattern only.
    """
    mode = MatchMode(mode)
    outcomes: list[PatternOutcome] = []
    evaluated: list[str] = []

    for index, pattern in enumerate(patterns, start=1):
        source = pattern.pattern if isinstance(pattern, re.Pattern) else str(pattern)
        evaluated.append(source)

        try:
            is_match = _search(pattern, subject)
        except ClassificationError as e:
            logger.error("Pattern %d failed: %s", index, e)
            outcomes.append(PatternOutcome(pattern=source, is_match=False, error=e.reason))
            continue

        logger.debug("Pattern %d: %s -> %s", index, source, "MATCH" if is_match else "NO MATCH")
        outcomes.append(PatternOutcome(pattern=source, is_match=is_match))

        if mode is MatchMode.ANY and is_match:
            return ClassificationResult(
                is_match=True,
                matched_pattern=source,
                evaluated_patterns=tuple(evaluated),
                mode=mode,
                outcomes=tuple(outcomes),
            )

    if mode is MatchMode.ANY:
        is_match = any(o.is_match for o in outcomes)
    else:
        is_match = bool(outcomes) and all(o.is_match for o in outcomes)

    first_match = next((o.pattern for o in outcomes if o.is_match), None)
    return ClassificationResult(
        is_match=is_match,
        matched_pattern=first_match,
        evaluated_patterns=tuple(evaluated),
        mode=mode,
        outcomes=tuple(outcomes),
    )


def _search(pattern: PatternLike, subject: str) -> bool:
    try:
        compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)
        return compiled.search(subject) is not None
    except (re.error, TypeError) as e:
        source = pattern.pattern if isinstance(pattern, re.Pattern) else str(pattern)
        raise ClassificationError(source, str(e)) from e


class SubjectClassifier:
    """A configured pattern set and combination mode."""

    def __init__(self, patterns: Sequence[str], mode: MatchMode = MatchMode.ANY) -> None:
        if not patterns:
            raise ValueError("At least one subject pattern is required")
        self._mode = MatchMode(mode)
        # Compile up front; broken patterns stay as strings and fail per evaluation.
        self._patterns: list[PatternLike] = []
        for pattern in patterns:
            try:
                self._patterns.append(re.compile(pattern))
            except re.error as e:
                logger.warning("Subject pattern %r does not compile: %s", pattern, e)
                self._patterns.append(pattern)

    @property
    def mode(self) -> MatchMode:
        return self._mode

    @property
    def patterns(self) -> list[str]:
        return [p.pattern if isinstance(p, re.Pattern) else p for p in self._patterns]

    def classify(self, subject: str) -> ClassificationResult:
        return classify(subject or "", self._patterns, self._mode)
