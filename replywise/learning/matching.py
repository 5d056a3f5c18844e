"""Multi-factor ranking of stored patterns against an incoming email."""

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from replywise.models.pattern import Pattern, PatternMatch

logger = logging.getLogger(__name__)

KEYWORD_WEIGHT = 0.4
CONFIDENCE_WEIGHT = 0.3
SUCCESS_WEIGHT = 0.2
RECENCY_WEIGHT = 0.1

DEFAULT_MIN_SCORE = 0.3
DEFAULT_MAX_RESULTS = 3
DEFAULT_RECENCY_WINDOW_DAYS = 30


def _utcnow() -> datetime:
    return datetime.now(UTC)


def keyword_coverage(pattern: Pattern, content_lower: str) -> float:
    """Share of the pattern's trigger keywords found as substrings of the content."""
    keywords = pattern.trigger_keywords
    found = sum(1 for keyword in keywords if keyword.lower() in content_lower)
    return found / max(1, len(keywords))


def recency_score(last_used_at: datetime | None, now: datetime, window_days: float) -> float:
    """Linear decay from 1 (used now) to 0 (unused for ``window_days`` or never)."""
    if last_used_at is None:
        return 0.0
    if last_used_at.tzinfo is None:
        last_used_at = last_used_at.replace(tzinfo=UTC)
    days_since = (now - last_used_at).total_seconds() / 86400
    return max(0.0, min(1.0, 1 - days_since / window_days))


class PatternMatcher:
    """Scores candidate patterns and returns a ranked shortlist.

    ``score = 0.4*keyword_coverage + 0.3*confidence + 0.2*success_rate + 0.1*recency``

    Candidates scoring at or below ``min_score`` are dropped; the rest are
    ranked by score, then confidence, then most recent use, and truncated
    to ``max_results``.
    """

    def __init__(
        self,
        min_score: float = DEFAULT_MIN_SCORE,
        max_results: int = DEFAULT_MAX_RESULTS,
        recency_window_days: float = DEFAULT_RECENCY_WINDOW_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.min_score = min_score
        self.max_results = max_results
        self.recency_window_days = recency_window_days
        self._clock = clock

    def score(self, pattern: Pattern, email_content: str, now: datetime | None = None) -> PatternMatch:
        """Score a single pattern against email content."""
        now = now or self._clock()
        coverage = keyword_coverage(pattern, email_content.lower())
        recency = recency_score(pattern.last_used_at, now, self.recency_window_days)
        total = (
            KEYWORD_WEIGHT * coverage
            + CONFIDENCE_WEIGHT * pattern.confidence_score
            + SUCCESS_WEIGHT * pattern.success_rate
            + RECENCY_WEIGHT * recency
        )
        return PatternMatch(pattern=pattern, score=total, keyword_coverage=coverage, recency=recency)

    def match(
        self,
        email_content: str,
        sender_email: str,
        subject: str,
        candidates: Sequence[Pattern],
    ) -> list[PatternMatch]:
        """Rank candidate patterns for an incoming email.

        Args:
            email_content: Body of the incoming email.
            sender_email: Sender address (candidates are pre-filtered on it).
            subject: Subject line (candidates are pre-filtered on it).
            candidates: Patterns returned by the store's fuzzy search.

        Returns:
            At most ``max_results`` matches, best first.
        """
        now = self._clock()
        scored = [self.score(pattern, email_content, now) for pattern in candidates]
        kept = [m for m in scored if m.score > self.min_score]

        kept.sort(
            key=lambda m: (
                -m.score,
                -m.pattern.confidence_score,
                -(m.pattern.last_used_at.timestamp() if m.pattern.last_used_at else float("-inf")),
            )
        )
        ranked = kept[: self.max_results]

        logger.debug(
            "Matched %d of %d candidate pattern(s)",
            len(ranked),
            len(candidates),
            extra={"sender": sender_email, "subject": subject[:80]},
        )
        return ranked
