"""Initial learning from a user's email history.

Filters received/response pairs, extracts patterns batch by batch per
working language, merges similar patterns and persists the result.
"""

import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from replywise.core.exceptions import StoreError
from replywise.db.analytics_store import LearningAnalyticsStore
from replywise.db.pattern_store import PatternStore
from replywise.learning.extraction import PatternExtractor
from replywise.learning.similarity import merge_similar_patterns
from replywise.models.email import EmailPair
from replywise.models.learning import LearningAnalysis, LearningConfig, LearningSession
from replywise.models.pattern import Pattern

logger = logging.getLogger(__name__)

QUALITY_RECOMMENDATION_THRESHOLD = 0.6
MIN_PATTERNS_FOR_GOOD_COVERAGE = 5

LOW_QUALITY_RECOMMENDATION = (
    "Learning quality could be improved. Try to maintain consistent communication styles."
)
FEW_PATTERNS_RECOMMENDATION = "More email interactions needed for better pattern recognition."

ProgressCallback = Callable[[int, int], None]


def calculate_learning_quality(patterns: Sequence[Pattern]) -> float:
    """Overall quality of a learned pattern set in ``[0, 1]``.

    ``0.4*avg_confidence + 0.3*diversity + 0.3*completeness`` where
    diversity is distinct pattern types over ``max(n, 5)`` and
    completeness is the share of patterns with keywords, a template longer
    than 10 characters and at least one example pair.
    """
    if not patterns:
        return 0.0

    n = len(patterns)
    avg_confidence = sum(p.confidence_score for p in patterns) / n
    diversity = len({p.pattern_type for p in patterns}) / max(n, 5)
    complete = sum(
        1
        for p in patterns
        if p.trigger_keywords and len(p.response_template) > 10 and p.example_pairs
    )
    return avg_confidence * 0.4 + diversity * 0.3 + (complete / n) * 0.3


def _sender_domain(address: str) -> str:
    return address.rsplit("@", 1)[-1].strip().lower() if "@" in address else ""


def select_pairs_for_learning(
    pairs: Sequence[EmailPair],
    config: LearningConfig,
    now: datetime | None = None,
) -> list[EmailPair]:
    """Keep answered pairs within the date range from non-excluded senders.

    The result is capped at ``config.max_emails_to_analyze``.
    """
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=config.date_range_days)
    excluded_senders = {s.strip().lower() for s in config.excluded_senders}
    excluded_domains = {d.strip().lower().lstrip("@") for d in config.excluded_domains}

    selected: list[EmailPair] = []
    for pair in pairs:
        if not pair.has_response:
            continue
        sender = pair.received.sender.strip().lower()
        if sender in excluded_senders or _sender_domain(sender) in excluded_domains:
            continue
        received_at = pair.received.received_at
        if received_at is not None:
            if received_at.tzinfo is None:
                received_at = received_at.replace(tzinfo=UTC)
            if received_at < cutoff:
                continue
        selected.append(pair)
        if len(selected) >= config.max_emails_to_analyze:
            break
    return selected


class InitialLearningService:
    """Learns a user's first pattern set from historical email pairs."""

    def __init__(
        self,
        extractor: PatternExtractor,
        store: PatternStore,
        analytics_store: LearningAnalyticsStore | None = None,
    ) -> None:
        self._extractor = extractor
        self._store = store
        self._analytics_store = analytics_store

    async def learn_from_history(
        self,
        user_id: str,
        pairs: Sequence[EmailPair],
        config: LearningConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> LearningAnalysis:
        """Run initial learning over email history.

        Args:
            user_id: Owner of the mailbox.
            pairs: Received emails with their replies.
            config: Learning configuration; defaults when omitted.
            on_progress: Called with ``(items_done, items_total)`` after
                each extraction batch.

        Returns:
            LearningAnalysis. Per-pattern store failures and a failed
            analytics write are logged and never abort the run.
        """
        config = config or LearningConfig()
        start = time.monotonic()

        selected = select_pairs_for_learning(pairs, config)
        logger.info(
            "[LEARNING] Initial learning started: %d of %d pair(s) selected",
            len(selected),
            len(pairs),
            extra={"user_id": user_id},
        )

        if not selected:
            return LearningAnalysis(
                recommendations=[
                    "No email pairs found for learning. Send and receive more emails to enable pattern learning."
                ],
                processing_time_ms=int((time.monotonic() - start) * 1000),
            )

        extraction = await self._extractor.extract_many(selected, user_id=user_id, on_progress=on_progress)
        merged = merge_similar_patterns(extraction.patterns, config.pattern_merge_threshold)

        saved = 0
        store_failures = 0
        for pattern in merged:
            try:
                await self._store.upsert_pattern(user_id, pattern)
                saved += 1
            except StoreError as e:
                store_failures += 1
                logger.warning(
                    "[LEARNING] Failed to save pattern: %s", e.message, extra={"user_id": user_id}
                )

        quality = calculate_learning_quality(merged)
        recommendations = list(extraction.recommendations)
        if quality < QUALITY_RECOMMENDATION_THRESHOLD:
            recommendations.append(LOW_QUALITY_RECOMMENDATION)
        if len(merged) < MIN_PATTERNS_FOR_GOOD_COVERAGE:
            recommendations.append(FEW_PATTERNS_RECOMMENDATION)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "[LEARNING] Initial learning completed: %d pattern(s) saved, quality %.2f",
            saved,
            quality,
            extra={
                "user_id": user_id,
                "store_failures": store_failures,
                "tokens_used": extraction.tokens_used,
                "processing_time_ms": elapsed_ms,
            },
        )

        await self._record_session(
            LearningSession(
                user_id=user_id,
                emails_analyzed=len(selected),
                patterns_created=saved,
                processing_time_seconds=elapsed_ms // 1000,
                tokens_used=extraction.tokens_used,
                learning_quality_score=quality,
            )
        )

        return LearningAnalysis(
            patterns_found=saved,
            quality_score=quality,
            recommendations=recommendations,
            processing_time_ms=elapsed_ms,
            tokens_used=extraction.tokens_used,
            emails_analyzed=len(selected),
            languages=extraction.languages,
        )

    async def _record_session(self, session: LearningSession) -> None:
        if self._analytics_store is None:
            return
        try:
            await self._analytics_store.record_session(session)
        except StoreError as e:
            logger.warning(
                "[LEARNING] Failed to record learning analytics: %s", e.message, extra={"user_id": session.user_id}
            )
