"""Continuous learning: fold patterns from each new email into the store."""

import logging

from replywise.core.exceptions import StoreError
from replywise.db.pattern_store import PatternStore
from replywise.learning.extraction import PatternExtractor
from replywise.learning.similarity import word_overlap
from replywise.models.email import EmailDirection, EmailMessage
from replywise.models.learning import LearningOutcome
from replywise.models.pattern import Pattern

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONTENT_LENGTH = 50
EXISTING_MIN_CONFIDENCE = 0.4
TEMPLATE_OVERLAP_THRESHOLD = 0.7
OWN_REPLY_CONFIDENCE_BOOST = 1.1
OWN_REPLY_SUCCESS_RATE = 0.9


def is_own_reply(email: EmailMessage, user_address: str | None = None) -> bool:
    """True when the email was authored by the user.

    A sent email counts; when ``user_address`` is known the sender must
    also match it.
    """
    if email.direction != EmailDirection.SENT:
        return False
    if user_address:
        return email.sender.strip().lower() == user_address.strip().lower()
    return True


def boost_own_reply(pattern: Pattern) -> Pattern:
    """Strengthen a candidate learned from the user's own writing."""
    return pattern.updated(
        confidence_score=pattern.confidence_score * OWN_REPLY_CONFIDENCE_BOOST,
        success_rate=OWN_REPLY_SUCCESS_RATE,
    )


def fold_into(existing: Pattern, candidate: Pattern) -> Pattern:
    """Update an existing pattern in place with a matching candidate.

    Keywords are unioned, confidence becomes the usage-weighted average
    and the usage count grows by one.
    """
    usage = existing.usage_count
    confidence = (existing.confidence_score * usage + candidate.confidence_score) / (usage + 1)
    return existing.updated(
        trigger_keywords=existing.trigger_keywords + candidate.trigger_keywords,
        confidence_score=confidence,
        usage_count=usage + 1,
    )


class ContinuousLearner:
    """Re-runs extraction on new emails and merges results into the store.

    For each candidate the store is searched for patterns of the same
    type and category with confidence at least 0.4. The one whose response
    template overlaps the candidate's most (above 0.7) is updated;
    otherwise the candidate is inserted as a new pattern.
    """

    def __init__(
        self,
        extractor: PatternExtractor,
        store: PatternStore,
        min_content_length: int = DEFAULT_MIN_CONTENT_LENGTH,
    ) -> None:
        self._extractor = extractor
        self._store = store
        self.min_content_length = min_content_length

    async def learn_from_email(
        self,
        user_id: str,
        email: EmailMessage,
        *,
        own_reply: bool | None = None,
        user_address: str | None = None,
    ) -> LearningOutcome:
        """Learn from one newly observed email.

        Args:
            user_id: Owner of the mailbox.
            email: The received or sent email.
            own_reply: Whether the user authored it; inferred when None.
            user_address: The user's address, used for the inference.

        Returns:
            What was extracted, created and updated. Never raises for
            oracle, parse or store failures.
        """
        if email.content_length < self.min_content_length:
            logger.debug(
                "[LEARNING] Skipping short email",
                extra={"email_id": email.id, "length": email.content_length},
            )
            return LearningOutcome(email_id=email.id, skipped=True, reason="content_too_short")

        candidates = await self._extractor.extract(email, user_id=user_id)
        outcome = LearningOutcome(email_id=email.id, patterns_extracted=len(candidates))
        if not candidates:
            return outcome

        authored = own_reply if own_reply is not None else is_own_reply(email, user_address)
        for candidate in candidates:
            if authored:
                candidate = boost_own_reply(candidate)
            try:
                created = await self._merge_or_insert(user_id, candidate)
            except StoreError as e:
                outcome.failures += 1
                logger.warning(
                    "[LEARNING] Could not store learned pattern: %s",
                    e.message,
                    extra={"user_id": user_id, "email_id": email.id},
                )
                continue
            if created:
                outcome.patterns_created += 1
            else:
                outcome.patterns_updated += 1

        logger.info(
            "[LEARNING] Processed email: %d extracted, %d created, %d updated",
            outcome.patterns_extracted,
            outcome.patterns_created,
            outcome.patterns_updated,
            extra={"user_id": user_id, "email_id": email.id, "own_reply": authored},
        )
        return outcome

    async def _merge_or_insert(self, user_id: str, candidate: Pattern) -> bool:
        """Returns True when a new pattern was inserted."""
        existing = await self._store.find_patterns_by_type_category(
            user_id,
            candidate.pattern_type,
            candidate.context_category,
            EXISTING_MIN_CONFIDENCE,
        )

        best: Pattern | None = None
        best_overlap = TEMPLATE_OVERLAP_THRESHOLD
        for pattern in existing:
            overlap = word_overlap(pattern.response_template, candidate.response_template)
            if overlap > best_overlap:
                best, best_overlap = pattern, overlap

        if best is None:
            await self._store.upsert_pattern(user_id, candidate)
            return True

        await self._store.upsert_pattern(user_id, fold_into(best, candidate))
        return False
