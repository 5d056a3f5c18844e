"""Draft selection state machine.

Per email, the first satisfied state wins:

1. CacheHit: a cached draft exists (memory tier, then persistent tier).
2. StoredDraftReady: an unexpired ready draft was persisted earlier.
3. PatternMatch: the best stored pattern scores at least the user's
   minimum pattern confidence; the oracle writes a draft grounded on
   the pattern's template using the low-cost tier.
4. FallbackGeneration: the oracle writes an ungrounded draft on the
   standard tier with a fixed, lower confidence.

When every generative state fails, a deterministic acknowledgement draft
is returned instead of an error. ``select_draft`` never raises.
"""

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from replywise.core.exceptions import OracleError, StoreError, sanitize_error
from replywise.core.llm import LanguageOracle, strip_code_fences
from replywise.core.model_config import ModelTier
from replywise.db.config_store import LearningConfigStore
from replywise.db.draft_store import DraftStore
from replywise.db.pattern_store import PatternStore
from replywise.learning.matching import PatternMatcher
from replywise.models.draft import DraftCacheEntry, DraftResult, DraftState, GeneratedDraft
from replywise.models.email import EmailMessage
from replywise.models.learning import LearningConfig
from replywise.models.pattern import PatternMatch
from replywise.services.draft_cache import TwoTierDraftCache
from replywise.services.email_filter import EmailFilter

logger = logging.getLogger(__name__)

PATTERN_CONFIDENCE_BONUS = 0.1
PATTERN_CONFIDENCE_CAP = 0.95
FALLBACK_CONFIDENCE = 0.6
MINIMAL_CONFIDENCE = 0.3

DEFAULT_STORED_DRAFT_TTL_DAYS = 7
DEFAULT_MINIMAL_DRAFT_TTL_SECONDS = 15 * 60
PROMPT_CONTENT_CHARS = 1000

DRAFT_SYSTEM_PROMPT = (
    "You are a professional email assistant. Write replies on behalf of the user "
    "that are helpful, courteous and consistent with their communication style."
)

MINIMAL_BODY = (
    "Thank you for your email. I have received your message and will get back "
    "to you as soon as possible.\n\nBest regards"
)


def reply_subject(original_subject: str) -> str:
    """``Re: <subject>`` without doubling an existing reply prefix."""
    subject = original_subject.strip()
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}" if subject else "Re:"


def parse_draft_response(content: str, original_subject: str) -> tuple[str, str]:
    """Split generated text into ``(subject, body)``.

    Accepts ``SUBJECT:`` / ``BODY:`` sections or a JSON object with
    ``subject`` and ``body``. A missing subject becomes a reply subject;
    a missing body becomes the whole text.
    """
    cleaned = strip_code_fences(content)

    if cleaned.startswith("{"):
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            subject = str(data.get("subject") or "").strip() or reply_subject(original_subject)
            body = str(data.get("body") or "").strip() or cleaned
            return subject, body

    subject = ""
    body_lines: list[str] = []
    in_body = False
    for line in content.splitlines():
        if line.startswith("SUBJECT:"):
            subject = line[len("SUBJECT:") :].strip()
        elif line.startswith("BODY:"):
            body_lines = [line[len("BODY:") :].strip()]
            in_body = True
        elif in_body:
            body_lines.append(line)

    body = "\n".join(body_lines).strip()
    return subject.strip() or reply_subject(original_subject), body or content.strip()


def build_pattern_prompt(email: EmailMessage, match: PatternMatch) -> str:
    """Prompt grounding the reply on a learned pattern."""
    pattern = match.pattern
    return f"""Based on the learned communication pattern, generate a professional email response.

INCOMING EMAIL:
Subject: {email.subject}
From: {email.sender}
Content: {email.body[:PROMPT_CONTENT_CHARS]}

LEARNED PATTERN:
Type: {pattern.pattern_type}
Context: {pattern.context_category}
Template: {pattern.response_template}
Keywords: {", ".join(pattern.trigger_keywords)}

Generate a response that follows the learned pattern while being contextually appropriate.

Return the response in this format:
SUBJECT: [response subject]
BODY: [response body]

Keep the response professional, helpful, and consistent with the learned pattern style."""


def build_fallback_prompt(email: EmailMessage) -> str:
    """Prompt for an ungrounded reply."""
    return f"""Generate a professional email response to the following email:

INCOMING EMAIL:
Subject: {email.subject}
From: {email.sender}
Content: {email.body[:PROMPT_CONTENT_CHARS]}

Generate an appropriate, professional response that:
1. Acknowledges the sender's message
2. Addresses their main points or questions
3. Maintains a helpful and courteous tone
4. Is concise but complete

Return the response in this format:
SUBJECT: [response subject]
BODY: [response body]"""


def minimal_draft(email: EmailMessage) -> GeneratedDraft:
    """Deterministic acknowledgement used when generation is unavailable."""
    return GeneratedDraft(
        subject=reply_subject(email.subject),
        body=MINIMAL_BODY,
        confidence=MINIMAL_CONFIDENCE,
    )


@dataclass
class _Generation:
    draft: GeneratedDraft
    state: DraftState
    model: str = ""
    tokens_used: int = 0
    matches: Sequence[PatternMatch] = ()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DraftSelector:
    """Selects or generates a reply draft for one email."""

    def __init__(
        self,
        oracle: LanguageOracle,
        pattern_store: PatternStore,
        cache: TwoTierDraftCache,
        config_store: LearningConfigStore,
        draft_store: DraftStore | None = None,
        matcher: PatternMatcher | None = None,
        email_filter: EmailFilter | None = None,
        stored_draft_ttl_days: int = DEFAULT_STORED_DRAFT_TTL_DAYS,
        minimal_draft_ttl_seconds: int = DEFAULT_MINIMAL_DRAFT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the selector.

        Args:
            oracle: Language oracle for draft generation.
            pattern_store: Source of candidate patterns and usage updates.
            cache: Two-tier draft cache.
            config_store: Per-user learning configuration.
            draft_store: Long-lived ready-draft storage, if any.
            matcher: Pattern ranking; defaults to the standard weights.
            email_filter: Skips automated mail; defaults to the standard rules.
            stored_draft_ttl_days: Lifetime of generated drafts.
            minimal_draft_ttl_seconds: Lifetime of acknowledgement drafts.
            clock: Time source for expiry stamps.
        """
        self._oracle = oracle
        self._patterns = pattern_store
        self._cache = cache
        self._config_store = config_store
        self._draft_store = draft_store
        self._matcher = matcher or PatternMatcher()
        self._filter = email_filter or EmailFilter()
        self._draft_ttl = timedelta(days=stored_draft_ttl_days)
        self._minimal_ttl = timedelta(seconds=minimal_draft_ttl_seconds)
        self._clock = clock

    async def select_draft(
        self,
        email: EmailMessage,
        user_id: str,
        *,
        force_regenerate: bool = False,
    ) -> DraftResult:
        """Run the state machine for one email.

        Args:
            email: Incoming email.
            user_id: Mailbox owner.
            force_regenerate: Skip cache and stored-draft lookups.

        Returns:
            DraftResult. Unexpected errors are logged and reported as a
            FAILED result with a sanitized message.
        """
        try:
            return await self._run(email, user_id, force_regenerate)
        except Exception as e:
            logger.exception(
                "[DRAFT_SELECTION] Unexpected failure", extra={"email_id": email.id, "user_id": user_id}
            )
            return DraftResult(
                success=False, email_id=email.id, state=DraftState.FAILED, error=sanitize_error(e)
            )

    async def _run(self, email: EmailMessage, user_id: str, force_regenerate: bool) -> DraftResult:
        if not force_regenerate:
            cached = await self._cache.get(email.id, user_id)
            if cached is not None:
                logger.debug("[DRAFT_SELECTION] Cache hit", extra={"email_id": email.id})
                return DraftResult(
                    success=True, email_id=email.id, state=DraftState.CACHE_HIT, entry=cached, cached=True
                )

            stored = await self._stored_draft(email.id, user_id)
            if stored is not None:
                await self._cache.put(stored)
                logger.debug("[DRAFT_SELECTION] Stored draft ready", extra={"email_id": email.id})
                return DraftResult(
                    success=True,
                    email_id=email.id,
                    state=DraftState.STORED_DRAFT_READY,
                    entry=stored,
                    cached=True,
                )

        config = await self._config_store.get_config(user_id)

        decision = self._filter.should_process(email, config)
        if not decision.should_process:
            return DraftResult(
                success=True,
                email_id=email.id,
                state=DraftState.SKIPPED,
                skipped=True,
                reason=decision.reason,
            )

        if not config.auto_draft_enabled:
            return DraftResult(
                success=False,
                email_id=email.id,
                state=DraftState.DISABLED,
                reason="auto_draft_disabled",
                error="Automatic drafting is disabled for this user.",
            )

        generation = await self._generate(email, user_id, config)
        entry = await self._persist(email, user_id, generation)

        logger.info(
            "[DRAFT_SELECTION] Draft ready via %s (confidence %.2f)",
            generation.state.value,
            generation.draft.confidence,
            extra={"email_id": email.id, "user_id": user_id, "tokens_used": generation.tokens_used},
        )
        return DraftResult(
            success=True,
            email_id=email.id,
            state=generation.state,
            entry=entry,
            tokens_used=generation.tokens_used,
        )

    async def _stored_draft(self, email_id: str, user_id: str) -> DraftCacheEntry | None:
        if self._draft_store is None:
            return None
        try:
            return await self._draft_store.get_ready_draft(email_id, user_id)
        except StoreError as e:
            logger.warning(
                "[DRAFT_SELECTION] Stored draft lookup failed: %s", e.message, extra={"email_id": email_id}
            )
            return None

    async def _find_matches(self, email: EmailMessage, user_id: str) -> list[PatternMatch]:
        try:
            candidates = await self._patterns.fuzzy_search_candidates(
                user_id, email.body, email.sender, email.subject
            )
        except StoreError as e:
            logger.warning(
                "[DRAFT_SELECTION] Candidate search failed: %s", e.message, extra={"email_id": email.id}
            )
            return []
        return self._matcher.match(email.body, email.sender, email.subject, candidates)

    async def _generate(self, email: EmailMessage, user_id: str, config: LearningConfig) -> _Generation:
        matches = await self._find_matches(email, user_id)
        best = matches[0] if matches else None

        if best is not None and best.score >= config.minimum_pattern_confidence:
            try:
                response = await self._oracle.generate(
                    DRAFT_SYSTEM_PROMPT,
                    build_pattern_prompt(email, best),
                    tier=ModelTier.LOW_COST,
                    temperature=0.3,
                    max_tokens=800,
                )
            except OracleError as e:
                logger.warning(
                    "[DRAFT_SELECTION] Pattern-based generation failed: %s",
                    e.message,
                    extra={"email_id": email.id, "pattern_id": best.pattern_id},
                )
                await self._record_usage([best], succeeded=False)
            else:
                subject, body = parse_draft_response(response.text, email.subject)
                confidence = min(PATTERN_CONFIDENCE_CAP, best.score + PATTERN_CONFIDENCE_BONUS)
                return _Generation(
                    draft=GeneratedDraft(subject=subject, body=body, confidence=confidence),
                    state=DraftState.PATTERN_MATCH,
                    model=response.model,
                    tokens_used=response.tokens_used,
                    matches=matches,
                )

        try:
            response = await self._oracle.generate(
                DRAFT_SYSTEM_PROMPT,
                build_fallback_prompt(email),
                tier=ModelTier.STANDARD,
                temperature=0.4,
                max_tokens=800,
            )
        except OracleError as e:
            logger.warning(
                "[DRAFT_SELECTION] Fallback generation failed, using acknowledgement: %s",
                e.message,
                extra={"email_id": email.id},
            )
            return _Generation(
                draft=minimal_draft(email), state=DraftState.MINIMAL_FALLBACK
            )

        subject, body = parse_draft_response(response.text, email.subject)
        return _Generation(
            draft=GeneratedDraft(subject=subject, body=body, confidence=FALLBACK_CONFIDENCE),
            state=DraftState.FALLBACK_GENERATION,
            model=response.model,
            tokens_used=response.tokens_used,
        )

    async def _persist(self, email: EmailMessage, user_id: str, generation: _Generation) -> DraftCacheEntry:
        now = self._clock()
        minimal = generation.state == DraftState.MINIMAL_FALLBACK
        pattern_ids = [m.pattern_id for m in generation.matches if m.pattern_id]

        entry = DraftCacheEntry(
            email_id=email.id,
            user_id=user_id,
            subject=generation.draft.subject,
            body=generation.draft.body,
            confidence_score=generation.draft.confidence,
            matched_pattern_ids=pattern_ids,
            pattern_match_score=generation.matches[0].score if generation.matches else 0.0,
            fallback_generation=generation.state != DraftState.PATTERN_MATCH,
            tokens_used=generation.tokens_used,
            generation_model=generation.model,
            created_at=now,
            expires_at=now + (self._minimal_ttl if minimal else self._draft_ttl),
        )

        await self._cache.put(entry)

        if not minimal and self._draft_store is not None:
            try:
                entry = await self._draft_store.save_draft(entry)
            except StoreError as e:
                logger.warning(
                    "[DRAFT_SELECTION] Could not persist draft: %s", e.message, extra={"email_id": email.id}
                )

        if generation.state == DraftState.PATTERN_MATCH:
            await self._record_usage(generation.matches, succeeded=True)
        return entry

    async def _record_usage(self, matches: Sequence[PatternMatch], succeeded: bool) -> None:
        for match in matches:
            if not match.pattern_id:
                continue
            try:
                await self._patterns.update_usage(match.pattern_id, succeeded)
            except StoreError as e:
                logger.warning(
                    "[DRAFT_SELECTION] Pattern usage update failed: %s",
                    e.message,
                    extra={"pattern_id": match.pattern_id},
                )
