"""Pattern extraction pipeline.

Turns emails (or received/response pairs) into candidate ``Pattern``
values through the language oracle. Oracle output is parsed into a
tagged result (``PatternsParsed`` or ``ParseError``) and every entry is
validated against an explicit schema before a ``Pattern`` is built.
Extraction never raises to its caller: oracle and parse failures yield
zero patterns for the affected batch.
"""

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from replywise.core.exceptions import OracleError, PatternParseError, PatternValidationError
from replywise.core.llm import LanguageOracle, strip_code_fences
from replywise.core.model_config import ModelTier
from replywise.learning.chunking import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_CHUNKS,
    LONG_EMAIL_THRESHOLD,
    is_long_email,
    split_into_chunks,
)
from replywise.learning.language import MIXED, detect_language
from replywise.learning.similarity import DEDUP_THRESHOLD, deduplicate_patterns
from replywise.models.email import EmailDirection, EmailMessage, EmailPair
from replywise.models.pattern import DEFAULT_CONFIDENCE, ExamplePair, Pattern, PatternMetadata

logger = logging.getLogger(__name__)

ExtractionItem = EmailMessage | EmailPair

DEFAULT_BATCH_SIZE = 10
DEFAULT_MIN_CONFIDENCE = 0.3
BATCH_BODY_EXCERPT_CHARS = 500

FAILED_BATCH_RECOMMENDATION = "Some patterns could not be analyzed due to processing errors."

SYSTEM_PROMPT = (
    "You are an expert email communication analyst. Analyze email patterns to help "
    "users improve their email responses. IMPORTANT: Return your response as valid "
    "JSON only, without any markdown formatting or code blocks."
)

_LANGUAGE_INSTRUCTIONS = {
    "sl": (
        "IMPORTANT: All patterns are in Slovenian. Analyze Slovenian communication "
        "patterns, keywords, and response templates."
    ),
    "en": (
        "IMPORTANT: All patterns are in English. Focus on English communication "
        "patterns, keywords, and response templates."
    ),
    MIXED: (
        "IMPORTANT: These emails contain mixed languages. Separate patterns by "
        "language for optimal learning."
    ),
}

_OUTPUT_SCHEMA = """{
  "patterns": [
    {
      "pattern_type": "question_response|greeting_style|closing_style|complaint_handling|etc",
      "context_category": "customer_inquiry|sales_request|technical_support|general|etc",
      "trigger_keywords": ["keyword1", "keyword2"],
      "trigger_phrases": ["short phrase"],
      "response_template": "Template with placeholders like {customer_name}",
      "confidence_score": 0.8,
      "example_pairs": [{"question": "...", "answer": "..."}]
    }
  ],
  "style_analysis": {
    "tone": "professional|friendly|formal",
    "avg_response_length": "concise|detailed",
    "formality_level": "high|medium|low"
  }
}"""


# ---------------------------------------------------------------------------
# Oracle output schema
# ---------------------------------------------------------------------------


class _PatternEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pattern_type: str | None = None
    context_category: str | None = None
    trigger_keywords: list[Any] = Field(default_factory=list)
    trigger_phrases: list[Any] = Field(default_factory=list)
    sender_patterns: list[Any] = Field(default_factory=list)
    response_template: str | None = None
    confidence_score: float | None = None
    example_pairs: list[ExamplePair] = Field(default_factory=list)


class _StyleAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tone: str | None = None
    avg_response_length: str | None = None
    formality_level: str | None = None


class _AnalysisPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    patterns: list[Any] = Field(default_factory=list)
    style_analysis: _StyleAnalysis | None = None


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternsParsed:
    """Oracle output parsed successfully; ``dropped`` entries failed validation."""

    patterns: list[Pattern]
    dropped: int = 0


@dataclass(frozen=True)
class ParseError:
    """Oracle output was not the expected structure."""

    reason: str
    raw_excerpt: str = ""


ParseResult = PatternsParsed | ParseError


@dataclass
class ExtractionBatch:
    """Patterns and accounting for one or more extraction calls."""

    patterns: list[Pattern] = field(default_factory=list)
    tokens_used: int = 0
    oracle_calls: int = 0
    failed_batches: int = 0
    recommendations: list[str] = field(default_factory=list)
    languages: dict[str, int] = field(default_factory=dict)

    def absorb(self, other: "ExtractionBatch") -> None:
        """Fold another batch's results into this one."""
        self.patterns.extend(other.patterns)
        self.tokens_used += other.tokens_used
        self.oracle_calls += other.oracle_calls
        self.failed_batches += other.failed_batches
        for recommendation in other.recommendations:
            if recommendation not in self.recommendations:
                self.recommendations.append(recommendation)
        for language, count in other.languages.items():
            self.languages[language] = self.languages.get(language, 0) + count


def _load_payload(text: str) -> Any:
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Prose around the object: retry on the outermost braces.
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            pass

    raise PatternParseError("Oracle output is not valid JSON", raw_excerpt=cleaned)


def _build_pattern(
    raw: Any,
    *,
    user_id: str | None,
    language: str,
    style: _StyleAnalysis | None,
    min_confidence: float,
) -> Pattern:
    if not isinstance(raw, dict):
        raise PatternValidationError("pattern entry is not an object")

    try:
        entry = _PatternEntry.model_validate(raw)
    except ValidationError as e:
        raise PatternValidationError(f"pattern entry has invalid fields: {e.error_count()} errors") from e

    pattern_type = (entry.pattern_type or "").strip()
    template = (entry.response_template or "").strip()
    if not pattern_type:
        raise PatternValidationError("missing pattern_type", field="pattern_type")
    if not template:
        raise PatternValidationError("missing response_template", field="response_template")

    confidence = DEFAULT_CONFIDENCE if entry.confidence_score is None else entry.confidence_score
    if confidence < min_confidence:
        raise PatternValidationError(
            f"confidence {confidence:.2f} below {min_confidence:.2f}", field="confidence_score"
        )

    metadata = PatternMetadata(
        language=language,
        formality_level=style.formality_level if style else None,
        tone=style.tone if style else None,
        style_notes=style.avg_response_length if style else None,
    )
    return Pattern(
        user_id=user_id,
        pattern_type=pattern_type,
        context_category=(entry.context_category or "").strip() or "general",
        trigger_keywords=entry.trigger_keywords,
        trigger_phrases=entry.trigger_phrases,
        sender_patterns=entry.sender_patterns,
        response_template=template,
        confidence_score=confidence,
        example_pairs=entry.example_pairs,
        metadata=metadata,
    )


def parse_pattern_response(
    text: str,
    *,
    user_id: str | None = None,
    language: str = MIXED,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> ParseResult:
    """Parse oracle output into validated patterns.

    Accepts either ``{"patterns": [...], "style_analysis": {...}}`` or a
    bare list of pattern objects, optionally wrapped in markdown fences.
    Entries that fail validation (missing ``pattern_type`` or
    ``response_template``, confidence below ``min_confidence``, wrong
    types) are dropped individually.

    Args:
        text: Raw oracle output.
        user_id: Owner stamped onto every pattern.
        language: Working language recorded in pattern metadata.
        min_confidence: Entries below this confidence are dropped.

    Returns:
        ``PatternsParsed`` on success, ``ParseError`` when the payload as a
        whole is unusable.
    """
    try:
        data = _load_payload(text)
    except PatternParseError as e:
        return ParseError(reason=e.message, raw_excerpt=e.details.get("raw_excerpt", ""))

    if isinstance(data, list):
        data = {"patterns": data}
    if not isinstance(data, dict):
        return ParseError(reason="Oracle output is not a JSON object", raw_excerpt=text[:200])

    try:
        payload = _AnalysisPayload.model_validate(data)
    except ValidationError as e:
        return ParseError(reason=f"Unexpected analysis shape: {e.error_count()} errors", raw_excerpt=text[:200])

    patterns: list[Pattern] = []
    dropped = 0
    for raw in payload.patterns:
        try:
            patterns.append(
                _build_pattern(
                    raw,
                    user_id=user_id,
                    language=language,
                    style=payload.style_analysis,
                    min_confidence=min_confidence,
                )
            )
        except PatternValidationError as e:
            dropped += 1
            logger.debug("Dropping extracted pattern: %s", e.message, extra=e.details)

    return PatternsParsed(patterns=patterns, dropped=dropped)


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------


def _excerpt(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else f"{text[:limit]}..."


def _format_item(item: ExtractionItem, index: int, body_limit: int) -> str:
    if isinstance(item, EmailPair):
        lines = [
            f"EMAIL PAIR {index}:",
            f'RECEIVED from {item.received.sender or "unknown"}: "{item.received.subject}"',
            _excerpt(item.received.body, body_limit),
        ]
        if item.response is not None:
            lines.extend([
                "",
                f'RESPONSE: "{item.response.subject}"',
                _excerpt(item.response.body, body_limit),
            ])
        lines.append("---")
        return "\n".join(lines)

    label = "SENT BY USER" if item.direction == EmailDirection.SENT else "RECEIVED"
    return "\n".join([
        f"EMAIL {index} ({label}):",
        f"From: {item.sender or 'unknown'}",
        f'Subject: "{item.subject}"',
        _excerpt(item.body, body_limit),
        "---",
    ])


def build_extraction_prompt(
    items: Sequence[ExtractionItem],
    language: str = MIXED,
    body_limit: int = BATCH_BODY_EXCERPT_CHARS,
) -> str:
    """Build the user prompt asking the oracle for patterns in ``items``."""
    examples = "\n".join(_format_item(item, i + 1, body_limit) for i, item in enumerate(items))
    instruction = _LANGUAGE_INSTRUCTIONS.get(language, _LANGUAGE_INSTRUCTIONS[MIXED])

    return f"""Analyze these email communication patterns and extract specific question-answer patterns:

{examples}

{instruction}

Please identify:
1. SPECIFIC question types and their corresponding answer patterns
2. Communication style elements (tone, formality, structure)
3. Common response templates that could be reused
4. Keywords that trigger specific types of responses (in the appropriate language)

Return your analysis as structured JSON with this format:
{_OUTPUT_SCHEMA}

Focus on patterns that are:
- Specific and actionable
- Have clear triggers (keywords/phrases)
- Can be generalized to similar situations
- Show consistent communication style"""


def item_text(item: ExtractionItem) -> str:
    """Text used to classify the working language of an item."""
    if isinstance(item, EmailPair):
        return item.combined_text
    return f"{item.subject} {item.body}"


def _primary_body(item: ExtractionItem) -> str:
    return item.received.body if isinstance(item, EmailPair) else item.body


def _with_body(item: ExtractionItem, body: str) -> ExtractionItem:
    if isinstance(item, EmailPair):
        return item.model_copy(update={"received": item.received.model_copy(update={"body": body})})
    return item.model_copy(update={"body": body})


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class PatternExtractor:
    """Extracts candidate patterns from emails through the language oracle."""

    def __init__(
        self,
        oracle: LanguageOracle,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        batch_size: int = DEFAULT_BATCH_SIZE,
        long_email_threshold: int = LONG_EMAIL_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
    ) -> None:
        """Initialize the extractor.

        Args:
            oracle: Language oracle used for extraction calls.
            min_confidence: Extracted entries below this confidence are dropped.
            batch_size: Maximum items sent to the oracle in one call.
            long_email_threshold: Bodies longer than this are chunked.
            chunk_size: Maximum characters per chunk.
            max_chunks: Maximum chunks extracted per email.
        """
        self._oracle = oracle
        self.min_confidence = min_confidence
        self.batch_size = max(1, batch_size)
        self.long_email_threshold = long_email_threshold
        self.chunk_size = chunk_size
        self.max_chunks = max_chunks

    async def _call(
        self,
        items: Sequence[ExtractionItem],
        language: str,
        user_id: str | None,
        body_limit: int,
    ) -> ExtractionBatch:
        result = ExtractionBatch(languages={language: len(items)})
        prompt = build_extraction_prompt(items, language, body_limit)

        try:
            response = await self._oracle.generate(
                SYSTEM_PROMPT,
                prompt,
                tier=ModelTier.HIGH_QUALITY,
                temperature=0.3,
                max_tokens=2000,
            )
        except OracleError as e:
            logger.warning(
                "[LEARNING] Extraction oracle call failed for %d item(s): %s",
                len(items),
                e.message,
                extra={"user_id": user_id, "language": language},
            )
            result.failed_batches = 1
            result.recommendations.append(FAILED_BATCH_RECOMMENDATION)
            return result

        result.oracle_calls = 1
        result.tokens_used = response.tokens_used

        parsed = parse_pattern_response(
            response.text,
            user_id=user_id,
            language=language,
            min_confidence=self.min_confidence,
        )
        if isinstance(parsed, ParseError):
            logger.warning(
                "[LEARNING] Discarding unparseable extraction output: %s",
                parsed.reason,
                extra={"user_id": user_id, "raw_excerpt": parsed.raw_excerpt},
            )
            result.failed_batches = 1
            result.recommendations.append(FAILED_BATCH_RECOMMENDATION)
            return result

        result.patterns = parsed.patterns
        logger.debug(
            "[LEARNING] Extracted %d pattern(s), dropped %d",
            len(parsed.patterns),
            parsed.dropped,
            extra={"user_id": user_id, "language": language},
        )
        return result

    async def extract_detailed(
        self,
        item: ExtractionItem,
        language_hint: str | None = None,
        *,
        user_id: str | None = None,
    ) -> ExtractionBatch:
        """Extract patterns from one email or pair, with token accounting.

        Long bodies are split into chunks that are extracted concurrently;
        chunk results are de-duplicated (heads of similarity clusters at
        0.7 are kept) before being returned.
        """
        language = language_hint or detect_language(item_text(item))
        body = _primary_body(item)

        if not is_long_email(body, self.long_email_threshold):
            return await self._call([item], language, user_id, self.chunk_size)

        chunks = split_into_chunks(body, self.chunk_size, self.max_chunks)
        logger.info(
            "[LEARNING] Long email split into %d chunk(s) for extraction",
            len(chunks),
            extra={"user_id": user_id, "body_length": len(body)},
        )
        chunk_results = await asyncio.gather(
            *(self._call([_with_body(item, chunk)], language, user_id, self.chunk_size) for chunk in chunks)
        )

        combined = ExtractionBatch()
        for chunk_result in chunk_results:
            combined.absorb(chunk_result)
        combined.languages = {language: 1}
        combined.patterns = deduplicate_patterns(combined.patterns, DEDUP_THRESHOLD)
        return combined

    async def extract(
        self,
        item: ExtractionItem,
        language_hint: str | None = None,
        *,
        user_id: str | None = None,
    ) -> list[Pattern]:
        """Extract candidate patterns from one email or email pair.

        Args:
            item: Email or received/response pair.
            language_hint: Working language; detected when omitted.
            user_id: Owner stamped onto the patterns.

        Returns:
            Validated candidate patterns; empty on any oracle or parse failure.
        """
        result = await self.extract_detailed(item, language_hint, user_id=user_id)
        return result.patterns

    async def extract_batch(
        self,
        items: Sequence[ExtractionItem],
        language: str = MIXED,
        *,
        user_id: str | None = None,
    ) -> ExtractionBatch:
        """Extract patterns from up to ``batch_size`` items in one oracle call."""
        if not items:
            return ExtractionBatch()
        if len(items) > self.batch_size:
            raise ValueError(f"batch of {len(items)} exceeds batch_size {self.batch_size}")
        return await self._call(items, language, user_id, BATCH_BODY_EXCERPT_CHARS)

    async def extract_many(
        self,
        items: Sequence[ExtractionItem],
        *,
        user_id: str | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> ExtractionBatch:
        """Group items by working language and extract batch by batch.

        Batches run sequentially to bound oracle fan-out; a failed batch
        contributes zero patterns and a recommendation.

        Args:
            items: Emails or pairs to learn from.
            user_id: Owner stamped onto the patterns.
            on_progress: Called with ``(items_done, items_total)`` after
                each batch.
        """
        groups = group_by_language(items)
        combined = ExtractionBatch()
        done = 0

        for language, group in groups.items():
            for start in range(0, len(group), self.batch_size):
                batch = group[start : start + self.batch_size]
                combined.absorb(await self.extract_batch(batch, language, user_id=user_id))
                done += len(batch)
                if on_progress is not None:
                    on_progress(done, len(items))

        logger.info(
            "[LEARNING] Extracted %d pattern(s) from %d item(s) in %d oracle call(s)",
            len(combined.patterns),
            len(items),
            combined.oracle_calls,
            extra={"user_id": user_id, "languages": combined.languages},
        )
        return combined


def group_by_language(items: Sequence[ExtractionItem]) -> dict[str, list[ExtractionItem]]:
    """Bucket items by detected working language, preserving input order."""
    groups: dict[str, list[ExtractionItem]] = {}
    for item in items:
        groups.setdefault(detect_language(item_text(item)), []).append(item)
    return groups
