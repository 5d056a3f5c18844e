"""Pydantic models for learned reply patterns."""

import math
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0
DEFAULT_CONFIDENCE = 0.5
DEFAULT_SUCCESS_RATE = 0.8
SUCCESS_RATE_STEP = 0.1


def normalize_terms(values: Iterable[Any] | None) -> list[str]:
    """Lower-case, strip and de-duplicate terms, keeping first-seen order."""
    seen: set[str] = set()
    terms: list[str] = []
    for value in values or ():
        if not isinstance(value, str):
            continue
        term = value.strip().lower()
        if term and term not in seen:
            seen.add(term)
            terms.append(term)
    return terms


def clamp(value: float, low: float, high: float) -> float:
    """Clamp ``value`` into ``[low, high]``."""
    return max(low, min(high, value))


class ExamplePair(BaseModel):
    """A question/answer excerpt kept for auditability, never scored."""

    model_config = ConfigDict(frozen=True)

    question: str = ""
    answer: str = ""


class PatternMetadata(BaseModel):
    """Advisory style information attached to a pattern."""

    model_config = ConfigDict(frozen=True)

    language: str = "mixed"
    formality_level: str | None = None
    tone: str | None = None
    style_notes: str | None = None


class Pattern(BaseModel):
    """A learned trigger → response rule with confidence and usage statistics.

    Instances are frozen. Changes go through ``updated`` (which re-runs
    validation, so clamping always applies) or the merge/usage helpers.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    user_id: str | None = None
    pattern_type: str = Field(..., min_length=1)
    context_category: str = "general"
    trigger_keywords: list[str] = Field(default_factory=list)
    trigger_phrases: list[str] = Field(default_factory=list)
    sender_patterns: list[str] = Field(default_factory=list)
    response_template: str = ""
    confidence_score: float = DEFAULT_CONFIDENCE
    success_rate: float = DEFAULT_SUCCESS_RATE
    usage_count: int = 0
    last_used_at: datetime | None = None
    example_pairs: list[ExamplePair] = Field(default_factory=list)
    metadata: PatternMetadata = Field(default_factory=PatternMetadata)

    @field_validator("trigger_keywords", "trigger_phrases", "sender_patterns", mode="before")
    @classmethod
    def normalize_match_terms(cls, v: Any) -> list[str]:
        """Match terms are case-insensitive sets stored lower-cased."""
        if isinstance(v, str):
            v = [v]
        return normalize_terms(v)

    @field_validator("confidence_score", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        """Keep confidence within [0.1, 1.0]; unusable values fall back to 0.5."""
        try:
            value = float(v)
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE
        if math.isnan(value):
            return DEFAULT_CONFIDENCE
        return clamp(value, MIN_CONFIDENCE, MAX_CONFIDENCE)

    @field_validator("success_rate", mode="before")
    @classmethod
    def clamp_success_rate(cls, v: Any) -> float:
        """Keep success rate within [0, 1]; unusable values fall back to 0.8."""
        try:
            value = float(v)
        except (TypeError, ValueError):
            return DEFAULT_SUCCESS_RATE
        if math.isnan(value):
            return DEFAULT_SUCCESS_RATE
        return clamp(value, 0.0, 1.0)

    @field_validator("usage_count", mode="before")
    @classmethod
    def non_negative_usage(cls, v: Any) -> int:
        """Usage counts never go below zero."""
        try:
            return max(0, int(v))
        except (TypeError, ValueError):
            return 0

    def updated(self, **changes: Any) -> "Pattern":
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return Pattern.model_validate(data)

    def with_usage(self, succeeded: bool, used_at: datetime) -> "Pattern":
        """Record one use of this pattern.

        Increments ``usage_count``, stamps ``last_used_at`` and moves
        ``success_rate`` one step toward the observed outcome.

        Args:
            succeeded: Whether the use produced an accepted draft.
            used_at: Time of use.

        Returns:
            The updated pattern.
        """
        outcome = 1.0 if succeeded else 0.0
        success_rate = self.success_rate + SUCCESS_RATE_STEP * (outcome - self.success_rate)
        return self.updated(
            usage_count=self.usage_count + 1,
            last_used_at=used_at,
            success_rate=success_rate,
        )


class PatternMatch(BaseModel):
    """A stored pattern scored against an incoming email."""

    model_config = ConfigDict(frozen=True)

    pattern: Pattern
    score: float
    keyword_coverage: float = 0.0
    recency: float = 0.0

    @property
    def pattern_id(self) -> str | None:
        """Identifier of the matched pattern."""
        return self.pattern.id
