"""Pydantic models for generated drafts and draft-selection results."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DraftState(str, Enum):
    """Terminal state of the draft selection state machine."""

    CACHE_HIT = "cache_hit"
    STORED_DRAFT_READY = "stored_draft_ready"
    PATTERN_MATCH = "pattern_match"
    FALLBACK_GENERATION = "fallback_generation"
    MINIMAL_FALLBACK = "minimal_fallback"
    SKIPPED = "skipped"
    DISABLED = "disabled"
    FAILED = "failed"


class GeneratedDraft(BaseModel):
    """Subject/body produced by the oracle, with its confidence."""

    model_config = ConfigDict(frozen=True)

    subject: str
    body: str
    confidence: float


class DraftCacheEntry(BaseModel):
    """A draft keyed by ``(email_id, user_id)``.

    Entries are replaced on regeneration, never mutated in place.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    email_id: str
    user_id: str
    subject: str
    body: str
    confidence_score: float
    matched_pattern_ids: list[str] = Field(default_factory=list)
    pattern_match_score: float = 0.0
    fallback_generation: bool = False
    tokens_used: int = 0
    generation_model: str = ""
    status: str = "ready"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime

    @property
    def cache_key(self) -> tuple[str, str]:
        """The ``(email_id, user_id)`` key."""
        return (self.email_id, self.user_id)

    def is_expired(self, now: datetime | None = None) -> bool:
        """True once ``expires_at`` has passed."""
        return (now or datetime.now(UTC)) >= self.expires_at


class DraftResult(BaseModel):
    """Outcome of one draft selection run; never raised, always returned."""

    success: bool
    email_id: str
    state: DraftState
    entry: DraftCacheEntry | None = None
    cached: bool = False
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    tokens_used: int = 0


class BatchProcessingResult(BaseModel):
    """Aggregate of a batch of draft selections."""

    successful: int = 0
    failed: int = 0
    results: list[DraftResult] = Field(default_factory=list)
