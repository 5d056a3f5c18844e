"""Pydantic models for learning configuration and learning outcomes."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class LearningConfig(BaseModel):
    """Per-user learning configuration.

    Stored in ``user_email_learning_config``; defaults apply when the
    user has no row.
    """

    max_emails_to_analyze: int = Field(5000, ge=1)
    date_range_days: int = Field(365, ge=1)
    excluded_senders: list[str] = Field(default_factory=list)
    excluded_domains: list[str] = Field(default_factory=list)
    learning_sensitivity: str = "balanced"
    minimum_pattern_confidence: float = Field(0.6, ge=0.0, le=1.0)
    pattern_merge_threshold: float = Field(0.8, ge=0.0, le=1.0)
    auto_draft_enabled: bool = True
    auto_draft_confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)


class LearningAnalysis(BaseModel):
    """Summary of an initial learning run over email history."""

    patterns_found: int = 0
    quality_score: float = 0.0
    recommendations: list[str] = Field(default_factory=list)
    processing_time_ms: int = 0
    tokens_used: int = 0
    emails_analyzed: int = 0
    languages: dict[str, int] = Field(default_factory=dict)


class LearningOutcome(BaseModel):
    """What continuous learning did with one observed email."""

    email_id: str
    skipped: bool = False
    reason: str | None = None
    patterns_extracted: int = 0
    patterns_created: int = 0
    patterns_updated: int = 0
    failures: int = 0


class LearningSession(BaseModel):
    """Analytics record of one learning session, kept in ``email_learning_analytics``."""

    user_id: str
    session_type: str = "initial_learning"
    emails_analyzed: int = 0
    patterns_created: int = 0
    processing_time_seconds: int = 0
    tokens_used: int = 0
    learning_quality_score: float = 0.0
    session_end: datetime = Field(default_factory=lambda: datetime.now(UTC))
