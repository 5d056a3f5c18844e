"""Pydantic models for replywise."""

from replywise.models.draft import (
    BatchProcessingResult,
    DraftCacheEntry,
    DraftResult,
    DraftState,
    GeneratedDraft,
)
from replywise.models.email import EmailDirection, EmailMessage, EmailPair
from replywise.models.learning import LearningAnalysis, LearningConfig, LearningOutcome, LearningSession
from replywise.models.pattern import ExamplePair, Pattern, PatternMatch, PatternMetadata

__all__ = [
    "BatchProcessingResult",
    "DraftCacheEntry",
    "DraftResult",
    "DraftState",
    "EmailDirection",
    "EmailMessage",
    "EmailPair",
    "ExamplePair",
    "GeneratedDraft",
    "LearningAnalysis",
    "LearningConfig",
    "LearningOutcome",
    "LearningSession",
    "Pattern",
    "PatternMatch",
    "PatternMetadata",
]
