"""Model tier routing for language oracle calls."""

from dataclasses import dataclass
from enum import Enum

from replywise.core.config import Settings


class ModelTier(str, Enum):
    """Cost/quality tier requested by a caller."""

    LOW_COST = "low_cost"  # pattern-grounded drafts
    STANDARD = "standard"  # ungrounded fallback drafts
    HIGH_QUALITY = "high_quality"  # pattern extraction


@dataclass(frozen=True)
class ModelConfig:
    model: str
    max_tokens: int = 800
    temperature: float = 0.3
    timeout: float = 30.0


def build_model_routes(settings: Settings) -> dict[ModelTier, ModelConfig]:
    """Map each tier to a concrete model using the configured model names."""
    timeout = settings.LLM_TIMEOUT_SECONDS
    return {
        ModelTier.LOW_COST: ModelConfig(settings.LLM_LOW_COST_MODEL, max_tokens=800, temperature=0.3, timeout=timeout),
        ModelTier.STANDARD: ModelConfig(settings.LLM_STANDARD_MODEL, max_tokens=800, temperature=0.4, timeout=timeout),
        ModelTier.HIGH_QUALITY: ModelConfig(settings.LLM_HIGH_QUALITY_MODEL, max_tokens=2000, temperature=0.3, timeout=timeout),
    }
