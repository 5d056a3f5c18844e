"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Language oracle (routed through LiteLLM)
    LLM_API_KEY: SecretStr = SecretStr("")
    LLM_LOW_COST_MODEL: str = "openai/gpt-4o-mini"
    LLM_STANDARD_MODEL: str = "openai/gpt-4o"
    LLM_HIGH_QUALITY_MODEL: str = "openai/gpt-4o"
    LLM_TIMEOUT_SECONDS: float = 30.0
    LLM_CIRCUIT_FAILURE_THRESHOLD: int = 5
    LLM_CIRCUIT_RECOVERY_SECONDS: float = 30.0

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # Pattern learning defaults (per-user config overrides these)
    PATTERN_MERGE_THRESHOLD: float = 0.8
    MINIMUM_PATTERN_CONFIDENCE: float = 0.6
    EXTRACTION_MIN_CONFIDENCE: float = 0.3
    LEARNING_MIN_CONTENT_LENGTH: int = 50

    # Draft cache
    DRAFT_CACHE_TTL_SECONDS: int = 24 * 60 * 60
    DRAFT_CACHE_MAXSIZE: int = 10_000
    DRAFT_CACHE_SWEEP_THRESHOLD: int = 100
    STORED_DRAFT_TTL_DAYS: int = 7

    # Coordinator
    COORDINATOR_BATCH_SIZE: int = 5
    COALESCE_RETENTION_SECONDS: float = 5.0

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("PATTERN_MERGE_THRESHOLD", "MINIMUM_PATTERN_CONFIDENCE", "EXTRACTION_MIN_CONFIDENCE")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        """Thresholds are similarity/confidence values and must lie in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("threshold must be between 0 and 1")
        return v

    @field_validator("COORDINATOR_BATCH_SIZE")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Batch size bounds concurrent oracle fan-out and must be positive."""
        if v < 1:
            raise ValueError("COORDINATOR_BATCH_SIZE must be at least 1")
        return v

    @property
    def is_configured(self) -> bool:
        """Check if required settings are configured."""
        return bool(
            self.SUPABASE_URL
            and self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
            and self.LLM_API_KEY.get_secret_value()
        )

    def validate_startup(self) -> None:
        """Validate that all required secrets are configured.

        Raises:
            ValueError: If any required secret is missing or empty.
        """
        required_secrets = {
            "SUPABASE_URL": self.SUPABASE_URL,
            "SUPABASE_SERVICE_ROLE_KEY": self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
            "LLM_API_KEY": self.LLM_API_KEY.get_secret_value(),
        }
        missing = [name for name, value in required_secrets.items() if not value]
        if missing:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Secrets are not validated here; production wiring calls
    ``validate_startup()`` before building live collaborators.

    Returns:
        Settings instance.
    """
    return Settings()
