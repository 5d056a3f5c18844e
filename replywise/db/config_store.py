"""Per-user learning configuration store with a short-lived cache."""

import logging
from datetime import UTC, datetime
from typing import Any, cast

from cachetools import TTLCache
from pydantic import ValidationError
from supabase import Client

from replywise.models.learning import LearningConfig

logger = logging.getLogger(__name__)

CONFIG_TABLE = "user_email_learning_config"
CONFIG_CACHE_TTL = 300  # 5 minutes
CONFIG_CACHE_MAXSIZE = 1000


class LearningConfigStore:
    """Loads ``LearningConfig`` rows, falling back to defaults.

    A user without a row gets the defaults, and a default row is inserted
    on a best-effort basis. Read failures also yield defaults so drafting
    keeps working when the config table is unavailable.
    """

    def __init__(
        self,
        client: Client | None,
        defaults: LearningConfig | None = None,
        ttl: int = CONFIG_CACHE_TTL,
    ) -> None:
        """Initialize the store.

        Args:
            client: Supabase client, or None to always serve defaults.
            defaults: Configuration used when no row exists.
            ttl: Seconds a loaded configuration stays cached.
        """
        self._client = client
        self._defaults = defaults or LearningConfig()
        self._cache: TTLCache[str, LearningConfig] = TTLCache(maxsize=CONFIG_CACHE_MAXSIZE, ttl=ttl)

    @property
    def defaults(self) -> LearningConfig:
        """Configuration served when a user has none."""
        return self._defaults

    def invalidate(self, user_id: str) -> None:
        """Drop the cached configuration of a user."""
        self._cache.pop(user_id, None)

    async def get_config(self, user_id: str) -> LearningConfig:
        """Return the user's learning configuration (cached for a few minutes)."""
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        config = await self._load(user_id)
        self._cache[user_id] = config
        return config

    async def _load(self, user_id: str) -> LearningConfig:
        if self._client is None:
            return self._defaults

        try:
            response = (
                self._client.table(CONFIG_TABLE).select("*").eq("user_id", user_id).limit(1).execute()
            )
        except Exception as e:
            logger.warning(
                "Failed to load learning config, using defaults: %s", e, extra={"user_id": user_id}
            )
            return self._defaults

        rows = cast(list[dict[str, Any]], response.data or [])
        if not rows:
            await self._insert_defaults(user_id)
            return self._defaults

        try:
            return LearningConfig.model_validate(rows[0])
        except ValidationError as e:
            logger.warning(
                "Invalid learning config row, using defaults: %s", e, extra={"user_id": user_id}
            )
            return self._defaults

    async def _insert_defaults(self, user_id: str) -> None:
        row = {
            "user_id": user_id,
            **self._defaults.model_dump(),
            "created_at": datetime.now(UTC).isoformat(),
        }
        try:
            self._client.table(CONFIG_TABLE).insert(row).execute()  # type: ignore[union-attr]
            logger.info("Created default learning config", extra={"user_id": user_id})
        except Exception as e:
            logger.warning(
                "Failed to create default learning config: %s", e, extra={"user_id": user_id}
            )
