"""Supabase client module for database operations."""

import logging

from supabase import Client, create_client

from replywise.core.config import Settings, get_settings
from replywise.core.exceptions import StoreError

logger = logging.getLogger(__name__)


class SupabaseClient:
    """Supabase client factory with a process-wide singleton."""

    _client: Client | None = None

    @staticmethod
    def create(settings: Settings) -> Client:
        """Create a Supabase client from explicit settings.

        Args:
            settings: Settings carrying the Supabase URL and service-role key.

        Returns:
            Initialized Supabase client.

        Raises:
            StoreError: If client initialization fails.
        """
        try:
            client = create_client(
                settings.SUPABASE_URL,
                settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
            )
        except Exception as e:
            logger.exception("Failed to initialize Supabase client")
            raise StoreError("connect", f"Failed to initialize database connection: {e}") from e
        logger.info("Supabase client initialized successfully")
        return client

    @classmethod
    def get_client(cls) -> Client:
        """Get or create the singleton built from the cached process settings."""
        if cls._client is None:
            cls._client = cls.create(get_settings())
        return cls._client

    @classmethod
    def reset_client(cls) -> None:
        """Reset the client singleton (useful for testing)."""
        cls._client = None
