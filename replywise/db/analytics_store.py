"""Learning session analytics on ``email_learning_analytics``."""

from typing import Protocol

from supabase import Client

from replywise.core.exceptions import StoreError
from replywise.models.learning import LearningSession

ANALYTICS_TABLE = "email_learning_analytics"


class LearningAnalyticsStore(Protocol):
    """Append-only record of learning sessions."""

    async def record_session(self, session: LearningSession) -> None: ...


class SupabaseLearningAnalyticsStore:
    """Inserts one row per learning session."""

    def __init__(self, client: Client) -> None:
        self._client = client

    async def record_session(self, session: LearningSession) -> None:
        """Insert the session row.

        Raises:
            StoreError: If the insert fails.
        """
        try:
            self._client.table(ANALYTICS_TABLE).insert(session.model_dump(mode="json")).execute()
        except Exception as e:
            raise StoreError("record_learning_session", str(e)) from e
