"""Draft persistence: the persistent cache tier and the stored-draft table.

Two tables hold drafts. ``email_ai_cache`` is the persistent half of the
two-tier draft cache; ``email_drafts_cache`` holds drafts that are ready
for the user and survive for several days. Both are keyed by email and
user and are replaced on regeneration, never appended to.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Protocol, cast

from supabase import Client

from replywise.core.exceptions import StoreError
from replywise.models.draft import DraftCacheEntry

logger = logging.getLogger(__name__)

AI_CACHE_TABLE = "email_ai_cache"
DRAFTS_TABLE = "email_drafts_cache"
READY_STATUS = "ready"


class DraftCacheTier(Protocol):
    """One tier of the draft cache."""

    async def get(self, email_id: str, user_id: str) -> DraftCacheEntry | None: ...

    async def put(self, entry: DraftCacheEntry) -> None: ...


class DraftStore(Protocol):
    """Long-lived storage of drafts ready for the user."""

    async def get_ready_draft(self, email_id: str, user_id: str) -> DraftCacheEntry | None: ...

    async def save_draft(self, entry: DraftCacheEntry) -> DraftCacheEntry: ...


def entry_to_row(entry: DraftCacheEntry, key_column: str = "email_id") -> dict[str, Any]:
    """Serialize a draft entry, naming the email key column per table."""
    row: dict[str, Any] = {
        key_column: entry.email_id,
        "user_id": entry.user_id,
        "subject": entry.subject,
        "body": entry.body,
        "confidence_score": entry.confidence_score,
        "matched_pattern_ids": entry.matched_pattern_ids,
        "pattern_match_score": entry.pattern_match_score,
        "fallback_generation": entry.fallback_generation,
        "tokens_used": entry.tokens_used,
        "generation_model": entry.generation_model,
        "status": entry.status,
        "created_at": entry.created_at.isoformat(),
        "expires_at": entry.expires_at.isoformat(),
    }
    if entry.id:
        row["id"] = entry.id
    return row


def entry_from_row(row: dict[str, Any], key_column: str = "email_id") -> DraftCacheEntry:
    """Build a draft entry from a row of either draft table."""
    data = {
        "id": row.get("id"),
        "email_id": row[key_column],
        "user_id": row["user_id"],
        "subject": row.get("subject") or "",
        "body": row.get("body") or "",
        "confidence_score": row.get("confidence_score") or 0.0,
        "matched_pattern_ids": row.get("matched_pattern_ids") or [],
        "pattern_match_score": row.get("pattern_match_score") or 0.0,
        "fallback_generation": bool(row.get("fallback_generation")),
        "tokens_used": row.get("tokens_used") or 0,
        "generation_model": row.get("generation_model") or "",
        "status": row.get("status") or READY_STATUS,
        "expires_at": row["expires_at"],
    }
    if row.get("created_at"):
        data["created_at"] = row["created_at"]
    return DraftCacheEntry.model_validate(data)


class SupabaseDraftCacheTier:
    """Persistent draft cache tier on ``email_ai_cache``."""

    def __init__(self, client: Client) -> None:
        self._client = client

    async def get(self, email_id: str, user_id: str) -> DraftCacheEntry | None:
        """Return the unexpired cached draft for the key, if any.

        Raises:
            StoreError: If the read fails.
        """
        try:
            response = (
                self._client.table(AI_CACHE_TABLE)
                .select("*")
                .eq("email_id", email_id)
                .eq("user_id", user_id)
                .gt("expires_at", datetime.now(UTC).isoformat())
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StoreError("draft_cache_get", str(e)) from e

        rows = cast(list[dict[str, Any]], response.data or [])
        return entry_from_row(rows[0]) if rows else None

    async def put(self, entry: DraftCacheEntry) -> None:
        """Replace the cached draft for the entry's key.

        Raises:
            StoreError: If the write fails.
        """
        try:
            self._client.table(AI_CACHE_TABLE).upsert(
                entry_to_row(entry), on_conflict="email_id,user_id"
            ).execute()
        except Exception as e:
            raise StoreError("draft_cache_put", str(e)) from e


class SupabaseDraftStore:
    """Ready drafts on ``email_drafts_cache`` keyed by ``(message_id, user_id)``."""

    def __init__(self, client: Client) -> None:
        self._client = client

    async def get_ready_draft(self, email_id: str, user_id: str) -> DraftCacheEntry | None:
        """Return the unexpired ``ready`` draft for an email, if one exists."""
        try:
            response = (
                self._client.table(DRAFTS_TABLE)
                .select("*")
                .eq("message_id", email_id)
                .eq("user_id", user_id)
                .eq("status", READY_STATUS)
                .gt("expires_at", datetime.now(UTC).isoformat())
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StoreError("get_ready_draft", str(e)) from e

        rows = cast(list[dict[str, Any]], response.data or [])
        return entry_from_row(rows[0], key_column="message_id") if rows else None

    async def save_draft(self, entry: DraftCacheEntry) -> DraftCacheEntry:
        """Upsert a draft, superseding any earlier draft for the same email.

        Raises:
            StoreError: If the write fails.
        """
        try:
            response = (
                self._client.table(DRAFTS_TABLE)
                .upsert(entry_to_row(entry, key_column="message_id"), on_conflict="message_id,user_id")
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Error saving draft", extra={"email_id": entry.email_id, "user_id": entry.user_id}
            )
            raise StoreError("save_draft", str(e)) from e

        rows = cast(list[dict[str, Any]], response.data or [])
        return entry_from_row(rows[0], key_column="message_id") if rows else entry
