"""Pattern persistence.

``PatternStore`` is the capability the learning and drafting code depends
on. ``SupabasePatternStore`` keeps patterns in the ``email_patterns``
table; ``InMemoryPatternStore`` backs local runs and tests.

Writes are last-writer-wins at the row level. Every update is a
monotonic aggregate (running averages, unions, counters), so a lost
concurrent update only delays convergence.
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol, cast

from supabase import Client

from replywise.core.exceptions import StoreError
from replywise.models.pattern import Pattern

logger = logging.getLogger(__name__)

PATTERNS_TABLE = "email_patterns"
MATCH_RPC = "find_best_pattern_match"


class PatternStore(Protocol):
    """CRUD and fuzzy search over a user's patterns."""

    async def upsert_pattern(self, user_id: str, pattern: Pattern) -> Pattern: ...

    async def get_pattern(self, pattern_id: str) -> Pattern | None: ...

    async def list_patterns(self, user_id: str) -> list[Pattern]: ...

    async def find_patterns_by_type_category(
        self,
        user_id: str,
        pattern_type: str,
        context_category: str,
        min_confidence: float = 0.0,
    ) -> list[Pattern]: ...

    async def fuzzy_search_candidates(
        self,
        user_id: str,
        email_content: str,
        sender_email: str,
        subject: str,
    ) -> list[Pattern]: ...

    async def update_usage(self, pattern_id: str, succeeded: bool) -> Pattern | None: ...


def pattern_to_row(user_id: str, pattern: Pattern) -> dict[str, Any]:
    """Serialize a pattern into an ``email_patterns`` row."""
    now = datetime.now(UTC)
    return {
        "id": pattern.id or str(uuid.uuid4()),
        "user_id": user_id,
        "pattern_type": pattern.pattern_type,
        "context_category": pattern.context_category,
        "trigger_keywords": pattern.trigger_keywords,
        "trigger_phrases": pattern.trigger_phrases,
        "sender_patterns": pattern.sender_patterns,
        "response_template": pattern.response_template,
        "confidence_score": pattern.confidence_score,
        "success_rate": pattern.success_rate,
        "usage_count": pattern.usage_count,
        "last_used_at": pattern.last_used_at.isoformat() if pattern.last_used_at else None,
        "example_pairs": [pair.model_dump() for pair in pattern.example_pairs],
        "metadata": pattern.metadata.model_dump(),
        "updated_at": now.isoformat(),
    }


def pattern_from_row(row: dict[str, Any]) -> Pattern:
    """Build a pattern from an ``email_patterns`` row.

    Nullable array/object columns come back as ``None`` and are treated
    as empty.
    """
    return Pattern.model_validate({
        "id": row.get("id"),
        "user_id": row.get("user_id"),
        "pattern_type": row.get("pattern_type") or "general_inquiry",
        "context_category": row.get("context_category") or "general",
        "trigger_keywords": row.get("trigger_keywords") or [],
        "trigger_phrases": row.get("trigger_phrases") or [],
        "sender_patterns": row.get("sender_patterns") or [],
        "response_template": row.get("response_template") or "",
        "confidence_score": row.get("confidence_score"),
        "success_rate": row.get("success_rate"),
        "usage_count": row.get("usage_count") or 0,
        "last_used_at": row.get("last_used_at"),
        "example_pairs": row.get("example_pairs") or [],
        "metadata": row.get("metadata") or {},
    })


class SupabasePatternStore:
    """Pattern store backed by the ``email_patterns`` table.

    Fuzzy candidate search is delegated to the ``find_best_pattern_match``
    database function; the matched rows are then fetched in full so the
    matching engine can score them.
    """

    def __init__(self, client: Client) -> None:
        self._client = client

    def _rows(self, response: Any) -> list[dict[str, Any]]:
        return cast(list[dict[str, Any]], response.data or [])

    async def upsert_pattern(self, user_id: str, pattern: Pattern) -> Pattern:
        """Insert or replace a pattern; returns it with its assigned id.

        Raises:
            StoreError: If the write fails.
        """
        row = pattern_to_row(user_id, pattern)
        try:
            response = self._client.table(PATTERNS_TABLE).upsert(row, on_conflict="id").execute()
        except Exception as e:
            logger.exception("Error upserting pattern", extra={"user_id": user_id})
            raise StoreError("upsert_pattern", str(e)) from e

        rows = self._rows(response)
        if not rows:
            raise StoreError("upsert_pattern", "no row returned")
        return pattern_from_row(rows[0])

    async def get_pattern(self, pattern_id: str) -> Pattern | None:
        """Fetch one pattern by id, or None if it does not exist."""
        try:
            response = (
                self._client.table(PATTERNS_TABLE).select("*").eq("id", pattern_id).limit(1).execute()
            )
        except Exception as e:
            raise StoreError("get_pattern", str(e)) from e
        rows = self._rows(response)
        return pattern_from_row(rows[0]) if rows else None

    async def list_patterns(self, user_id: str) -> list[Pattern]:
        """All patterns of a user, most confident first."""
        try:
            response = (
                self._client.table(PATTERNS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("confidence_score", desc=True)
                .execute()
            )
        except Exception as e:
            raise StoreError("list_patterns", str(e)) from e
        return [pattern_from_row(row) for row in self._rows(response)]

    async def find_patterns_by_type_category(
        self,
        user_id: str,
        pattern_type: str,
        context_category: str,
        min_confidence: float = 0.0,
    ) -> list[Pattern]:
        """Patterns of one kind at or above ``min_confidence``."""
        try:
            response = (
                self._client.table(PATTERNS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .eq("pattern_type", pattern_type)
                .eq("context_category", context_category)
                .gte("confidence_score", min_confidence)
                .execute()
            )
        except Exception as e:
            raise StoreError("find_patterns_by_type_category", str(e)) from e
        return [pattern_from_row(row) for row in self._rows(response)]

    async def fuzzy_search_candidates(
        self,
        user_id: str,
        email_content: str,
        sender_email: str,
        subject: str,
    ) -> list[Pattern]:
        """Candidate patterns for an email via the database match function.

        Raises:
            StoreError: If the RPC or the follow-up fetch fails.
        """
        try:
            matches = self._client.rpc(
                MATCH_RPC,
                {
                    "p_user_id": user_id,
                    "p_email_content": f"{subject}\n{email_content}",
                    "p_sender_email": sender_email,
                },
            ).execute()
        except Exception as e:
            logger.warning("Pattern match RPC failed: %s", e, extra={"user_id": user_id})
            raise StoreError("fuzzy_search_candidates", str(e)) from e

        pattern_ids = [row["pattern_id"] for row in self._rows(matches) if row.get("pattern_id")]
        if not pattern_ids:
            return []

        try:
            response = self._client.table(PATTERNS_TABLE).select("*").in_("id", pattern_ids).execute()
        except Exception as e:
            raise StoreError("fuzzy_search_candidates", str(e)) from e
        return [pattern_from_row(row) for row in self._rows(response)]

    async def update_usage(self, pattern_id: str, succeeded: bool) -> Pattern | None:
        """Record one use of a pattern (read, apply, write back).

        Returns:
            The updated pattern, or None if it no longer exists.
        """
        pattern = await self.get_pattern(pattern_id)
        if pattern is None:
            return None

        updated = pattern.with_usage(succeeded, datetime.now(UTC))
        try:
            self._client.table(PATTERNS_TABLE).update({
                "usage_count": updated.usage_count,
                "last_used_at": updated.last_used_at.isoformat() if updated.last_used_at else None,
                "success_rate": updated.success_rate,
                "updated_at": datetime.now(UTC).isoformat(),
            }).eq("id", pattern_id).execute()
        except Exception as e:
            raise StoreError("update_usage", str(e)) from e
        return updated


class InMemoryPatternStore:
    """Dictionary-backed pattern store.

    Candidate search is a substring pre-filter: a pattern is a candidate
    when any trigger keyword or phrase occurs in the subject or body, or
    any sender pattern occurs in the sender address.
    """

    def __init__(self) -> None:
        self._patterns: dict[str, Pattern] = {}

    def __len__(self) -> int:
        return len(self._patterns)

    async def upsert_pattern(self, user_id: str, pattern: Pattern) -> Pattern:
        stored = pattern.updated(id=pattern.id or str(uuid.uuid4()), user_id=user_id)
        self._patterns[cast(str, stored.id)] = stored
        return stored

    async def get_pattern(self, pattern_id: str) -> Pattern | None:
        return self._patterns.get(pattern_id)

    async def list_patterns(self, user_id: str) -> list[Pattern]:
        patterns = [p for p in self._patterns.values() if p.user_id == user_id]
        return sorted(patterns, key=lambda p: p.confidence_score, reverse=True)

    async def find_patterns_by_type_category(
        self,
        user_id: str,
        pattern_type: str,
        context_category: str,
        min_confidence: float = 0.0,
    ) -> list[Pattern]:
        return [
            p
            for p in self._patterns.values()
            if p.user_id == user_id
            and p.pattern_type == pattern_type
            and p.context_category == context_category
            and p.confidence_score >= min_confidence
        ]

    async def fuzzy_search_candidates(
        self,
        user_id: str,
        email_content: str,
        sender_email: str,
        subject: str,
    ) -> list[Pattern]:
        text = f"{subject}\n{email_content}".lower()
        sender = sender_email.lower()
        candidates = []
        for pattern in self._patterns.values():
            if pattern.user_id != user_id:
                continue
            if (
                any(term in text for term in pattern.trigger_keywords)
                or any(term in text for term in pattern.trigger_phrases)
                or any(term in sender for term in pattern.sender_patterns)
            ):
                candidates.append(pattern)
        return candidates

    async def update_usage(self, pattern_id: str, succeeded: bool) -> Pattern | None:
        pattern = self._patterns.get(pattern_id)
        if pattern is None:
            return None
        updated = pattern.with_usage(succeeded, datetime.now(UTC))
        self._patterns[pattern_id] = updated
        return updated
