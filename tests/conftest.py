"""Shared fakes and fixtures for replywise tests."""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from replywise.core.exceptions import OracleError, StoreError
from replywise.core.model_config import ModelTier
from replywise.core.llm import OracleResponse
from replywise.db.config_store import LearningConfigStore
from replywise.db.pattern_store import InMemoryPatternStore
from replywise.models.draft import DraftCacheEntry
from replywise.models.email import EmailDirection, EmailMessage, EmailPair
from replywise.models.learning import LearningConfig
from replywise.models.pattern import Pattern
from replywise.services.draft_cache import MemoryDraftCache, TwoTierDraftCache
from replywise.services.draft_selection import DraftSelector


@dataclass
class OracleCall:
    system_prompt: str
    user_prompt: str
    tier: ModelTier
    temperature: float | None
    max_tokens: int | None


class FakeOracle:
    """Scripted language oracle that records every call.

    ``responses`` are consumed in order; an ``Exception`` instance in the
    script is raised instead of returned. Once the script is exhausted
    ``default`` is returned (or raised when ``fail`` is set).
    """

    def __init__(
        self,
        responses: list[str | Exception] | None = None,
        default: str = "SUBJECT: Re: Hello\nBODY: Thanks for reaching out.",
        fail: bool = False,
        delay: float = 0.0,
        tokens_used: int = 10,
    ) -> None:
        self.responses = list(responses or [])
        self.default = default
        self.fail = fail
        self.delay = delay
        self.tokens_used = tokens_used
        self.calls: list[OracleCall] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tier: ModelTier = ModelTier.STANDARD,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> OracleResponse:
        self.calls.append(OracleCall(system_prompt, user_prompt, tier, temperature, max_tokens))
        if self.delay:
            await asyncio.sleep(self.delay)

        if self.responses:
            item = self.responses.pop(0)
        elif self.fail:
            item = OracleError("scripted failure", model="fake-model")
        else:
            item = self.default

        if isinstance(item, Exception):
            raise item
        return OracleResponse(text=item, tokens_used=self.tokens_used, model="fake-model")


class FakeDraftStore:
    """Dictionary-backed ready-draft store; can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.drafts: dict[tuple[str, str], DraftCacheEntry] = {}
        self.fail = fail

    async def get_ready_draft(self, email_id: str, user_id: str) -> DraftCacheEntry | None:
        if self.fail:
            raise StoreError("get_ready_draft", "store offline")
        entry = self.drafts.get((email_id, user_id))
        if entry is None or entry.is_expired():
            return None
        return entry

    async def save_draft(self, entry: DraftCacheEntry) -> DraftCacheEntry:
        if self.fail:
            raise StoreError("save_draft", "store offline")
        self.drafts[entry.cache_key] = entry
        return entry


class FakeCacheTier:
    """Persistent cache tier stand-in; can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.entries: dict[tuple[str, str], DraftCacheEntry] = {}
        self.fail = fail

    async def get(self, email_id: str, user_id: str) -> DraftCacheEntry | None:
        if self.fail:
            raise StoreError("draft_cache_get", "cache offline")
        return self.entries.get((email_id, user_id))

    async def put(self, entry: DraftCacheEntry) -> None:
        if self.fail:
            raise StoreError("draft_cache_put", "cache offline")
        self.entries[entry.cache_key] = entry


def make_pattern(**overrides) -> Pattern:
    data = {
        "pattern_type": "question_response",
        "context_category": "customer_inquiry",
        "trigger_keywords": ["refund", "return"],
        "response_template": "We will process your refund within five business days",
        "confidence_score": 0.8,
    }
    data.update(overrides)
    return Pattern(**data)


def make_email(
    email_id: str = "msg-1",
    body: str = "Hello, I would like a refund for my last order. It arrived damaged.",
    subject: str = "Refund request",
    sender: str = "customer@example.com",
    direction: EmailDirection = EmailDirection.RECEIVED,
    **overrides,
) -> EmailMessage:
    return EmailMessage(
        id=email_id,
        subject=subject,
        body=body,
        sender=sender,
        direction=direction,
        **overrides,
    )


def make_pair(index: int, body: str | None = None, sender: str | None = None) -> EmailPair:
    received = make_email(
        email_id=f"in-{index}",
        body=body or f"Thank you for the quote number {index}. Can you please send the invoice for the order?",
        subject=f"Quote {index}",
        sender=sender or f"buyer{index}@example.com",
        received_at=datetime.now(UTC) - timedelta(days=3),
    )
    response = make_email(
        email_id=f"out-{index}",
        body="Thank you for your order. Please find the invoice attached. Best regards",
        subject=f"Re: Quote {index}",
        sender="me@example.com",
        direction=EmailDirection.SENT,
    )
    return EmailPair(received=received, response=response)


def make_entry(email_id: str = "msg-1", user_id: str = "user-1", **overrides) -> DraftCacheEntry:
    data = {
        "email_id": email_id,
        "user_id": user_id,
        "subject": "Re: Refund request",
        "body": "We will process your refund.",
        "confidence_score": 0.8,
        "expires_at": datetime.now(UTC) + timedelta(days=1),
    }
    data.update(overrides)
    return DraftCacheEntry(**data)


@pytest.fixture
def oracle():
    """Oracle that answers every prompt with a SUBJECT/BODY draft."""
    return FakeOracle()


@pytest.fixture
def pattern_store():
    """Empty in-memory pattern store."""
    return InMemoryPatternStore()


@pytest.fixture
def draft_store():
    """Empty ready-draft store."""
    return FakeDraftStore()


@pytest.fixture
def draft_cache():
    """Two-tier cache with a fake persistent tier."""
    return TwoTierDraftCache(MemoryDraftCache(), FakeCacheTier())


@pytest.fixture
def config_store():
    """Config store serving defaults (no database)."""
    return LearningConfigStore(None)


@pytest.fixture
def selector(oracle, pattern_store, draft_cache, config_store, draft_store):
    """Draft selector wired with fakes."""
    return DraftSelector(
        oracle=oracle,
        pattern_store=pattern_store,
        cache=draft_cache,
        config_store=config_store,
        draft_store=draft_store,
    )


@pytest.fixture
def disabled_config_store():
    """Config store whose defaults disable automatic drafting."""
    return LearningConfigStore(None, defaults=LearningConfig(auto_draft_enabled=False))
