"""Tests for continuous learning from new emails."""

import json
from unittest.mock import AsyncMock

import pytest

from replywise.core.exceptions import StoreError
from replywise.learning.continuous import ContinuousLearner, fold_into, is_own_reply
from replywise.learning.extraction import PatternExtractor
from replywise.models.email import EmailDirection
from tests.conftest import FakeOracle, make_email, make_pattern

TEMPLATE = "Thanks for your order, the invoice is attached and payment is due in thirty days."


def _analysis(template=TEMPLATE, keywords=("invoice", "order")):
    return json.dumps({
        "patterns": [
            {
                "pattern_type": "question_response",
                "context_category": "sales_request",
                "trigger_keywords": list(keywords),
                "response_template": template,
                "confidence_score": 0.8,
            }
        ]
    })


def _learner(oracle, pattern_store):
    return ContinuousLearner(PatternExtractor(oracle), pattern_store)


class TestLearnFromEmail:
    """Tests for ContinuousLearner.learn_from_email."""

    @pytest.mark.asyncio
    async def test_short_email_skipped(self, pattern_store):
        """Emails under the minimum length are not sent to the oracle."""
        oracle = FakeOracle(default=_analysis())

        outcome = await _learner(oracle, pattern_store).learn_from_email("user-1", make_email(body="Thanks!"))

        assert outcome.skipped
        assert outcome.reason == "content_too_short"
        assert oracle.call_count == 0

    @pytest.mark.asyncio
    async def test_new_pattern_inserted(self, pattern_store):
        """A candidate with no similar stored pattern is inserted."""
        learner = _learner(FakeOracle(default=_analysis()), pattern_store)

        outcome = await learner.learn_from_email("user-1", make_email())

        assert outcome.patterns_extracted == 1
        assert outcome.patterns_created == 1
        assert len(pattern_store) == 1
        [stored] = await pattern_store.list_patterns("user-1")
        assert stored.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_repeat_updates_instead_of_duplicating(self, pattern_store):
        """Learning the same pattern twice bumps usage on the stored one."""
        learner = _learner(FakeOracle(default=_analysis()), pattern_store)

        await learner.learn_from_email("user-1", make_email())
        outcome = await learner.learn_from_email("user-1", make_email(email_id="msg-2"))

        assert outcome.patterns_updated == 1
        assert outcome.patterns_created == 0
        assert len(pattern_store) == 1
        [stored] = await pattern_store.list_patterns("user-1")
        assert stored.usage_count == 1

    @pytest.mark.asyncio
    async def test_different_template_is_new_pattern(self, pattern_store):
        """Low template overlap inserts a second pattern."""
        oracle = FakeOracle(
            responses=[_analysis(), _analysis(template="We are closed over the holidays, back in January.")]
        )
        learner = _learner(oracle, pattern_store)

        await learner.learn_from_email("user-1", make_email())
        await learner.learn_from_email("user-1", make_email(email_id="msg-2"))

        assert len(pattern_store) == 2

    @pytest.mark.asyncio
    async def test_own_reply_boosted(self, pattern_store):
        """Patterns from the user's own replies get higher confidence and success rate."""
        learner = _learner(FakeOracle(default=_analysis()), pattern_store)
        sent = make_email(sender="me@example.com", direction=EmailDirection.SENT)

        await learner.learn_from_email("user-1", sent, user_address="me@example.com")

        [stored] = await pattern_store.list_patterns("user-1")
        assert stored.confidence_score == pytest.approx(0.88)
        assert stored.success_rate == 0.9

    @pytest.mark.asyncio
    async def test_store_failure_counted(self, pattern_store):
        """Store errors are counted and do not raise."""
        pattern_store.upsert_pattern = AsyncMock(side_effect=StoreError("upsert_pattern", "offline"))
        learner = _learner(FakeOracle(default=_analysis()), pattern_store)

        outcome = await learner.learn_from_email("user-1", make_email())

        assert outcome.failures == 1
        assert outcome.patterns_created == 0

    @pytest.mark.asyncio
    async def test_oracle_failure_extracts_nothing(self, pattern_store):
        """An unavailable oracle produces an empty outcome."""
        outcome = await _learner(FakeOracle(fail=True), pattern_store).learn_from_email("user-1", make_email())

        assert outcome.patterns_extracted == 0
        assert not outcome.skipped
        assert len(pattern_store) == 0


class TestHelpers:
    """Tests for own-reply detection and folding."""

    def test_is_own_reply(self):
        """Only sent mail from the user's address counts as their own."""
        sent = make_email(sender="Me@Example.com", direction=EmailDirection.SENT)
        assert is_own_reply(sent, "me@example.com")
        assert not is_own_reply(sent, "other@example.com")
        assert not is_own_reply(make_email(), "customer@example.com")
        assert is_own_reply(sent)

    def test_fold_into_weights_by_usage(self):
        """Confidence is a usage-weighted average and keywords are unioned."""
        existing = make_pattern(confidence_score=0.9, usage_count=3, trigger_keywords=["refund"])
        candidate = make_pattern(confidence_score=0.5, trigger_keywords=["refund", "damaged"])

        folded = fold_into(existing, candidate)

        assert folded.confidence_score == pytest.approx(0.8)
        assert folded.usage_count == 4
        assert folded.trigger_keywords == ["refund", "damaged"]
