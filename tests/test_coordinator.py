"""Tests for the draft coordinator: coalescing, bounds and lifecycle."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from replywise.core.config import Settings
from replywise.core.exceptions import CoordinatorClosedError
from replywise.models.draft import DraftResult, DraftState
from replywise.models.learning import LearningOutcome
from replywise.services.draft_cache import MemoryDraftCache, TwoTierDraftCache
from replywise.services.coordinator import DraftCoordinator, build_coordinator
from replywise.services.draft_selection import DraftSelector
from tests.conftest import FakeOracle, make_email


@pytest.fixture
def slow_oracle():
    """Oracle that takes a moment to answer."""
    return FakeOracle(delay=0.05)


@pytest.fixture
def slow_selector(slow_oracle, pattern_store, config_store):
    """Selector over a memory-only cache and the slow oracle."""
    return DraftSelector(slow_oracle, pattern_store, TwoTierDraftCache(MemoryDraftCache()), config_store)


def _ok(email_id):
    return DraftResult(success=True, email_id=email_id, state=DraftState.FALLBACK_GENERATION)


class TestCoalescing:
    """At most one pipeline run per email id."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_run(self, slow_selector, slow_oracle):
        """Two concurrent requests for one email make one oracle call."""
        coordinator = DraftCoordinator(slow_selector)
        email = make_email()

        first, second = await asyncio.gather(
            coordinator.process_email(email, "user-1"),
            coordinator.process_email(email, "user-1"),
        )

        assert first == second
        assert slow_oracle.call_count == 1
        assert coordinator.pipeline_runs == 1
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_distinct_emails_run_separately(self, slow_selector, slow_oracle):
        """Different email ids never share a run."""
        coordinator = DraftCoordinator(slow_selector)

        await asyncio.gather(
            coordinator.process_email(make_email(email_id="a"), "user-1"),
            coordinator.process_email(make_email(email_id="b"), "user-1"),
        )

        assert slow_oracle.call_count == 2
        assert coordinator.pipeline_runs == 2
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_finished_run_retained_then_evicted(self):
        """A finished run absorbs repeats until its retention window passes."""
        selector = MagicMock()
        selector.select_draft = AsyncMock(side_effect=lambda email, user_id, **kw: _ok(email.id))
        coordinator = DraftCoordinator(selector, retention_seconds=0.05)
        email = make_email()

        await coordinator.process_email(email, "user-1")
        await coordinator.process_email(email, "user-1")
        assert selector.select_draft.await_count == 1
        assert coordinator.in_flight_count == 1

        await asyncio.sleep(0.1)
        assert coordinator.in_flight_count == 0

        await coordinator.process_email(email, "user-1")
        assert selector.select_draft.await_count == 2
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_force_regenerate_after_completion_starts_new_run(self):
        """Forcing regeneration replaces a finished retained run."""
        selector = MagicMock()
        selector.select_draft = AsyncMock(side_effect=lambda email, user_id, **kw: _ok(email.id))
        coordinator = DraftCoordinator(selector, retention_seconds=10)
        email = make_email()

        await coordinator.process_email(email, "user-1")
        await coordinator.process_email(email, "user-1", force_regenerate=True)

        assert coordinator.pipeline_runs == 2
        assert selector.select_draft.await_args.kwargs == {"force_regenerate": True}
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_run(self, slow_selector):
        """Cancelling one waiter leaves the other with a result."""
        coordinator = DraftCoordinator(slow_selector)
        email = make_email()

        waiter = asyncio.create_task(coordinator.process_email(email, "user-1"))
        await asyncio.sleep(0)
        other = asyncio.create_task(coordinator.process_email(email, "user-1"))
        await asyncio.sleep(0)
        waiter.cancel()

        result = await other
        assert result.success
        await coordinator.shutdown()


class TestBatch:
    """Tests for process_batch."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self):
        """Two failing emails out of five leave three successes."""

        async def select(email, user_id, **kwargs):
            if email.id in {"e1", "e3"}:
                raise RuntimeError("broken email")
            return _ok(email.id)

        selector = MagicMock()
        selector.select_draft = AsyncMock(side_effect=select)
        coordinator = DraftCoordinator(selector)

        result = await coordinator.process_batch([make_email(email_id=f"e{i}") for i in range(5)], "user-1")

        assert result.successful == 3
        assert result.failed == 2
        assert [r.email_id for r in result.results] == [f"e{i}" for i in range(5)]
        assert result.results[1].state == DraftState.FAILED
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        """No more than batch_size runs are active at once."""
        active = 0
        peak = 0

        async def select(email, user_id, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return _ok(email.id)

        selector = MagicMock()
        selector.select_draft = AsyncMock(side_effect=select)
        coordinator = DraftCoordinator(selector, batch_size=2)

        result = await coordinator.process_batch([make_email(email_id=f"e{i}") for i in range(7)], "user-1")

        assert result.successful == 7
        assert peak == 2
        await coordinator.shutdown()

    def test_batch_size_must_be_positive(self):
        """A zero concurrency bound is rejected."""
        with pytest.raises(ValueError):
            DraftCoordinator(MagicMock(), batch_size=0)


class TestLearning:
    """Tests for learn_from_email routing."""

    @pytest.mark.asyncio
    async def test_without_learner_is_skipped(self):
        """A coordinator without a learner reports learning as disabled."""
        coordinator = DraftCoordinator(MagicMock())

        outcome = await coordinator.learn_from_email("user-1", make_email())

        assert outcome.skipped
        assert outcome.reason == "learning_disabled"
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_delegates_to_learner(self):
        """Learning requests are forwarded with their options."""
        learner = MagicMock()
        learner.learn_from_email = AsyncMock(return_value=LearningOutcome(email_id="msg-1", patterns_created=1))
        coordinator = DraftCoordinator(MagicMock(), learner)

        outcome = await coordinator.learn_from_email(
            "user-1", make_email(), own_reply=True, user_address="me@example.com"
        )

        assert outcome.patterns_created == 1
        learner.learn_from_email.assert_awaited_once()
        assert learner.learn_from_email.await_args.kwargs == {"own_reply": True, "user_address": "me@example.com"}
        await coordinator.shutdown()


class TestLifecycle:
    """Shutdown behavior."""

    @pytest.mark.asyncio
    async def test_closed_coordinator_rejects_work(self):
        """Work submitted after shutdown raises."""
        coordinator = DraftCoordinator(MagicMock())
        await coordinator.shutdown()

        assert coordinator.closed
        with pytest.raises(CoordinatorClosedError):
            await coordinator.process_email(make_email(), "user-1")
        with pytest.raises(CoordinatorClosedError):
            await coordinator.learn_from_email("user-1", make_email())

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight_runs(self, slow_selector, slow_oracle):
        """Shutdown lets running pipelines finish and clears all state."""
        async with DraftCoordinator(slow_selector, retention_seconds=60) as coordinator:
            task = asyncio.create_task(coordinator.process_email(make_email(), "user-1"))
            await asyncio.sleep(0)

        assert (await task).success
        assert slow_oracle.call_count == 1
        assert coordinator.closed
        assert coordinator.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        """Calling shutdown twice is harmless."""
        coordinator = DraftCoordinator(MagicMock())
        await coordinator.shutdown()
        await coordinator.shutdown()
        assert coordinator.closed


class TestBuildCoordinator:
    """Tests for production wiring."""

    def test_requires_secrets(self):
        """Wiring refuses to start without credentials."""
        with pytest.raises(ValueError, match="Required secrets"):
            build_coordinator(Settings(_env_file=None, SUPABASE_URL="", LLM_API_KEY=""))

    @pytest.mark.asyncio
    async def test_builds_with_settings(self):
        """Settings drive the coordinator's bounds."""
        settings = Settings(
            _env_file=None,
            SUPABASE_URL="https://test.supabase.co",
            SUPABASE_SERVICE_ROLE_KEY="test-service-key",
            LLM_API_KEY="test-llm-key",
            COORDINATOR_BATCH_SIZE=3,
            COALESCE_RETENTION_SECONDS=1.5,
        )

        with (
            patch("replywise.services.coordinator.SupabaseClient") as mock_db_class,
            patch("replywise.services.coordinator.configure_logging"),
        ):
            mock_db_class.create.return_value = MagicMock()
            coordinator = build_coordinator(settings, oracle=FakeOracle())

        assert coordinator.batch_size == 3
        assert coordinator.retention_seconds == 1.5
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_client_uses_given_settings(self):
        """The Supabase client is built from the settings passed in."""
        settings = Settings(
            _env_file=None,
            SUPABASE_URL="https://custom.supabase.co",
            SUPABASE_SERVICE_ROLE_KEY="custom-service-key",
            LLM_API_KEY="test-llm-key",
        )

        with (
            patch("replywise.db.supabase.create_client") as mock_create,
            patch("replywise.services.coordinator.configure_logging"),
        ):
            coordinator = build_coordinator(settings, oracle=FakeOracle())

        mock_create.assert_called_once_with("https://custom.supabase.co", "custom-service-key")
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_without_settings_uses_process_client(self):
        """Without explicit settings the process-wide client singleton is used."""
        settings = Settings(
            _env_file=None,
            SUPABASE_URL="https://test.supabase.co",
            SUPABASE_SERVICE_ROLE_KEY="test-service-key",
            LLM_API_KEY="test-llm-key",
        )

        with (
            patch("replywise.services.coordinator.get_settings", return_value=settings),
            patch("replywise.services.coordinator.SupabaseClient") as mock_db_class,
            patch("replywise.services.coordinator.configure_logging"),
        ):
            coordinator = build_coordinator(oracle=FakeOracle())

        mock_db_class.get_client.assert_called_once_with()
        mock_db_class.create.assert_not_called()
        await coordinator.shutdown()
