"""Concurrency and cache coordinator for per-email draft processing.

A ``DraftCoordinator`` owns its collaborators (stores, oracle, cache) and
has an explicit lifecycle: construct it, use it, ``shutdown()`` it. It
guarantees that for one ``email_id`` at most one draft selection run is
active: concurrent requests share one ``asyncio.Task`` through an
in-flight map. Finished tasks stay in the map for a short retention
window to absorb near-duplicate triggers, then an eviction timer removes
them. A semaphore bounds how many runs call the oracle at once.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from replywise.core.config import Settings, get_settings
from replywise.core.exceptions import CoordinatorClosedError, sanitize_error
from replywise.core.llm import LanguageOracle, build_oracle
from replywise.core.log_config import configure_logging
from replywise.db.config_store import LearningConfigStore
from replywise.db.draft_store import SupabaseDraftCacheTier, SupabaseDraftStore
from replywise.db.pattern_store import PatternStore, SupabasePatternStore
from replywise.db.supabase import SupabaseClient
from replywise.learning.continuous import ContinuousLearner
from replywise.learning.extraction import PatternExtractor
from replywise.models.draft import BatchProcessingResult, DraftResult, DraftState
from replywise.models.email import EmailMessage
from replywise.models.learning import LearningConfig, LearningOutcome
from replywise.services.draft_cache import MemoryDraftCache, TwoTierDraftCache
from replywise.services.draft_selection import DraftSelector

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_RETENTION_SECONDS = 5.0


class DraftCoordinator:
    """Coalesces, bounds and tracks draft selection and learning runs."""

    def __init__(
        self,
        selector: DraftSelector,
        learner: ContinuousLearner | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        """Initialize the coordinator.

        Args:
            selector: Draft selection state machine.
            learner: Continuous learner, if learning is enabled.
            batch_size: Maximum concurrent pipeline runs.
            retention_seconds: How long a finished run keeps absorbing
                duplicate requests for the same email.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._selector = selector
        self._learner = learner
        self.batch_size = batch_size
        self.retention_seconds = retention_seconds

        self._in_flight: dict[str, asyncio.Task[DraftResult]] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}
        self._learning_tasks: set[asyncio.Task[Any]] = set()
        self._semaphore = asyncio.Semaphore(batch_size)
        self._closed = False
        self._pipeline_runs = 0

    @property
    def closed(self) -> bool:
        """True after ``shutdown()``."""
        return self._closed

    @property
    def pipeline_runs(self) -> int:
        """Number of draft selection runs actually started."""
        return self._pipeline_runs

    @property
    def in_flight_count(self) -> int:
        """Entries in the in-flight map, including retained finished runs."""
        return len(self._in_flight)

    async def __aenter__(self) -> "DraftCoordinator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Draft processing
    # ------------------------------------------------------------------

    async def process_email(
        self,
        email: EmailMessage,
        user_id: str,
        *,
        force_regenerate: bool = False,
    ) -> DraftResult:
        """Produce a draft result for one email, coalescing duplicates.

        A request for an email whose run is in flight (or finished within
        the retention window) awaits that run instead of starting another.

        Raises:
            CoordinatorClosedError: If the coordinator has been shut down.
        """
        if self._closed:
            raise CoordinatorClosedError()

        task = self._in_flight.get(email.id)
        if task is not None and not (force_regenerate and task.done()):
            logger.debug("[COORDINATOR] Joining in-flight run", extra={"email_id": email.id})
        else:
            task = self._start(email, user_id, force_regenerate)

        # Shielded so one cancelled caller does not cancel the shared run.
        return await asyncio.shield(task)

    def _start(self, email: EmailMessage, user_id: str, force_regenerate: bool) -> asyncio.Task[DraftResult]:
        previous = self._evictions.pop(email.id, None)
        if previous is not None:
            previous.cancel()

        task = asyncio.create_task(
            self._run(email, user_id, force_regenerate), name=f"draft:{email.id}"
        )
        self._in_flight[email.id] = task
        task.add_done_callback(lambda t, key=email.id: self._schedule_eviction(key, t))
        return task

    async def _run(self, email: EmailMessage, user_id: str, force_regenerate: bool) -> DraftResult:
        async with self._semaphore:
            self._pipeline_runs += 1
            return await self._selector.select_draft(email, user_id, force_regenerate=force_regenerate)

    def _schedule_eviction(self, key: str, task: asyncio.Task[DraftResult]) -> None:
        if self._closed:
            self._evict(key, task)
            return
        loop = asyncio.get_running_loop()
        self._evictions[key] = loop.call_later(self.retention_seconds, self._evict, key, task)

    def _evict(self, key: str, task: asyncio.Task[DraftResult]) -> None:
        # A newer run for the same key may have replaced this one.
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
            self._evictions.pop(key, None)

    async def process_batch(
        self,
        emails: Sequence[EmailMessage],
        user_id: str,
    ) -> BatchProcessingResult:
        """Process many emails with at most ``batch_size`` runs in flight.

        Failures are isolated per email: ``K`` failures out of ``N`` emails
        still yield ``N - K`` successes.
        """
        outcomes = await asyncio.gather(
            *(self.process_email(email, user_id) for email in emails),
            return_exceptions=True,
        )

        result = BatchProcessingResult()
        for email, outcome in zip(emails, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "[COORDINATOR] Draft processing raised: %s", outcome, extra={"email_id": email.id}
                )
                outcome = DraftResult(
                    success=False,
                    email_id=email.id,
                    state=DraftState.FAILED,
                    error=sanitize_error(outcome),
                )
            result.results.append(outcome)
            if outcome.success:
                result.successful += 1
            else:
                result.failed += 1

        logger.info(
            "[COORDINATOR] Batch complete: %d successful, %d failed",
            result.successful,
            result.failed,
            extra={"user_id": user_id, "batch_size": len(emails)},
        )
        return result

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def learn_from_email(
        self,
        user_id: str,
        email: EmailMessage,
        *,
        own_reply: bool | None = None,
        user_address: str | None = None,
    ) -> LearningOutcome:
        """Run continuous learning for one email under the concurrency bound.

        Raises:
            CoordinatorClosedError: If the coordinator has been shut down.
        """
        if self._closed:
            raise CoordinatorClosedError()
        if self._learner is None:
            return LearningOutcome(email_id=email.id, skipped=True, reason="learning_disabled")

        task = asyncio.create_task(self._learn(user_id, email, own_reply, user_address))
        self._learning_tasks.add(task)
        task.add_done_callback(self._learning_tasks.discard)
        return await asyncio.shield(task)

    async def _learn(
        self,
        user_id: str,
        email: EmailMessage,
        own_reply: bool | None,
        user_address: str | None,
    ) -> LearningOutcome:
        async with self._semaphore:
            return await self._learner.learn_from_email(  # type: ignore[union-attr]
                user_id, email, own_reply=own_reply, user_address=user_address
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop accepting work, finish in-flight runs and clear timers."""
        if self._closed:
            return
        self._closed = True

        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()

        pending = [t for t in self._in_flight.values() if not t.done()]
        pending.extend(t for t in self._learning_tasks if not t.done())
        if pending:
            logger.info("[COORDINATOR] Waiting for %d in-flight run(s)", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        self._in_flight.clear()
        self._learning_tasks.clear()
        logger.info("[COORDINATOR] Shut down")


def build_coordinator(
    settings: Settings | None = None,
    oracle: LanguageOracle | None = None,
    pattern_store: PatternStore | None = None,
) -> DraftCoordinator:
    """Wire a coordinator with Supabase stores and the LiteLLM oracle.

    Args:
        settings: Settings to use; the cached process settings by default.
        oracle: Oracle override (the configured LiteLLM oracle otherwise).
        pattern_store: Pattern store override.

    Returns:
        A ready coordinator.

    Raises:
        ValueError: If required secrets are missing.
    """
    injected = settings is not None
    settings = settings or get_settings()
    settings.validate_startup()
    configure_logging(settings.LOG_FORMAT, settings.LOG_LEVEL)

    # Injected settings get their own client; the singleton follows process settings.
    client = SupabaseClient.create(settings) if injected else SupabaseClient.get_client()

    if oracle is None:
        oracle = build_oracle(settings)
    pattern_store = pattern_store or SupabasePatternStore(client)

    defaults = LearningConfig(
        minimum_pattern_confidence=settings.MINIMUM_PATTERN_CONFIDENCE,
        pattern_merge_threshold=settings.PATTERN_MERGE_THRESHOLD,
    )
    cache = TwoTierDraftCache(
        MemoryDraftCache(
            ttl=settings.DRAFT_CACHE_TTL_SECONDS,
            maxsize=settings.DRAFT_CACHE_MAXSIZE,
            sweep_threshold=settings.DRAFT_CACHE_SWEEP_THRESHOLD,
        ),
        SupabaseDraftCacheTier(client),
    )
    selector = DraftSelector(
        oracle=oracle,
        pattern_store=pattern_store,
        cache=cache,
        config_store=LearningConfigStore(client, defaults=defaults),
        draft_store=SupabaseDraftStore(client),
        stored_draft_ttl_days=settings.STORED_DRAFT_TTL_DAYS,
    )
    learner = ContinuousLearner(
        PatternExtractor(oracle, min_confidence=settings.EXTRACTION_MIN_CONFIDENCE),
        pattern_store,
        min_content_length=settings.LEARNING_MIN_CONTENT_LENGTH,
    )

    logger.info("[COORDINATOR] Built with batch size %d", settings.COORDINATOR_BATCH_SIZE)
    return DraftCoordinator(
        selector,
        learner,
        batch_size=settings.COORDINATOR_BATCH_SIZE,
        retention_seconds=settings.COALESCE_RETENTION_SECONDS,
    )
