"""Background initial-learning jobs with progress tracking.

One job per user may run at a time; starting a second job for a user
whose job is still queued or processing returns the existing job id.
Finished job records are kept for a retention period so callers can poll
the outcome, then evicted.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from replywise.core.config import Settings, get_settings
from replywise.core.exceptions import sanitize_error
from replywise.core.llm import LanguageOracle, build_oracle
from replywise.db.analytics_store import SupabaseLearningAnalyticsStore
from replywise.db.config_store import LearningConfigStore
from replywise.db.pattern_store import PatternStore, SupabasePatternStore
from replywise.db.supabase import SupabaseClient
from replywise.learning.extraction import PatternExtractor
from replywise.learning.initial import InitialLearningService
from replywise.models.email import EmailPair
from replywise.models.learning import LearningAnalysis, LearningConfig

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 5 * 60


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_ACTIVE = {JobStatus.QUEUED, JobStatus.PROCESSING}


@dataclass
class LearningJobProgress:
    """Progress record of one learning job."""

    job_id: str
    user_id: str
    status: JobStatus = JobStatus.QUEUED
    total_items: int = 0
    processed_items: int = 0
    patterns_found: int = 0
    quality_score: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    analysis: LearningAnalysis | None = None

    @property
    def is_active(self) -> bool:
        """True while queued or processing."""
        return self.status in _ACTIVE

    @property
    def progress_percent(self) -> float:
        """Share of items processed, 0-100."""
        if self.status == JobStatus.COMPLETED:
            return 100.0
        if self.total_items == 0:
            return 0.0
        return round(100.0 * self.processed_items / self.total_items, 1)


class LearningJobRunner:
    """Runs ``InitialLearningService`` in background tasks."""

    def __init__(
        self,
        service: InitialLearningService,
        config_store: LearningConfigStore | None = None,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        self._service = service
        self._config_store = config_store
        self.retention_seconds = retention_seconds

        self._jobs: dict[str, LearningJobProgress] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    def get_job(self, job_id: str) -> LearningJobProgress | None:
        """Progress of a job, or None once evicted or unknown."""
        return self._jobs.get(job_id)

    def get_user_job(self, user_id: str) -> LearningJobProgress | None:
        """The active job of a user, if any."""
        for job in self._jobs.values():
            if job.user_id == user_id and job.is_active:
                return job
        return None

    def start_job(
        self,
        user_id: str,
        pairs: Sequence[EmailPair],
        config: LearningConfig | None = None,
    ) -> str:
        """Queue an initial-learning job for a user.

        Args:
            user_id: Mailbox owner.
            pairs: Received emails with their replies.
            config: Learning configuration; loaded from the store when omitted.

        Returns:
            The job id, which is the running job's id if one exists.
        """
        existing = self.get_user_job(user_id)
        if existing is not None:
            logger.info(
                "[LEARNING] Job already running for user, returning existing job",
                extra={"user_id": user_id, "job_id": existing.job_id},
            )
            return existing.job_id

        job = LearningJobProgress(job_id=str(uuid.uuid4()), user_id=user_id, total_items=len(pairs))
        self._jobs[job.job_id] = job
        self._tasks[job.job_id] = asyncio.create_task(
            self._run(job, list(pairs), config), name=f"learning:{job.job_id}"
        )
        logger.info(
            "[LEARNING] Queued learning job",
            extra={"user_id": user_id, "job_id": job.job_id, "total_items": job.total_items},
        )
        return job.job_id

    async def wait(self, job_id: str) -> LearningJobProgress | None:
        """Wait for a job to finish and return its final progress."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(job_id)

    def _progress_callback(self, job: LearningJobProgress) -> Callable[[int, int], None]:
        def update(done: int, total: int) -> None:
            job.processed_items = done
            job.total_items = total

        return update

    async def _run(
        self,
        job: LearningJobProgress,
        pairs: list[EmailPair],
        config: LearningConfig | None,
    ) -> None:
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.now(UTC)
        try:
            if config is None and self._config_store is not None:
                config = await self._config_store.get_config(job.user_id)
            analysis = await self._service.learn_from_history(
                job.user_id, pairs, config, on_progress=self._progress_callback(job)
            )
        except asyncio.CancelledError:
            job.status = JobStatus.FAILED
            job.error = "Learning job was cancelled"
            job.completed_at = datetime.now(UTC)
            raise
        except Exception as e:
            logger.exception(
                "[LEARNING] Learning job failed", extra={"user_id": job.user_id, "job_id": job.job_id}
            )
            job.status = JobStatus.FAILED
            job.error = sanitize_error(e)
        else:
            job.status = JobStatus.COMPLETED
            job.analysis = analysis
            job.patterns_found = analysis.patterns_found
            job.quality_score = analysis.quality_score
            job.processed_items = job.total_items
            logger.info(
                "[LEARNING] Learning job completed: %d pattern(s)",
                analysis.patterns_found,
                extra={"user_id": job.user_id, "job_id": job.job_id},
            )
        finally:
            job.completed_at = job.completed_at or datetime.now(UTC)
            self._tasks.pop(job.job_id, None)
            self._schedule_eviction(job.job_id)

    def _schedule_eviction(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._evictions[job_id] = loop.call_later(self.retention_seconds, self._evict, job_id)

    def _evict(self, job_id: str) -> None:
        self._evictions.pop(job_id, None)
        self._jobs.pop(job_id, None)

    async def shutdown(self) -> None:
        """Cancel running jobs and clear eviction timers."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        # Jobs cancelled before they started never reached _run.
        for job in self._jobs.values():
            if job.is_active:
                job.status = JobStatus.FAILED
                job.error = "Learning job was cancelled"
                job.completed_at = datetime.now(UTC)

        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        logger.info("[LEARNING] Job runner shut down (%d job(s) cancelled)", len(tasks))


def build_learning_runner(
    settings: Settings | None = None,
    oracle: LanguageOracle | None = None,
    pattern_store: PatternStore | None = None,
) -> LearningJobRunner:
    """Wire a job runner with Supabase stores and the LiteLLM oracle.

    Raises:
        ValueError: If required secrets are missing.
    """
    injected = settings is not None
    settings = settings or get_settings()
    settings.validate_startup()

    client = SupabaseClient.create(settings) if injected else SupabaseClient.get_client()
    if oracle is None:
        oracle = build_oracle(settings)

    service = InitialLearningService(
        PatternExtractor(oracle, min_confidence=settings.EXTRACTION_MIN_CONFIDENCE),
        pattern_store or SupabasePatternStore(client),
        SupabaseLearningAnalyticsStore(client),
    )
    defaults = LearningConfig(
        minimum_pattern_confidence=settings.MINIMUM_PATTERN_CONFIDENCE,
        pattern_merge_threshold=settings.PATTERN_MERGE_THRESHOLD,
    )
    return LearningJobRunner(service, LearningConfigStore(client, defaults=defaults))
