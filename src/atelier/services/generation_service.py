"""Caller-facing service: create, inspect and cancel generation jobs.

Each job runs as its own asyncio task so one job's polling never blocks
another's. Admission control (how many jobs run at once) belongs to the
caller.
"""

import asyncio
from typing import Mapping, Optional, Sequence

import httpx
import structlog

from atelier.core.config import (
    OrchestratorConfig,
    ProviderConfig,
    Settings,
    TierTable,
    default_provider_registry,
    default_tier_table,
)
from atelier.models.generation_job import (
    CancelAck,
    CostEstimate,
    GenerationJob,
    GenerationJobView,
    GenerationParameters,
    JobStatus,
    QualitySettings,
    ReferenceImage,
)
from atelier.repositories.generation_job import (
    GenerationJobRepository,
    InMemoryGenerationJobRepository,
)
from atelier.services.exceptions import JobNotFoundError
from atelier.services.image_generation.compositor import ImageCompositor
from atelier.services.image_generation.estimator import (
    estimate,
    remaining_seconds,
    resolve_max_retries,
)
from atelier.services.image_generation.provider_client import ProviderPollingAdapter
from atelier.services.image_generation.quality_scorer import (
    QualityScorer,
    WeightedQualityScorer,
)
from atelier.workers.generation_worker import GenerationOrchestrator

logger = structlog.get_logger(__name__)


class GenerationService:
    """Entry point for callers: ``create_job``, ``get_job_status``, ``cancel_job``."""

    def __init__(
        self,
        providers: Mapping[str, ProviderConfig],
        tier_table: Optional[TierTable] = None,
        config: Optional[OrchestratorConfig] = None,
        repository: Optional[GenerationJobRepository] = None,
        scorer: Optional[QualityScorer] = None,
        compositor: Optional[ImageCompositor] = None,
        client: Optional[httpx.AsyncClient] = None,
        submit_max_attempts: int = 3,
        submit_backoff_ms: int = 1000,
    ):
        """Initialize service with injected, immutable configuration.

        Args:
            providers: Provider configurations keyed by provider id
            tier_table: Quality tier presets (default: built-in tiers)
            config: Polling/retry/scoring knobs
            repository: Job store (default: in-memory)
            scorer: Validation scorer (default: weighted placeholder scorer)
            compositor: Reference image compositor
            client: Shared HTTP client for provider calls
            submit_max_attempts: Total submit tries on transient failures
            submit_backoff_ms: Initial submit backoff in milliseconds
        """
        if not providers:
            raise ValueError("At least one provider must be configured")
        self.providers = providers
        self.tier_table = tier_table or default_tier_table()
        self.config = config or OrchestratorConfig()
        self.repository = repository or InMemoryGenerationJobRepository()
        self.scorer = scorer or WeightedQualityScorer(
            placeholder_consistency=self.config.placeholder_consistency_score,
            placeholder_accuracy=self.config.placeholder_accuracy_score,
            consistency_weight=self.config.consistency_weight,
            accuracy_weight=self.config.accuracy_weight,
        )
        self.compositor = compositor or ImageCompositor()
        self._client = client
        self._submit_max_attempts = submit_max_attempts
        self._submit_backoff_ms = submit_backoff_ms
        self._orchestrators: dict[str, GenerationOrchestrator] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, client: Optional[httpx.AsyncClient] = None
    ) -> "GenerationService":
        return cls(
            providers=default_provider_registry(settings),
            config=OrchestratorConfig.from_settings(settings),
            client=client,
            submit_max_attempts=settings.submit_max_attempts,
            submit_backoff_ms=settings.submit_backoff_ms,
        )

    def _orchestrator(self, provider_id: str) -> GenerationOrchestrator:
        if provider_id not in self._orchestrators:
            provider = self.providers[provider_id]
            adapter = ProviderPollingAdapter(
                headers=provider.headers,
                timeout_seconds=provider.timeout_seconds,
                submit_max_attempts=self._submit_max_attempts,
                submit_backoff_ms=self._submit_backoff_ms,
                client=self._client,
            )
            self._orchestrators[provider_id] = GenerationOrchestrator(
                adapter=adapter,
                provider=provider,
                compositor=self.compositor,
                scorer=self.scorer,
                repository=self.repository,
                config=self.config,
            )
        return self._orchestrators[provider_id]

    def estimate_cost(self, quality_settings: QualitySettings) -> CostEstimate:
        """Preview cost/time for settings without creating a job."""
        return estimate(self.tier_table.get(quality_settings.quality_tier), quality_settings)

    async def create_job(
        self,
        inputs: Sequence[ReferenceImage],
        quality_settings: QualitySettings,
        job_id: Optional[str] = None,
    ) -> str:
        """Create a queued job and start running it in the background.

        Args:
            inputs: Ordered reference images (a ``product`` image is required)
            quality_settings: Tier, retry and priority settings
            job_id: Optional caller-assigned id

        Returns:
            The job id

        Raises:
            ValueError: No inputs, unknown provider, or duplicate job id
        """
        if not inputs:
            raise ValueError("At least one reference image is required")
        if quality_settings.provider_id not in self.providers:
            raise ValueError(f"Unknown provider: {quality_settings.provider_id}")

        tier_config = self.tier_table.get(quality_settings.quality_tier)
        max_attempts = 1
        if quality_settings.enable_retry:
            max_attempts += resolve_max_retries(tier_config, quality_settings)

        fields = {"id": job_id} if job_id else {}
        job = GenerationJob(
            **fields,
            max_attempts=max_attempts,
            quality_tier=quality_settings.quality_tier,
            settings=quality_settings,
            inputs=tuple(inputs),
            parameters=GenerationParameters(
                consistency_weight=quality_settings.consistency_priority,
                accuracy_weight=quality_settings.accuracy_priority,
            ),
            estimate=estimate(tier_config, quality_settings),
            attempt_cost=float(tier_config.base_cost),
        )
        await self.repository.add(job)

        cancel_event = asyncio.Event()
        orchestrator = self._orchestrator(quality_settings.provider_id)
        task = asyncio.create_task(orchestrator.run(job, cancel_event), name=f"generation-{job.id}")
        self._tasks[job.id] = task
        self._cancel_events[job.id] = cancel_event
        task.add_done_callback(lambda done, job_id=job.id: self._on_job_done(job_id, done))

        logger.info(
            "job.created",
            job_id=job.id,
            quality_tier=job.quality_tier.value,
            provider=quality_settings.provider_id,
            max_attempts=job.max_attempts,
            estimated_cost=job.estimate.cost if job.estimate else None,
            estimated_time_seconds=job.estimate.time_seconds if job.estimate else None,
            inputs=[image.name for image in job.inputs],
        )
        return job.id

    def _on_job_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        self._cancel_events.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                "job.crashed",
                job_id=job_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    async def _get(self, job_id: str) -> GenerationJob:
        job = await self.repository.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Generation job {job_id} not found")
        return job

    @staticmethod
    def _eta(job: GenerationJob) -> Optional[int]:
        if job.status == JobStatus.COMPLETED:
            return 0
        if job.is_terminal or job.estimate is None:
            return None
        return remaining_seconds(
            job.estimate, job.progress, [record.duration_ms for record in job.history]
        )

    async def get_job_status(self, job_id: str) -> GenerationJobView:
        """Return a read-only snapshot of the job with an ETA.

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = await self._get(job_id)
        return GenerationJobView.from_job(job, eta_seconds=self._eta(job))

    async def list_active_jobs(self) -> list[GenerationJobView]:
        """Snapshots of every queued or running job, oldest first."""
        jobs = await self.repository.list_active()
        return [GenerationJobView.from_job(job, eta_seconds=self._eta(job)) for job in jobs]

    async def cancel_job(self, job_id: str) -> CancelAck:
        """Cancel a job in any non-terminal state.

        Idempotent: repeated calls, or calls on finished jobs, acknowledge the
        current terminal state without error.

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = await self._get(job_id)
        ref = job.provider_job_ref
        if not job.mark_cancelled():
            return CancelAck(job_id=job.id, status=job.status, cancelled=False)

        cancel_event = self._cancel_events.get(job.id)
        if cancel_event is not None:
            cancel_event.set()
        await self.repository.save(job)
        logger.info("job.cancel_requested", job_id=job.id, provider_job_id=ref.id if ref else None)

        if ref is not None:
            await self._orchestrator(job.settings.provider_id).adapter.cancel(ref)
        return CancelAck(job_id=job.id, status=job.status, cancelled=True)

    async def wait(self, job_id: str) -> GenerationJobView:
        """Wait until the job's background task finishes, then return its view."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return await self.get_job_status(job_id)

    async def shutdown(self) -> None:
        """Cancel all running job tasks and wait for them to stop."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("service.stopped", cancelled_jobs=len(tasks))
