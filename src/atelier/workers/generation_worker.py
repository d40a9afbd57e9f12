"""Generation worker driving one try-on job through its lifecycle.

Stages run strictly in order for a single job:

    queued -> analyzing -> generating_model -> applying_product -> validating
           -> completed | retrying -> generating_model | failed

Any state may also end in ``cancelled``.

## Error paths

Each failure path ends the job in exactly one terminal state:

- CompositionError (analyzing): malformed required input, never retried
- ProviderError: provider reported a terminal failure, message kept verbatim
- PollingTimeout: provider never resolved within the polling budget
- QualityBudgetExceeded: validation kept failing until attempts or the cost
  limit ran out
- InternalError: anything else; the job is failed and saved, then the
  exception propagates to the task done callback

Transient provider failures (timeouts, 429, 5xx) are retried inside the
polling adapter for the current stage only and never consume an attempt.

## Adaptive retry

When validation fails and attempts remain, the lower-scoring dimension
(consistency vs accuracy) gets its emphasis weight raised by
``deficit * retry_emphasis_gain`` before looping back to generating_model.
"""

import asyncio
import time
from typing import Optional

import structlog

from atelier.core.config import OrchestratorConfig, ProviderConfig
from atelier.models.characteristics import ImageCharacteristics
from atelier.models.generation_job import (
    ErrorKind,
    GenerationJob,
    GenerationParameters,
    ImageRole,
    JobError,
    JobResult,
    JobStage,
    ValidationMetrics,
)
from atelier.repositories.generation_job import GenerationJobRepository
from atelier.services.exceptions import (
    CompositionError,
    GenerationError,
    PollCancelled,
    ProviderError,
    QualityBudgetExceeded,
)
from atelier.services.image_generation.characteristics import extract_characteristics
from atelier.services.image_generation.compositor import ImageCompositor, decode_image
from atelier.services.image_generation.prompt_builder import build_stage_payload
from atelier.services.image_generation.provider_client import PollResult, ProviderPollingAdapter
from atelier.services.image_generation.quality_scorer import QualityScorer

logger = structlog.get_logger(__name__)


def adjust_parameters(
    parameters: GenerationParameters,
    metrics: ValidationMetrics,
    threshold: float,
    gain: float,
) -> GenerationParameters:
    """Raise emphasis on the weaker dimension in proportion to the deficit.

    Ties favour consistency. Weights are capped at 1.0.
    """
    boost = max(threshold - metrics.overall, 0.0) * gain
    if metrics.consistency <= metrics.accuracy:
        return GenerationParameters(
            consistency_weight=round(min(1.0, parameters.consistency_weight + boost), 4),
            accuracy_weight=parameters.accuracy_weight,
        )
    return GenerationParameters(
        consistency_weight=parameters.consistency_weight,
        accuracy_weight=round(min(1.0, parameters.accuracy_weight + boost), 4),
    )


def _raise_if_cancelled(cancel_event: asyncio.Event) -> None:
    if cancel_event.is_set():
        raise PollCancelled("Job cancelled")


class GenerationOrchestrator:
    """Runs the stage/retry policy for jobs targeting one provider."""

    def __init__(
        self,
        adapter: ProviderPollingAdapter,
        provider: ProviderConfig,
        compositor: ImageCompositor,
        scorer: QualityScorer,
        repository: GenerationJobRepository,
        config: OrchestratorConfig,
    ):
        self.adapter = adapter
        self.provider = provider
        self.compositor = compositor
        self.scorer = scorer
        self.repository = repository
        self.config = config

    async def run(self, job: GenerationJob, cancel_event: asyncio.Event) -> GenerationJob:
        """Drive ``job`` from queued to a terminal state.

        Args:
            job: Queued job owned exclusively by this run
            cancel_event: Set by the caller to stop the job; observed at every
                stage boundary and every poll cycle

        Returns:
            The same job, now completed, failed or cancelled
        """
        log = logger.bind(job_id=job.id)
        attempt_started: Optional[float] = None

        try:
            _raise_if_cancelled(cancel_event)
            job.mark_analyzing()
            await self._enter_stage(job, log)
            await self._analyze(job)

            _raise_if_cancelled(cancel_event)
            job.mark_generating_model()
            await self._enter_stage(job, log)

            while True:
                attempt_started = time.monotonic()

                model_result = await self._provider_stage(job, cancel_event)
                model_image_url = self._image_url(model_result)

                _raise_if_cancelled(cancel_event)
                job.mark_applying_product()
                await self._enter_stage(job, log)
                product_result = await self._provider_stage(
                    job, cancel_event, reference_image_url=model_image_url
                )
                image_url = self._image_url(product_result)

                _raise_if_cancelled(cancel_event)
                job.mark_validating()
                await self._enter_stage(job, log)
                metrics = await self.scorer.score(job, product_result.data)
                job.report_stage_progress(100)
                duration_ms = self._elapsed_ms(attempt_started)
                attempt_started = None

                _raise_if_cancelled(cancel_event)
                threshold = job.settings.validation_threshold
                if metrics.overall >= threshold:
                    job.record_attempt(True, metrics.overall, duration_ms)
                    job.mark_completed(
                        JobResult(
                            image_url=image_url,
                            metrics=metrics,
                            provider_data=product_result.data,
                        )
                    )
                    await self.repository.save(job)
                    log.info(
                        "job.completed",
                        attempt=job.attempt,
                        quality_score=metrics.overall,
                        image_url=image_url,
                    )
                    return job

                job.record_attempt(False, metrics.overall, duration_ms)
                if not job.can_retry:
                    raise QualityBudgetExceeded(
                        f"Quality {metrics.overall:.2f} below threshold {threshold:.2f} "
                        f"after {job.attempt} of {job.max_attempts} attempts"
                        f"{self._cost_note(job)}"
                    )

                parameters = adjust_parameters(
                    job.parameters, metrics, threshold, self.config.retry_emphasis_gain
                )
                job.mark_retrying(parameters)
                await self._enter_stage(job, log)
                log.warning(
                    "job.retrying",
                    attempt=job.attempt,
                    max_attempts=job.max_attempts,
                    quality_score=metrics.overall,
                    threshold=threshold,
                    consistency_weight=parameters.consistency_weight,
                    accuracy_weight=parameters.accuracy_weight,
                )

                _raise_if_cancelled(cancel_event)
                job.mark_generating_model()
                await self._enter_stage(job, log)

        except PollCancelled:
            job.mark_cancelled()
            await self.repository.save(job)
            log.info("job.cancelled", attempt=job.attempt)
            return job

        except asyncio.CancelledError:
            # Task cancelled (service shutdown)
            if job.mark_cancelled():
                await self.repository.save(job)
            log.info("job.cancelled", attempt=job.attempt, reason="task_cancelled")
            raise

        except GenerationError as e:
            if job.is_terminal:
                return job
            if attempt_started is not None:
                job.record_attempt(False, None, self._elapsed_ms(attempt_started))
            job.mark_failed(JobError(kind=e.kind, message=e.message, status_code=e.status_code))
            await self.repository.save(job)
            log.error(
                "job.failed",
                error_type=e.kind.value,
                error_message=e.message,
                status_code=e.status_code,
                attempt=job.attempt,
            )
            return job

        except Exception as e:
            if job.is_terminal:
                raise
            if attempt_started is not None:
                job.record_attempt(False, None, self._elapsed_ms(attempt_started))
            job.mark_failed(
                JobError(kind=ErrorKind.INTERNAL_ERROR, message=f"{type(e).__name__}: {e}")
            )
            await self.repository.save(job)
            log.error(
                "job.failed",
                error_type=ErrorKind.INTERNAL_ERROR.value,
                error_message=str(e),
                attempt=job.attempt,
            )
            raise

    async def _enter_stage(self, job: GenerationJob, log: structlog.stdlib.BoundLogger) -> None:
        await self.repository.save(job)
        log.info(
            "job.stage.entered",
            stage=job.stage.value if job.stage else None,
            attempt=job.attempt,
            progress=job.progress,
        )

    async def _analyze(self, job: GenerationJob) -> None:
        """Composite inputs and extract per-role characteristics off the event loop.

        Raises:
            CompositionError: Required input missing/unreadable or compositing failed
        """

        def _run() -> tuple[bytes, dict]:
            payload = self.compositor.compose(job.inputs)
            characteristics: dict[ImageRole, list[ImageCharacteristics]] = {}
            for image in job.inputs:
                if image.role != ImageRole.DETAIL and image.role in characteristics:
                    # Only the first face/product reference is composited
                    continue
                try:
                    picture = decode_image(image.data)
                except ValueError:
                    # Unreadable optional inputs were already blanked by the compositor
                    continue
                characteristics.setdefault(image.role, []).append(
                    extract_characteristics(image.role, picture)
                )
            return payload, characteristics

        try:
            payload, characteristics = await asyncio.to_thread(_run)
        except CompositionError:
            raise
        except Exception as e:
            raise CompositionError(f"Composition failed: {e}") from e

        job.composited_payload = payload
        job.characteristics = characteristics
        job.report_stage_progress(100)

    async def _provider_stage(
        self,
        job: GenerationJob,
        cancel_event: asyncio.Event,
        reference_image_url: Optional[str] = None,
    ) -> PollResult:
        """Submit one stage request and wait for its terminal provider result."""
        stage: JobStage = job.stage  # type: ignore[assignment]
        payload = build_stage_payload(job, stage, self.provider, reference_image_url)

        ref = await self.adapter.submit(payload, self.provider.endpoint, cancel_event)
        if cancel_event.is_set():
            # Cancelled while the submit was in flight; the caller never saw this ref
            await self.adapter.cancel(ref)
            raise PollCancelled("Job cancelled")

        job.provider_job_ref = ref
        await self.repository.save(job)

        result = await self.adapter.poll(
            ref,
            max_attempts=self.config.poll_max_attempts,
            interval_ms=self.config.poll_interval_ms,
            cancel_event=cancel_event,
            on_progress=job.report_stage_progress,
        )
        job.provider_job_ref = None
        await self.repository.save(job)
        return result

    @staticmethod
    def _image_url(result: PollResult) -> str:
        image_url = result.data.get("sample") or result.data.get("image_url")
        if not image_url:
            raise ProviderError(f"Provider result has no image: {result.data}")
        return str(image_url)

    @staticmethod
    def _cost_note(job: GenerationJob) -> str:
        limit = job.settings.cost_limit
        if limit is None or job.attempt >= job.max_attempts or not job.settings.enable_retry:
            return ""
        return f" (cost limit ${limit:.2f} reached, spent ${job.total_cost:.2f})"

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return max(0, int((time.monotonic() - started) * 1000))
