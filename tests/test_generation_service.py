"""Tests for the caller-facing generation service.

Covers job creation, status snapshots with ETA, idempotent cancellation,
concurrent jobs and unknown job ids.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from atelier.core.config import OrchestratorConfig, default_provider_registry
from atelier.models.generation_job import (
    ErrorKind,
    GenerationJob,
    JobStatus,
    QualitySettings,
    QualityTier,
)
from atelier.repositories.generation_job import InMemoryGenerationJobRepository
from atelier.services.exceptions import JobNotFoundError
from atelier.services.generation_service import GenerationService


@pytest_asyncio.fixture
async def service(settings, mock_client):
    service = GenerationService.from_settings(settings, client=mock_client)
    yield service
    await service.shutdown()


async def wait_for_polls(fake_provider, count: int = 1) -> None:
    for _ in range(500):
        if len(fake_provider.polls) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("provider was never polled")


@pytest.mark.asyncio
async def test_create_job_runs_to_completion(service, reference_images):
    job_id = await service.create_job(reference_images, QualitySettings())

    view = await service.wait(job_id)

    assert view.id == job_id
    assert view.status == JobStatus.COMPLETED
    assert view.progress == 100
    assert view.eta_seconds == 0
    assert view.result.image_url == "https://cdn.test/image.jpg"
    assert view.input_names == ["face", "product", "detail1"]
    assert view.has_composite is True


@pytest.mark.asyncio
async def test_create_job_sets_budget_and_estimate(service, fake_provider, reference_images):
    """standard tier: 1 + 2 default retries; estimate $0.13 / 63s."""
    fake_provider.poll_script = [{"status": "Pending"}]
    job_id = await service.create_job(
        reference_images,
        QualitySettings(
            quality_tier=QualityTier.STANDARD, consistency_priority=0.7, accuracy_priority=0.7
        ),
    )

    view = await service.get_job_status(job_id)

    assert view.max_attempts == 3
    assert view.estimated_cost == 0.13
    assert view.estimated_time_seconds == 63
    assert view.status in (JobStatus.QUEUED, JobStatus.RUNNING)
    assert 0 < view.eta_seconds <= 63


@pytest.mark.asyncio
async def test_retry_disabled_allows_single_attempt(service, fake_provider, reference_images):
    fake_provider.poll_script = [{"status": "Pending"}]
    job_id = await service.create_job(
        reference_images, QualitySettings(quality_tier=QualityTier.ULTRA, enable_retry=False)
    )

    view = await service.get_job_status(job_id)

    assert view.max_attempts == 1


@pytest.mark.asyncio
async def test_create_job_rejects_bad_input(service, reference_images):
    with pytest.raises(ValueError):
        await service.create_job([], QualitySettings())

    with pytest.raises(ValueError):
        await service.create_job(reference_images, QualitySettings(provider_id="unknown"))


@pytest.mark.asyncio
async def test_create_job_rejects_duplicate_id(service, fake_provider, reference_images):
    fake_provider.poll_script = [{"status": "Pending"}]
    await service.create_job(reference_images, QualitySettings(), job_id="job-1")

    with pytest.raises(ValueError):
        await service.create_job(reference_images, QualitySettings(), job_id="job-1")


@pytest.mark.asyncio
async def test_unknown_job_id_raises(service):
    with pytest.raises(JobNotFoundError):
        await service.get_job_status("missing")

    with pytest.raises(JobNotFoundError):
        await service.cancel_job("missing")


@pytest.mark.asyncio
async def test_cancel_while_polling_cancels_provider_job(service, fake_provider, reference_images):
    fake_provider.poll_script = [{"status": "Pending"}]
    job_id = await service.create_job(reference_images, QualitySettings())
    await wait_for_polls(fake_provider)

    ack = await service.cancel_job(job_id)
    view = await service.wait(job_id)

    assert ack.cancelled is True
    assert ack.status == JobStatus.CANCELLED
    assert view.status == JobStatus.CANCELLED
    assert view.eta_seconds is None
    assert view.error is None
    assert view.provider_job_id is None
    assert fake_provider.cancelled == ["req-1"]


@pytest.mark.asyncio
async def test_cancel_is_idempotent(service, fake_provider, reference_images):
    fake_provider.poll_script = [{"status": "Pending"}]
    job_id = await service.create_job(reference_images, QualitySettings())
    await wait_for_polls(fake_provider)

    first = await service.cancel_job(job_id)
    second = await service.cancel_job(job_id)

    assert first.cancelled is True
    assert second.cancelled is False
    assert second.status == JobStatus.CANCELLED
    assert len(fake_provider.cancelled) == 1


@pytest.mark.asyncio
async def test_cancel_after_completion_is_acknowledged(service, reference_images):
    job_id = await service.create_job(reference_images, QualitySettings())
    await service.wait(job_id)

    ack = await service.cancel_job(job_id)

    assert ack.cancelled is False
    assert ack.status == JobStatus.COMPLETED
    assert (await service.get_job_status(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_jobs_progress_independently(
    settings, mock_client, fake_provider, reference_images
):
    """A job stuck polling does not block another job from completing."""
    service = GenerationService(
        providers=default_provider_registry(settings),
        config=OrchestratorConfig(poll_interval_ms=10, poll_max_attempts=10_000),
        client=mock_client,
        submit_backoff_ms=0,
    )
    fake_provider.pending_forever = {"req-1"}
    try:
        stuck_id = await service.create_job(reference_images, QualitySettings(), job_id="stuck")
        await wait_for_polls(fake_provider)

        fast_id = await service.create_job(reference_images, QualitySettings(), job_id="fast")
        view = await asyncio.wait_for(service.wait(fast_id), timeout=5)

        assert view.status == JobStatus.COMPLETED
        assert (await service.get_job_status(stuck_id)).status == JobStatus.RUNNING
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_shutdown_cancels_running_jobs(settings, mock_client, fake_provider, reference_images):
    fake_provider.poll_script = [{"status": "Pending"}]
    service = GenerationService.from_settings(settings, client=mock_client)
    job_id = await service.create_job(reference_images, QualitySettings())
    await wait_for_polls(fake_provider)

    await service.shutdown()

    assert (await service.get_job_status(job_id)).status == JobStatus.CANCELLED


def test_estimate_cost_preview(settings):
    service = GenerationService(providers=default_provider_registry(settings))

    preview = service.estimate_cost(QualitySettings(quality_tier=QualityTier.BASIC, max_retries=0))

    assert preview.cost == 0.04
    assert preview.time_seconds == 30


class FailingSaveRepository(InMemoryGenerationJobRepository):
    async def save(self, job: GenerationJob) -> GenerationJob:
        raise RuntimeError("store unavailable")


@pytest.mark.asyncio
async def test_unexpected_task_failure_is_logged(settings, mock_client, reference_images):
    """A crash outside the job error taxonomy is logged by the task done callback."""
    service = GenerationService(
        providers=default_provider_registry(settings),
        repository=FailingSaveRepository(),
        client=mock_client,
    )

    with patch("atelier.services.generation_service.logger") as mock_logger:
        job_id = await service.create_job(reference_images, QualitySettings())
        await service.wait(job_id)

    mock_logger.error.assert_called_once()
    args, kwargs = mock_logger.error.call_args
    assert args == ("job.crashed",)
    assert kwargs["job_id"] == job_id
    assert kwargs["error_type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_scorer_crash_marks_job_failed(settings, mock_client, reference_images):
    """An exception outside the job error taxonomy still leaves the job terminal."""
    scorer = AsyncMock()
    scorer.score.side_effect = RuntimeError("scorer offline")
    service = GenerationService(
        providers=default_provider_registry(settings),
        config=OrchestratorConfig(poll_interval_ms=10, poll_max_attempts=50),
        scorer=scorer,
        client=mock_client,
        submit_backoff_ms=0,
    )

    with patch("atelier.services.generation_service.logger") as mock_logger:
        job_id = await service.create_job(reference_images, QualitySettings())
        view = await service.wait(job_id)

    assert view.status == JobStatus.FAILED
    assert view.error.kind == ErrorKind.INTERNAL_ERROR
    assert view.eta_seconds is None
    assert await service.list_active_jobs() == []
    args, kwargs = mock_logger.error.call_args
    assert args == ("job.crashed",)
    assert kwargs["error_type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_list_active_jobs_returns_running_jobs(service, fake_provider, reference_images):
    fake_provider.poll_script = [{"status": "Pending"}]
    first = await service.create_job(reference_images, QualitySettings(), job_id="first")
    second = await service.create_job(reference_images, QualitySettings(), job_id="second")
    await wait_for_polls(fake_provider)

    active = await service.list_active_jobs()

    assert [view.id for view in active] == [first, second]
    assert all(view.eta_seconds is not None for view in active)

    await service.cancel_job(first)

    assert [view.id for view in await service.list_active_jobs()] == [second]


@pytest.mark.asyncio
async def test_spent_cost_tracks_attempts(service, reference_images):
    job_id = await service.create_job(
        reference_images, QualitySettings(quality_tier=QualityTier.PREMIUM)
    )

    view = await service.wait(job_id)

    assert view.status == JobStatus.COMPLETED
    assert [record.cost for record in view.history] == [0.16]
    assert view.spent_cost == 0.16
