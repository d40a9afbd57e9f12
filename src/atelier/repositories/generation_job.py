"""GenerationJob repository for the orchestration core.

The durable store is an external collaborator; the orchestrator only needs
the narrow async interface below. ``InMemoryGenerationJobRepository`` backs
it in-process.
"""

from typing import Protocol

from atelier.models.generation_job import GenerationJob, JobStatus


class GenerationJobRepository(Protocol):
    async def add(self, job: GenerationJob) -> GenerationJob: ...

    async def get_by_id(self, job_id: str) -> GenerationJob | None: ...

    async def save(self, job: GenerationJob) -> GenerationJob: ...

    async def list_active(self) -> list[GenerationJob]: ...


class InMemoryGenerationJobRepository:
    """Repository for GenerationJob entities held in process memory.

    Jobs are stored by reference: the orchestrator mutates the job and calls
    ``save`` at each transition so a durable implementation can write through.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, GenerationJob] = {}

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Register a new job.

        Args:
            job: Queued job to register

        Returns:
            The registered job

        Raises:
            ValueError: If a job with the same id already exists
        """
        if job.id in self._jobs:
            raise ValueError(f"Generation job {job.id} already exists")
        self._jobs[job.id] = job
        return job

    async def get_by_id(self, job_id: str) -> GenerationJob | None:
        return self._jobs.get(job_id)

    async def save(self, job: GenerationJob) -> GenerationJob:
        self._jobs[job.id] = job
        return job

    async def list_active(self) -> list[GenerationJob]:
        """Jobs that are queued or running, oldest first."""
        active = [
            job
            for job in self._jobs.values()
            if job.status in (JobStatus.QUEUED, JobStatus.RUNNING)
        ]
        return sorted(active, key=lambda job: job.created_at)
