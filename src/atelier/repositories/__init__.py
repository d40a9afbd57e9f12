"""Repository layer for generation jobs.

Provides the data access interface the orchestrator persists through.
"""

from atelier.repositories.generation_job import (
    GenerationJobRepository,
    InMemoryGenerationJobRepository,
)

__all__ = [
    "GenerationJobRepository",
    "InMemoryGenerationJobRepository",
]
