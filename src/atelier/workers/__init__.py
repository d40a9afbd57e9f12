"""Background workers for async processing tasks."""

from atelier.workers.generation_worker import GenerationOrchestrator, adjust_parameters

__all__ = [
    "GenerationOrchestrator",
    "adjust_parameters",
]
