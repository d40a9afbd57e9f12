"""Pydantic domain entities for generation jobs.

All models are re-exported here so callers import from ``atelier.models``.
"""

from atelier.models.characteristics import (
    ColorProfile,
    DetailCharacteristics,
    FaceCharacteristics,
    ImageCharacteristics,
    ProductCharacteristics,
)
from atelier.models.generation_job import (
    CancelAck,
    CostEstimate,
    ErrorKind,
    GenerationJob,
    GenerationJobView,
    GenerationParameters,
    ImageRole,
    InvalidStateTransition,
    JobError,
    JobResult,
    JobStage,
    JobStatus,
    QualitySettings,
    QualityTier,
    ReferenceImage,
    ValidationMetrics,
)

__all__ = [
    "GenerationJob",
    "GenerationJobView",
    "JobStatus",
    "JobStage",
    "InvalidStateTransition",
    "QualityTier",
    "QualitySettings",
    "ReferenceImage",
    "ImageRole",
    "GenerationParameters",
    "ValidationMetrics",
    "JobResult",
    "JobError",
    "ErrorKind",
    "CostEstimate",
    "CancelAck",
    "ColorProfile",
    "FaceCharacteristics",
    "ProductCharacteristics",
    "DetailCharacteristics",
    "ImageCharacteristics",
]
