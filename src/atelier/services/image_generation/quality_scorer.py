"""Pluggable quality scoring for the validating stage."""

from typing import Any, Protocol

from atelier.models.generation_job import GenerationJob, ValidationMetrics


class QualityScorer(Protocol):
    async def score(self, job: GenerationJob, provider_result: dict[str, Any]) -> ValidationMetrics:
        """Return consistency/accuracy/overall scores in [0, 1]."""
        ...


def _unit(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return min(max(float(value), 0.0), 1.0)


class WeightedQualityScorer:
    """Weighted consistency/accuracy score.

    Uses provider-reported ``metrics.consistency`` / ``metrics.accuracy`` when
    the provider returns them and fixed placeholder confidences otherwise.
    """

    def __init__(
        self,
        placeholder_consistency: float = 0.85,
        placeholder_accuracy: float = 0.8,
        consistency_weight: float = 0.5,
        accuracy_weight: float = 0.5,
    ):
        total = consistency_weight + accuracy_weight
        if total <= 0:
            raise ValueError("Scoring weights must sum to a positive value")
        self.placeholder_consistency = placeholder_consistency
        self.placeholder_accuracy = placeholder_accuracy
        self.consistency_weight = consistency_weight / total
        self.accuracy_weight = accuracy_weight / total

    async def score(self, job: GenerationJob, provider_result: dict[str, Any]) -> ValidationMetrics:
        reported = provider_result.get("metrics")
        reported = reported if isinstance(reported, dict) else {}
        consistency = _unit(reported.get("consistency"))
        accuracy = _unit(reported.get("accuracy"))
        source = "provider" if consistency is not None or accuracy is not None else "placeholder"

        if consistency is None:
            consistency = self.placeholder_consistency
        if accuracy is None:
            accuracy = self.placeholder_accuracy

        overall = consistency * self.consistency_weight + accuracy * self.accuracy_weight
        return ValidationMetrics(
            consistency=round(consistency, 4),
            accuracy=round(accuracy, 4),
            overall=round(min(max(overall, 0.0), 1.0), 4),
            source=source,
        )
