"""Cost/time estimation from quality tier configuration."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from atelier.core.config import QualityTierConfig
from atelier.models.generation_job import CostEstimate, QualitySettings

RETRY_COST_FACTOR = Decimal("0.3")
RETRY_TIME_FACTOR = Decimal("0.2")
HIGH_PRIORITY_THRESHOLD = Decimal("0.8")
HIGH_PRIORITY_COST_MULTIPLIER = Decimal("1.2")
HIGH_PRIORITY_TIME_MULTIPLIER = Decimal("1.15")

CENTS = Decimal("0.01")
WHOLE_SECONDS = Decimal("1")


def resolve_max_retries(tier_config: QualityTierConfig, settings: QualitySettings) -> int:
    """Explicit ``max_retries`` wins; otherwise the tier's default retry budget."""
    if settings.max_retries is not None:
        return settings.max_retries
    return tier_config.default_max_retries


def estimate(tier_config: QualityTierConfig, settings: QualitySettings) -> CostEstimate:
    """Estimate spend and latency for one job.

    Multipliers compose in order: retry budget first, then the high-priority
    surcharge when the mean of the two priorities exceeds 0.8. Cost is rounded
    half-up to cents and time to whole seconds.

    Example:
        standard tier ($0.08, 45s), retry on, max_retries=2, mean priority 0.7
        -> cost 0.08 * 1.6 = 0.128 -> 0.13, time 45 * 1.4 = 63
    """
    cost = tier_config.base_cost
    time_seconds = Decimal(tier_config.base_time_seconds)

    if settings.enable_retry:
        max_retries = Decimal(resolve_max_retries(tier_config, settings))
        cost *= 1 + max_retries * RETRY_COST_FACTOR
        time_seconds *= 1 + max_retries * RETRY_TIME_FACTOR

    average_priority = (
        Decimal(str(settings.consistency_priority)) + Decimal(str(settings.accuracy_priority))
    ) / 2
    if average_priority > HIGH_PRIORITY_THRESHOLD:
        cost *= HIGH_PRIORITY_COST_MULTIPLIER
        time_seconds *= HIGH_PRIORITY_TIME_MULTIPLIER

    return CostEstimate(
        cost=float(cost.quantize(CENTS, rounding=ROUND_HALF_UP)),
        time_seconds=int(time_seconds.quantize(WHOLE_SECONDS, rounding=ROUND_HALF_UP)),
    )


def remaining_seconds(
    job_estimate: CostEstimate, progress: int, attempt_durations_ms: Sequence[int] = ()
) -> int:
    """Linear ETA from current 0-100 progress.

    Once attempts have finished, their mean observed duration replaces the
    tier estimate as the time base.
    """
    progress = min(max(progress, 0), 100)
    if attempt_durations_ms:
        base = Decimal(sum(attempt_durations_ms)) / len(attempt_durations_ms) / 1000
    else:
        base = Decimal(job_estimate.time_seconds)
    remaining = base * (100 - progress) / 100
    return int(remaining.quantize(WHOLE_SECONDS, rounding=ROUND_HALF_UP))
