"""Service error hierarchy for compositing, provider calls and job orchestration.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
- GenerationError: Job-level failures carrying an ErrorKind
"""

from typing import Optional

from atelier.models.generation_job import ErrorKind


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (500, 502, 503, 504)
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Malformed provider responses
    """

    pass


class GenerationError(PermanentError):
    """Base exception for failures that end a generation job."""

    kind: ErrorKind

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CompositionError(GenerationError):
    """Required reference image could not be decoded or composited."""

    kind = ErrorKind.COMPOSITION_ERROR


class ProviderError(GenerationError):
    """Provider reported a terminal failure (status code/message kept verbatim)."""

    kind = ErrorKind.PROVIDER_ERROR


class PollingTimeout(GenerationError):
    """Provider never resolved within the polling budget."""

    kind = ErrorKind.POLLING_TIMEOUT


class QualityBudgetExceeded(GenerationError):
    """Validation never passed within the job's attempt budget."""

    kind = ErrorKind.QUALITY_BUDGET_EXCEEDED


class PollCancelled(ServiceError):
    """Polling stopped because the owning job was cancelled."""

    pass


class JobNotFoundError(ServiceError):
    """No generation job is registered under the requested id."""

    pass


def classify_status(status_code: int, message: str) -> ServiceError:
    """Classify a non-2xx provider HTTP status into a retry category.

    Classification rules:
        - 408 (request timeout) → TransientError
        - 429 (rate limit) → TransientError
        - 5xx (server side) → TransientError
        - Any other 4xx → ProviderError
    """
    if status_code in (408, 429) or status_code >= 500:
        return TransientError(f"Provider unavailable ({status_code}): {message}", status_code)
    return ProviderError(message, status_code=status_code)
