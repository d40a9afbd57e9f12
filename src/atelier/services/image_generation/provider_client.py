"""Provider-agnostic submit/poll client for request/poll image generation APIs.

Protocol:
    POST <endpoint>                 -> {"id": ..., "polling_url"?: ...}
    GET  <endpoint>/result?id=<id>  -> {"status": "Ready"|"Error"|other, "result"?, "error"?}

Statuses other than Ready/Error are treated as still pending. Waiting between
polls suspends only the calling task and wakes early when the cancel event
is set.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from atelier.models.generation_job import ProviderJobRef
from atelier.services.exceptions import (
    PollCancelled,
    PollingTimeout,
    ProviderError,
    TransientError,
    classify_status,
)

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[float], None]


class PollState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


class PollResult(BaseModel):
    state: PollState
    data: dict[str, Any] = Field(default_factory=dict)
    provider_status: Optional[str] = None
    progress: Optional[float] = None


def _normalize_progress(value: Any) -> Optional[float]:
    """Provider progress may be a 0-1 fraction or a 0-100 percentage."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    percent = value * 100 if value <= 1 else value
    return float(min(max(percent, 0), 100))


class ProviderPollingAdapter:
    """Submit/poll/backoff mechanics over an HTTP generation provider."""

    def __init__(
        self,
        headers: Mapping[str, str],
        timeout_seconds: float = 90.0,
        submit_max_attempts: int = 3,
        submit_backoff_ms: int = 1000,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize adapter.

        Args:
            headers: Request headers including the provider auth header
            timeout_seconds: Per-request HTTP timeout
            submit_max_attempts: Total submit tries on transient failures
            submit_backoff_ms: Initial submit backoff, doubled per retry
            client: Shared client (tests inject one with a mock transport)
        """
        self.headers = dict(headers)
        self.timeout_seconds = timeout_seconds
        self.submit_max_attempts = max(1, submit_max_attempts)
        self.submit_backoff_ms = submit_backoff_ms
        self._client = client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, headers=self.headers, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await client.request(method, url, headers=self.headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"Request timeout after {self.timeout_seconds}s: {e}")
        except httpx.HTTPError as e:
            raise TransientError(f"Network error: {e}")

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise TransientError(f"Malformed provider response: {e}", response.status_code)
        if not isinstance(body, dict):
            raise TransientError(
                f"Unexpected provider response type: {type(body).__name__}", response.status_code
            )
        return body

    async def submit(
        self,
        payload: dict[str, Any],
        target_endpoint: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ProviderJobRef:
        """Submit a generation request and return the provider's job handle.

        Transient failures (timeouts, 408/429/5xx) are retried with exponential
        backoff up to ``submit_max_attempts`` tries.

        Raises:
            ProviderError: 4xx response, missing job id, or retries exhausted
                after the provider answered with an error status
            PollingTimeout: Retries exhausted without any provider response
            PollCancelled: Cancel event set while backing off
        """
        last_error: Optional[TransientError] = None
        for attempt in range(1, self.submit_max_attempts + 1):
            self._raise_if_cancelled(cancel_event)
            try:
                response = await self._request("POST", target_endpoint, json=payload)
                if not response.is_success:
                    raise classify_status(response.status_code, response.text)
                body = self._json_body(response)
            except TransientError as e:
                last_error = e
                logger.warning(
                    "provider.submit.retry",
                    endpoint=target_endpoint,
                    attempt=attempt,
                    max_attempts=self.submit_max_attempts,
                    error_message=str(e),
                )
                if attempt < self.submit_max_attempts:
                    backoff_ms = self.submit_backoff_ms * 2 ** (attempt - 1)
                    await self._wait(backoff_ms, cancel_event)
                continue

            job_id = body.get("id")
            if not job_id:
                raise ProviderError(f"Provider response missing job id: {body}")
            ref = ProviderJobRef(
                id=str(job_id), endpoint=target_endpoint, polling_url=body.get("polling_url")
            )
            logger.info("provider.submit.accepted", endpoint=target_endpoint, provider_job_id=ref.id)
            return ref

        message = f"Submit failed after {self.submit_max_attempts} attempts: {last_error}"
        if last_error is not None and last_error.status_code is not None:
            raise ProviderError(message, status_code=last_error.status_code)
        raise PollingTimeout(message)

    async def poll_once(self, ref: ProviderJobRef) -> PollResult:
        """Fetch the provider's current state for ``ref`` once.

        Raises:
            TransientError: Network failure, non-2xx response or malformed body
        """
        url = ref.polling_url or f"{ref.endpoint.rstrip('/')}/result"
        params = None if ref.polling_url else {"id": ref.id}
        response = await self._request("GET", url, params=params)
        if not response.is_success:
            raise TransientError(
                f"Poll returned {response.status_code}: {response.text}", response.status_code
            )
        body = self._json_body(response)

        status = body.get("status")
        if status == "Ready":
            result = body.get("result")
            data = result if isinstance(result, dict) else {"sample": result}
            return PollResult(state=PollState.READY, data=data, provider_status=status, progress=100)
        if status == "Error":
            return PollResult(
                state=PollState.ERROR,
                data={"error": body.get("error") or body.get("details") or "Provider job failed"},
                provider_status=status,
            )
        return PollResult(
            state=PollState.PENDING,
            provider_status=str(status) if status is not None else None,
            progress=_normalize_progress(body.get("progress")),
        )

    async def poll(
        self,
        ref: ProviderJobRef,
        max_attempts: int,
        interval_ms: int,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PollResult:
        """Poll until the provider reports Ready or Error.

        Transport failures count as poll cycles and are retried; the poll gives
        up after ``max_attempts`` cycles or ``max_attempts * interval_ms`` of
        wall-clock time, whichever comes first.

        Returns:
            The terminal ``ready`` PollResult

        Raises:
            ProviderError: Provider reported Error (message kept verbatim)
            PollingTimeout: No terminal response within the budget
            PollCancelled: Cancel event observed
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_attempts * interval_ms / 1000
        last_error: Optional[TransientError] = None

        for cycle in range(1, max_attempts + 1):
            self._raise_if_cancelled(cancel_event)
            try:
                result = await self.poll_once(ref)
            except TransientError as e:
                last_error = e
                logger.warning(
                    "provider.poll.retry",
                    provider_job_id=ref.id,
                    cycle=cycle,
                    max_attempts=max_attempts,
                    error_message=str(e),
                )
            else:
                if result.state == PollState.READY:
                    if on_progress:
                        on_progress(100.0)
                    return result
                if result.state == PollState.ERROR:
                    error = result.data.get("error")
                    raise ProviderError(str(error))
                if on_progress:
                    fallback = cycle * 100 / (max_attempts + 1)
                    on_progress(result.progress if result.progress is not None else fallback)

            if cycle == max_attempts or loop.time() >= deadline:
                break
            await self._wait(interval_ms, cancel_event)

        message = f"Provider job {ref.id} did not resolve within {max_attempts} polls"
        if last_error is not None:
            message += f" (last error: {last_error})"
        raise PollingTimeout(message)

    async def cancel(self, ref: ProviderJobRef) -> bool:
        """Best-effort provider-side cancel; failures are logged, not raised."""
        url = f"{ref.endpoint.rstrip('/')}/cancel"
        try:
            response = await self._request("POST", url, json={"id": ref.id})
        except TransientError as e:
            logger.warning("provider.cancel.failed", provider_job_id=ref.id, error_message=str(e))
            return False
        if not response.is_success:
            logger.warning(
                "provider.cancel.failed",
                provider_job_id=ref.id,
                status_code=response.status_code,
            )
            return False
        logger.info("provider.cancel.sent", provider_job_id=ref.id)
        return True

    @staticmethod
    def _raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelled("Polling cancelled")

    @staticmethod
    async def _wait(delay_ms: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay_ms / 1000)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            return
        raise PollCancelled("Polling cancelled")
