"""pytest fixtures for atelier tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test-environment Settings (no provider key required)
- make_image: Factory for in-memory Pillow images encoded as bytes
- reference_images: Face/product/detail references for a full job
- fake_provider: Scriptable provider behind httpx.MockTransport
"""

import io
import json
import os
from typing import Any, Callable, Optional

import httpx
import pytest
import pytest_asyncio
from PIL import Image

from atelier.core.config import OrchestratorConfig, ProviderConfig, Settings
from atelier.models.generation_job import ImageRole, ReferenceImage

PROVIDER_ENDPOINT = "https://provider.test/v1/flux-kontext-pro"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings(monkeypatch) -> Settings:
    """Settings for the test environment with fast polling."""
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.delenv("PROVIDER_API_KEY", raising=False)
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        PROVIDER_ENDPOINT=PROVIDER_ENDPOINT,
        POLL_INTERVAL_MS=10,
        POLL_MAX_ATTEMPTS=50,
        SUBMIT_BACKOFF_MS=0,
    )


def encode_image(
    size: tuple[int, int] = (64, 64),
    color: tuple[int, ...] = (200, 30, 30),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    return encode_image


def reference(name: str, role: ImageRole, data: bytes, mimetype: str = "image/png") -> ReferenceImage:
    return ReferenceImage(name=name, role=role, data=data, mimetype=mimetype)


@pytest.fixture
def reference_images() -> list[ReferenceImage]:
    """Face, product and one detail image with distinct colours."""
    return [
        reference("face", ImageRole.FACE, encode_image((80, 100), (230, 190, 160))),
        reference("product", ImageRole.PRODUCT, encode_image((120, 160), (40, 70, 200))),
        reference("detail1", ImageRole.DETAIL, encode_image((60, 60), (20, 20, 20))),
    ]


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        provider_id="flux_kontext",
        name="Flux Kontext",
        endpoint=PROVIDER_ENDPOINT,
        api_key="test-key",
    )


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    return OrchestratorConfig(poll_interval_ms=10, poll_max_attempts=50)


class FakeProvider:
    """Scriptable request/poll provider for httpx.MockTransport.

    Each submit gets a fresh id. ``poll_script`` lists the poll bodies (or
    ``httpx.Response`` objects) returned in order; the last entry repeats.
    """

    def __init__(self, endpoint: str = PROVIDER_ENDPOINT):
        self.endpoint = endpoint
        self.submissions: list[dict[str, Any]] = []
        self.polls: list[str] = []
        self.cancelled: list[str] = []
        self.submit_responses: list[httpx.Response] = []
        self.poll_script: list[Any] = [
            {"status": "Pending", "progress": 0.5},
            {"status": "Ready", "result": {"sample": "https://cdn.test/image.jpg"}},
        ]
        self.result_metrics: Optional[list[dict[str, float]]] = None
        self.pending_forever: set[str] = set()
        self._poll_index: dict[str, int] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path.endswith("/cancel"):
            self.cancelled.append(json.loads(request.content)["id"])
            return httpx.Response(200, json={"status": "Cancelled"})
        if request.method == "POST":
            if self.submit_responses:
                return self.submit_responses.pop(0)
            body = json.loads(request.content)
            self.submissions.append(body)
            job_id = f"req-{len(self.submissions)}"
            return httpx.Response(200, json={"id": job_id})
        if request.method == "GET" and path.endswith("/result"):
            job_id = request.url.params["id"]
            self.polls.append(job_id)
            index = self._poll_index.get(job_id, 0)
            self._poll_index[job_id] = index + 1
            entry = self.poll_script[min(index, len(self.poll_script) - 1)]
            if job_id in self.pending_forever:
                entry = {"status": "Pending"}
            if isinstance(entry, httpx.Response):
                return entry
            body = json.loads(json.dumps(entry))
            if body.get("status") == "Ready" and self.result_metrics is not None:
                # Attach metrics per applying_product submission (even-numbered)
                submission = int(job_id.split("-")[1])
                if submission % 2 == 0:
                    attempt_index = submission // 2 - 1
                    metrics = self.result_metrics[min(attempt_index, len(self.result_metrics) - 1)]
                    body["result"] = {**body["result"], "metrics": metrics}
            return httpx.Response(200, json=body)
        return httpx.Response(404, json={"detail": "not found"})


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def mock_client(fake_provider: FakeProvider):
    """httpx.AsyncClient routed to the fake provider."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_provider.handler)) as client:
        yield client
