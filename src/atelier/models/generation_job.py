"""GenerationJob entity - one try-on request with lifecycle status tracking."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from atelier.models.characteristics import ImageCharacteristics

ALLOWED_MIMETYPES = frozenset({"image/jpeg", "image/png", "image/webp"})

STAGE_BAND_WIDTH = 25


class JobStatus(str, Enum):
    """Job lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobStage(str, Enum):
    """Sub-stage of a running job."""

    ANALYZING = "analyzing"
    GENERATING_MODEL = "generating_model"
    APPLYING_PRODUCT = "applying_product"
    VALIDATING = "validating"
    RETRYING = "retrying"


# Progress band index of each stage (index * 25 .. (index + 1) * 25).
STAGE_INDEX = {
    JobStage.ANALYZING: 0,
    JobStage.GENERATING_MODEL: 1,
    JobStage.APPLYING_PRODUCT: 2,
    JobStage.VALIDATING: 3,
}


class QualityTier(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
    ULTRA = "ultra"


class ImageRole(str, Enum):
    """Band a reference image is composited into."""

    FACE = "face"
    PRODUCT = "product"
    DETAIL = "detail"


class ErrorKind(str, Enum):
    """Originating kind of a terminal job failure."""

    COMPOSITION_ERROR = "CompositionError"
    PROVIDER_ERROR = "ProviderError"
    POLLING_TIMEOUT = "PollingTimeout"
    QUALITY_BUDGET_EXCEEDED = "QualityBudgetExceeded"
    INTERNAL_ERROR = "InternalError"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class ReferenceImage(BaseModel):
    """Named input image (``product``, ``face``, ``detail1`` ...)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    role: ImageRole
    data: bytes
    mimetype: str = Field(min_length=1)

    @field_validator("mimetype")
    @classmethod
    def validate_mimetype(cls, value: str) -> str:
        if value not in ALLOWED_MIMETYPES:
            raise ValueError(
                f"Unsupported mimetype {value!r}; allowed: {', '.join(sorted(ALLOWED_MIMETYPES))}"
            )
        return value


class QualitySettings(BaseModel):
    """Caller-supplied generation settings, fixed at job creation."""

    model_config = ConfigDict(frozen=True)

    quality_tier: QualityTier = QualityTier.STANDARD
    enable_retry: bool = True
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    consistency_priority: float = Field(default=0.7, ge=0.0, le=1.0)
    accuracy_priority: float = Field(default=0.8, ge=0.0, le=1.0)
    validation_threshold: float = Field(default=0.6, ge=0.3, le=0.98)
    provider_id: str = "flux_kontext"
    pose: str = Field(default="arms crossed", min_length=1, max_length=100)
    prompt: str = Field(default="", max_length=300)
    cost_limit: Optional[float] = Field(default=None, gt=0)

    @property
    def average_priority(self) -> float:
        return (self.consistency_priority + self.accuracy_priority) / 2


class GenerationParameters(BaseModel):
    """Emphasis weights sent to the provider; perturbed between attempts."""

    model_config = ConfigDict(frozen=True)

    consistency_weight: float = Field(ge=0.0, le=1.0)
    accuracy_weight: float = Field(ge=0.0, le=1.0)


class ProviderJobRef(BaseModel):
    """Handle of an in-flight provider request."""

    model_config = ConfigDict(frozen=True)

    id: str
    endpoint: str
    polling_url: Optional[str] = None


class ValidationMetrics(BaseModel):
    consistency: float = Field(ge=0.0, le=1.0)
    accuracy: float = Field(ge=0.0, le=1.0)
    overall: float = Field(ge=0.0, le=1.0)
    source: str = "placeholder"


class JobResult(BaseModel):
    image_url: str
    metrics: ValidationMetrics
    provider_data: dict[str, Any] = Field(default_factory=dict)


class JobError(BaseModel):
    kind: ErrorKind
    message: str
    status_code: Optional[int] = None


class AttemptRecord(BaseModel):
    """One finished generation attempt (append-only history entry)."""

    model_config = ConfigDict(frozen=True)

    attempt: int = Field(ge=1)
    success: bool
    quality_score: Optional[float] = None
    duration_ms: int = Field(ge=0)
    cost: float = Field(default=0.0, ge=0)


class CostEstimate(BaseModel):
    model_config = ConfigDict(frozen=True)

    cost: float
    time_seconds: int


class GenerationJob(BaseModel):
    """GenerationJob represents one try-on request with lifecycle status tracking."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    status: JobStatus = JobStatus.QUEUED
    stage: Optional[JobStage] = None
    progress: int = Field(default=0, ge=0, le=100)
    attempt: int = Field(default=0, ge=0)
    max_attempts: int = Field(ge=1)
    quality_tier: QualityTier
    settings: QualitySettings
    inputs: tuple[ReferenceImage, ...]
    parameters: GenerationParameters
    estimate: Optional[CostEstimate] = None
    composited_payload: Optional[bytes] = None
    attempt_cost: float = Field(default=0.0, ge=0)
    characteristics: dict[ImageRole, list[ImageCharacteristics]] = Field(default_factory=dict)
    provider_job_ref: Optional[ProviderJobRef] = None
    result: Optional[JobResult] = None
    error: Optional[JobError] = None
    history: list[AttemptRecord] = Field(default_factory=list)
    stage_log: list[JobStage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_cost(self) -> float:
        """Provider spend so far, summed over recorded attempts."""
        return float(sum((Decimal(str(record.cost)) for record in self.history), Decimal("0")))

    @property
    def can_retry(self) -> bool:
        """Whether another attempt fits the attempt budget and the cost limit."""
        if not self.settings.enable_retry or self.attempt >= self.max_attempts:
            return False
        if self.settings.cost_limit is None:
            return True
        projected = Decimal(str(self.total_cost)) + Decimal(str(self.attempt_cost))
        return projected <= Decimal(str(self.settings.cost_limit))

    def _require_stage(self, *stages: JobStage) -> None:
        if self.status != JobStatus.RUNNING or self.stage not in stages:
            current = self.stage.value if self.stage else self.status.value
            expected = " or ".join(stage.value for stage in stages)
            raise InvalidStateTransition(
                f"Cannot leave {current}. Job must be in {expected} stage."
            )

    def _enter(self, stage: JobStage) -> None:
        self.stage = stage
        self.stage_log.append(stage)
        if stage in STAGE_INDEX:
            self.progress = max(self.progress, STAGE_INDEX[stage] * STAGE_BAND_WIDTH)

    def mark_analyzing(self) -> None:
        """Transition from queued to analyzing; starts attempt 1.

        Raises:
            InvalidStateTransition: If current status is not queued
        """
        if self.status != JobStatus.QUEUED:
            raise InvalidStateTransition(
                f"Cannot start from {self.status.value}. Job must be in queued state."
            )
        self.status = JobStatus.RUNNING
        self.attempt = 1
        self.progress = 0
        self._enter(JobStage.ANALYZING)

    def mark_generating_model(self) -> None:
        """Transition from analyzing (first attempt) or retrying (next attempt).

        Coming from retrying starts a new attempt: ``attempt`` is incremented
        and progress resets to the generating_model floor.

        Raises:
            InvalidStateTransition: If current stage is not analyzing/retrying
        """
        self._require_stage(JobStage.ANALYZING, JobStage.RETRYING)
        if self.stage == JobStage.RETRYING:
            self.attempt += 1
            self.progress = STAGE_INDEX[JobStage.GENERATING_MODEL] * STAGE_BAND_WIDTH
        self._enter(JobStage.GENERATING_MODEL)

    def mark_applying_product(self) -> None:
        self._require_stage(JobStage.GENERATING_MODEL)
        self._enter(JobStage.APPLYING_PRODUCT)

    def mark_validating(self) -> None:
        self._require_stage(JobStage.APPLYING_PRODUCT)
        self._enter(JobStage.VALIDATING)

    def mark_retrying(self, parameters: GenerationParameters) -> None:
        """Transition from validating to retrying with perturbed parameters.

        Raises:
            InvalidStateTransition: If not validating, retry is disabled,
                the attempt budget is exhausted or the cost limit would be passed
        """
        self._require_stage(JobStage.VALIDATING)
        if not self.can_retry:
            raise InvalidStateTransition(
                f"Cannot retry attempt {self.attempt} of {self.max_attempts}. "
                "Attempt or cost budget is exhausted."
            )
        self.parameters = parameters
        self.provider_job_ref = None
        self._enter(JobStage.RETRYING)

    def mark_completed(self, result: JobResult) -> None:
        self._require_stage(JobStage.VALIDATING)
        self.result = result
        self.status = JobStatus.COMPLETED
        self.stage = None
        self.progress = 100
        self.provider_job_ref = None
        self.completed_at = datetime.now(timezone.utc)

    def mark_failed(self, error: JobError) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.error = error
        self.status = JobStatus.FAILED
        self.stage = None
        self.provider_job_ref = None
        self.completed_at = datetime.now(timezone.utc)

    def mark_cancelled(self) -> bool:
        """Transition from any non-terminal state to cancelled.

        Idempotent: returns False without changes when already terminal.
        """
        if self.is_terminal:
            return False
        self.status = JobStatus.CANCELLED
        self.stage = None
        self.provider_job_ref = None
        self.completed_at = datetime.now(timezone.utc)
        return True

    def report_stage_progress(self, percent: float) -> None:
        """Map a 0-100 stage-local percentage into the current stage's band."""
        if self.status != JobStatus.RUNNING or self.stage not in STAGE_INDEX:
            return
        percent = min(max(percent, 0.0), 100.0)
        floor = STAGE_INDEX[self.stage] * STAGE_BAND_WIDTH
        value = floor + int(percent * STAGE_BAND_WIDTH / 100)
        self.progress = min(100, max(self.progress, value))

    def record_attempt(self, success: bool, quality_score: Optional[float], duration_ms: int) -> None:
        self.history.append(
            AttemptRecord(
                attempt=self.attempt,
                success=success,
                quality_score=quality_score,
                duration_ms=duration_ms,
                cost=self.attempt_cost,
            )
        )


class GenerationJobView(BaseModel):
    """Read-only snapshot returned to callers (no raw image bytes)."""

    id: str
    status: JobStatus
    stage: Optional[JobStage]
    progress: int
    attempt: int
    max_attempts: int
    quality_tier: QualityTier
    input_names: list[str]
    has_composite: bool
    provider_job_id: Optional[str]
    result: Optional[JobResult]
    error: Optional[JobError]
    history: list[AttemptRecord]
    stage_log: list[JobStage]
    estimated_cost: Optional[float]
    estimated_time_seconds: Optional[int]
    spent_cost: float
    eta_seconds: Optional[int]
    created_at: datetime
    completed_at: Optional[datetime]

    @classmethod
    def from_job(cls, job: GenerationJob, eta_seconds: Optional[int] = None) -> "GenerationJobView":
        return cls(
            id=job.id,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            quality_tier=job.quality_tier,
            input_names=[image.name for image in job.inputs],
            has_composite=job.composited_payload is not None,
            provider_job_id=job.provider_job_ref.id if job.provider_job_ref else None,
            result=job.result.model_copy(deep=True) if job.result else None,
            error=job.error.model_copy() if job.error else None,
            history=list(job.history),
            stage_log=list(job.stage_log),
            estimated_cost=job.estimate.cost if job.estimate else None,
            estimated_time_seconds=job.estimate.time_seconds if job.estimate else None,
            spent_cost=job.total_cost,
            eta_seconds=eta_seconds,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


class CancelAck(BaseModel):
    """Acknowledgement of a cancel request.

    ``cancelled`` is True only for the call that moved the job to cancelled.
    """

    job_id: str
    status: JobStatus
    cancelled: bool
