from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from study_job_client.errors import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    generation = "generation"
    text_extraction = "text_extraction"
    topic_extraction = "topic_extraction"


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    timed_out = "timed_out"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.completed, JobStatus.failed, JobStatus.timed_out, JobStatus.cancelled}
)

# Statuses a backend may report for a running operation
OBSERVABLE_STATUSES = frozenset(
    {JobStatus.pending, JobStatus.processing, JobStatus.completed, JobStatus.failed}
)

_LEGAL_TRANSITIONS = {
    JobStatus.pending: frozenset({JobStatus.processing}) | TERMINAL_STATUSES,
    JobStatus.processing: frozenset({JobStatus.processing}) | TERMINAL_STATUSES,
}


class GenerationMode(str, Enum):
    flashcards = "flashcards"
    quiz = "quiz"


class Difficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class JobEventType(str, Enum):
    started = "started"
    progress = "progress"
    settled = "settled"
    failed = "failed"
    timed_out = "timed_out"
    cancelled = "cancelled"
    resolved = "resolved"
    resolution_failed = "resolution_failed"


class Observation(BaseModel):
    """One reading of a remote operation's state."""

    status: JobStatus
    metric: Optional[float] = None
    result: Any = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_status(self) -> "Observation":
        if self.status not in OBSERVABLE_STATUSES:
            raise ValueError(f"Backends cannot report status {self.status.value!r}")
        return self


class SubmissionReceipt(BaseModel):
    id: str
    status: JobStatus = JobStatus.pending
    baseline_metric: Optional[float] = None


class QuotaSnapshot(BaseModel):
    available: int
    plan: Optional[str] = None


class JobHandle(BaseModel):
    """Client-side view of one remote long-running operation."""

    id: str = Field(frozen=True)
    kind: JobKind = Field(frozen=True)
    status: JobStatus = JobStatus.pending
    attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    last_polled_at: Optional[datetime] = None
    resource_id: Optional[str] = None
    baseline_metric: Optional[float] = None
    result: Any = None
    error: Optional[str] = None
    last_observation: Optional[Observation] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: JobStatus) -> None:
        """Move to ``status``, refusing regressions and exits from terminal states."""
        allowed = _LEGAL_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(self.id, self.status.value, status.value)
        self.status = status


class AdmissionDecision(BaseModel):
    allowed: bool
    required_units: int
    available_units: Optional[int] = None
    reason: Optional[str] = None
    from_cache: bool = False


class PollingPolicy(BaseModel):
    interval_ms: int = Field(default=5000, ge=0)
    max_attempts: int = Field(default=60, ge=1)
    initial_delay_ms: Optional[int] = Field(default=None, ge=0)
    required_stable_reads: int = Field(default=1, ge=1)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_interval_ms: Optional[int] = Field(default=None, ge=0)
    jitter: bool = False

    @property
    def first_delay_ms(self) -> int:
        if self.initial_delay_ms is None:
            return self.interval_ms
        return self.initial_delay_ms


class GenerationOptions(BaseModel):
    count: int = Field(default=10, ge=1, le=50)
    difficulty: Difficulty = Difficulty.medium
    subject: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    study_set_id: Optional[str] = None
    topic_ids: List[str] = Field(default_factory=list)


class GenerationPayload(BaseModel):
    mode: GenerationMode = GenerationMode.flashcards
    content: str = ""
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    upload_id: Optional[str] = None


class TextExtractionPayload(BaseModel):
    upload_id: str = Field(min_length=1)


class TopicExtractionPayload(BaseModel):
    study_set_id: str = Field(min_length=1)


class Artifact(BaseModel):
    kind: JobKind
    handle_id: str
    data: Any = None
    metric: Optional[float] = None


class JobEvent(BaseModel):
    type: JobEventType
    kind: JobKind
    handle_id: Optional[str] = None
    status: Optional[JobStatus] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
