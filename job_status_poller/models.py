from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobStatus(str, Enum):
    queued = "queued"
    started = "started"
    running = "running"
    completed = "completed"
    failed = "failed"
    unknown = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


class Job(BaseModel):
    """A backend job as reported by ``GET /jobs/{id}``.

    Status strings outside the known set parse to ``JobStatus.unknown`` and the
    original value is kept in ``raw_status``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: Optional[str] = None
    status: JobStatus
    raw_status: str = ""
    progress: int = 0
    total_steps: Optional[int] = Field(default=None, alias="totalSteps")
    current_step: Optional[int] = Field(default=None, alias="currentStep")
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    error: Optional[str] = None
    results: Any = None

    @model_validator(mode="before")
    @classmethod
    def _close_status(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "status" in data:
            status = data["status"]
            raw = status.value if isinstance(status, Enum) else str(status)
            data.setdefault("raw_status", raw)
            known = {s.value for s in JobStatus} - {JobStatus.unknown.value}
            data["status"] = raw if raw in known else JobStatus.unknown.value
        if data.get("metadata") is None:
            data["metadata"] = {}
        return data


class PollingConfig(BaseModel):
    base_delay_ms: float = Field(default=2000, gt=0)
    request_timeout_ms: float = Field(default=10000, gt=0)
    max_failures: int = Field(default=3, ge=1)

    # 429: Retry-After if given, else max(delay * multiplier, floor)
    rate_limit_multiplier: float = 3
    rate_limit_floor_ms: float = 30000
    rate_limit_max_ms: float = 120000

    # 503
    overload_multiplier: float = 4
    overload_max_ms: float = 180000

    # other non-2xx
    error_multiplier: float = 1.5
    error_max_ms: float = 10000

    # timeouts and connection failures
    network_multiplier: float = 2
    network_max_ms: float = 15000


class TerminationReason(str, Enum):
    completed = "completed"
    job_failed = "job_failed"
    not_found = "not_found"
    exhausted_retries = "exhausted_retries"
    detached = "detached"


class PollerState(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    failure_count: int = 0
    current_delay_ms: float = 2000
    is_valid_job: bool = True
    termination: Optional[TerminationReason] = None
    message: str = ""
    retrying: bool = False

    @classmethod
    def initial(cls, job_id: str, config: PollingConfig) -> "PollerState":
        return cls(job_id=job_id, current_delay_ms=config.base_delay_ms)

    @property
    def is_terminal(self) -> bool:
        return self.termination is not None


class HttpOutcome(BaseModel):
    status_code: int
    job: Optional[Job] = None
    retry_after: Optional[str] = None


class TimeoutOutcome(BaseModel):
    detail: str = ""


class NetworkOutcome(BaseModel):
    detail: str = ""


PollOutcome = Union[HttpOutcome, TimeoutOutcome, NetworkOutcome]


class CompletionPayload(BaseModel):
    message: Optional[str] = None
    results: Any = None


class ScheduleAfter(BaseModel):
    delay_ms: float


class InvokeCallback(BaseModel):
    payload: CompletionPayload


class Terminate(BaseModel):
    reason: TerminationReason
    message: str = ""


PollAction = Union[ScheduleAfter, InvokeCallback, Terminate]


class Transition(BaseModel):
    state: PollerState
    actions: List[PollAction] = Field(default_factory=list)


class PollResult(BaseModel):
    job_id: str
    reason: TerminationReason
    message: str = ""
    job: Optional[Job] = None
    requests: int = 0
