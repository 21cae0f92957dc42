from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class OperationState(str, Enum):
    running = "running"
    complete = "complete"
    error = "error"


class BackoffMode(str, Enum):
    fixed = "fixed"
    exponential = "exponential"


class PollState(str, Enum):
    initiated = "initiated"
    waiting = "waiting"
    fetching = "fetching"
    completed = "completed"
    failed = "failed"
    timed_out = "timed_out"
    attempts_exceeded = "attempts_exceeded"
    cancelled = "cancelled"


class ExecutionStatus(str, Enum):
    new = "new"
    running = "running"
    success = "success"
    error = "error"
    canceled = "canceled"
    waiting = "waiting"
    crashed = "crashed"
    unknown = "unknown"


class OperationHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status_location: Optional[str] = None


class PollingConfig(BaseModel):
    """Polling behaviour for one session. All durations are in seconds."""

    model_config = ConfigDict(frozen=True)

    base_interval: float = Field(default=2.0, gt=0)
    timeout: float = Field(default=60.0, gt=0)
    max_attempts: Optional[int] = Field(default=30, ge=1)
    backoff_mode: BackoffMode = BackoffMode.fixed
    max_interval: float = Field(default=30.0, gt=0)
    status_endpoint: Optional[str] = None


EXECUTION_POLLING_DEFAULTS = PollingConfig(
    base_interval=1.0,
    timeout=300.0,
    max_attempts=None,
    max_interval=10.0,
)


class StatusRecord(BaseModel):
    state: OperationState
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    result: Any = None
    error_message: Optional[str] = None
    details: Optional[dict] = None

    @model_validator(mode="after")
    def _check_payload_matches_state(self) -> "StatusRecord":
        if self.state != OperationState.complete and self.result is not None:
            raise ValueError(f"result is only meaningful when complete, got {self.state}")
        if self.state != OperationState.error and self.error_message is not None:
            raise ValueError(f"error_message is only meaningful on error, got {self.state}")
        return self


class PollSession(BaseModel):
    """Mutable state of one polling loop. Owned by the Poller that made it."""

    handle: OperationHandle
    config: PollingConfig
    started_at: float
    attempt: int = 0
    state: PollState = PollState.initiated
    cancelled: bool = False


class PersistedHandle(BaseModel):
    handle: OperationHandle
    state: OperationState = OperationState.running
    timestamp: float


class PollResult(BaseModel):
    result: Any = None
    attempts: int
    elapsed_time: float
    handle: Optional[OperationHandle] = None


class Immediate(BaseModel):
    result: Any = None


class Pending(BaseModel):
    handle: OperationHandle
    status: StatusRecord


Invocation = Union[Immediate, Pending]


class BinaryResponse(BaseModel):
    content: bytes
    content_type: str
    filename: Optional[str] = None


class Execution(BaseModel):
    """An execution resource as returned by ``GET /api/v1/executions/{id}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    finished: bool = False
    mode: Optional[str] = None
    status: ExecutionStatus
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    stopped_at: Optional[datetime] = Field(default=None, alias="stoppedAt")
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    workflow_name: Optional[str] = Field(default=None, alias="workflowName")
    data: Optional[dict] = None
    custom_data: Any = Field(default=None, alias="customData")
    workflow_data: Optional[dict] = Field(default=None, alias="workflowData")

    @field_validator("id", "workflow_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _unrecognised_status(cls, value: Any) -> Any:
        # Unrecognised statuses are polled on like running ones
        if isinstance(value, str) and value not in {status.value for status in ExecutionStatus}:
            return ExecutionStatus.unknown
        return value

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.stopped_at is None:
            return None
        return (self.stopped_at - self.started_at).total_seconds()

    @property
    def has_custom_data(self) -> bool:
        return "custom_data" in self.model_fields_set
