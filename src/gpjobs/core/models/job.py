from __future__ import annotations

from datetime import date, datetime, timezone
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator

InputValue = Union[str, int, float, bool, date, datetime]


class ExecutionMode(StrEnum):
    synchronous = "synchronous"
    asynchronous_submit = "asynchronous_submit"


class JobStatus(StrEnum):
    created = "created"
    submitting = "submitting"
    paused = "paused"
    started = "started"
    succeeded = "succeeded"
    failed = "failed"
    canceling_requested = "canceling_requested"
    canceled = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.succeeded, JobStatus.failed, JobStatus.canceled})

# Statuses a job may be in while the remote service is working on it.
IN_FLIGHT_STATUSES = frozenset({JobStatus.started, JobStatus.paused})


class FailureKind(StrEnum):
    submission = "submission"
    service = "service"
    communication = "communication"
    result_unavailable = "result_unavailable"


class JobParameters(BaseModel):
    """Caller supplied inputs for one remote job.

    Immutable after construction; `inputs` is exposed as a read-only mapping.
    Use `with_input` to derive a modified copy.
    """

    execution_mode: ExecutionMode = ExecutionMode.asynchronous_submit
    inputs: Mapping[str, InputValue] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("inputs", mode="after")
    @classmethod
    def _freeze_inputs(cls, value: Mapping[str, InputValue]) -> Mapping[str, InputValue]:
        for key in value:
            if not isinstance(key, str) or not key.strip():
                raise ValueError("input names must be non-empty strings")
        return MappingProxyType(dict(value))

    @field_serializer("inputs")
    def _serialize_inputs(self, value: Mapping[str, InputValue]) -> Dict[str, Any]:
        return dict(value)

    def __hash__(self) -> int:
        return hash((self.execution_mode, tuple(sorted(self.inputs.items()))))

    def with_input(self, name: str, value: InputValue) -> "JobParameters":
        merged = dict(self.inputs)
        merged[name] = value
        return JobParameters(execution_mode=self.execution_mode, inputs=merged)

    def to_wire_inputs(self) -> Dict[str, Any]:
        """Inputs with dates rendered as ISO strings, ready for a JSON body."""
        wire: Dict[str, Any] = {}
        for key, value in self.inputs.items():
            if isinstance(value, (date, datetime)):
                wire[key] = value.isoformat()
            else:
                wire[key] = value
        return wire


class Extent(BaseModel):
    xmin: float
    ymin: float
    xmax: float
    ymax: float
    wkid: Optional[int] = None

    model_config = {"frozen": True}


class ResultPayload(BaseModel):
    """Opaque result reference handed back to the presentation layer.

    `layer_url` points at something renderable (e.g. a map image layer);
    the controller never interprets it.
    """

    layer_url: str
    extent: Optional[Extent] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class JobHandle(BaseModel):
    job_id: str
    status_url: Optional[str] = None
    results_url: Optional[str] = None
    # Synchronous executions may answer with outputs right away.
    immediate_result: Optional[ResultPayload] = None

    model_config = {"frozen": True}


class StatusSnapshot(BaseModel):
    status: JobStatus
    latest_message: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[int] = Field(None, ge=0, le=100)

    model_config = {"frozen": True}


class JobFailure(BaseModel):
    kind: FailureKind
    message: str = Field(min_length=1)
    diagnostic: Optional[str] = None

    model_config = {"frozen": True}


class JobSnapshot(BaseModel):
    """Read-only view of a job handed to observers."""

    id: Optional[str] = None
    status: JobStatus
    messages: tuple[str, ...] = ()
    error: Optional[JobFailure] = None
    result: Optional[ResultPayload] = None
    created: datetime
    updated: Optional[datetime] = None
    version: int = 0

    model_config = {"frozen": True}

    @property
    def latest_message(self) -> Optional[str]:
        return self.messages[-1] if self.messages else None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Job(BaseModel):
    """Controller-owned job state.

    Notes:
    - `id` is the remote service's handle; it stays None until submission succeeds.
    - `messages` is append-only; the last element is the most recent service message.
    - `error` is only set in `failed`, `result` only in `succeeded`. `canceled` carries neither.
    - `version` is bumped on every status transition and doubles as a sequence number
      for observers.
    """

    id: Optional[str] = None
    status: JobStatus = JobStatus.created
    messages: List[str] = Field(default_factory=list)
    error: Optional[JobFailure] = None
    result: Optional[ResultPayload] = None

    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated: Optional[datetime] = None
    version: int = 0

    def touch(self) -> None:
        self.updated = datetime.now(timezone.utc)

    def append_message(self, message: Optional[str]) -> bool:
        """Record a service message unless it repeats the latest one."""
        if not message:
            return False
        if self.messages and self.messages[-1] == message:
            return False
        self.messages.append(message)
        self.touch()
        return True

    def is_in_terminal_state(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            status=self.status,
            messages=tuple(self.messages),
            error=self.error,
            result=self.result,
            created=self.created,
            updated=self.updated,
            version=self.version,
        )


class JobOutcome(BaseModel):
    """Terminal result of a job: exactly one of `result`/`error` for succeeded/failed."""

    status: JobStatus
    job_id: Optional[str] = None
    result: Optional[ResultPayload] = None
    error: Optional[JobFailure] = None

    model_config = {"frozen": True}

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.succeeded

    @property
    def failed(self) -> bool:
        return self.status == JobStatus.failed

    @property
    def canceled(self) -> bool:
        return self.status == JobStatus.canceled

    def unwrap(self) -> ResultPayload:
        """Return the result or raise the error matching the terminal state."""
        # Local import: exceptions module depends on this one.
        from gpjobs.core.exceptions import JobCanceledError, error_from_failure

        if self.succeeded and self.result is not None:
            return self.result
        if self.canceled:
            raise JobCanceledError("Job was canceled", job_id=self.job_id)
        if self.error is not None:
            raise error_from_failure(self.error, job_id=self.job_id)
        raise JobCanceledError(f"Job ended without result (status={self.status})", job_id=self.job_id)

    @classmethod
    def from_job(cls, job: Job) -> "JobOutcome":
        return cls(status=job.status, job_id=job.id, result=job.result, error=job.error)
