"""
Queue event map — the closed set of lifecycle notifications and their payloads.

Every event name maps to exactly one payload model (EVENT_PAYLOADS). The
event channel refuses to emit a payload of the wrong type.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jobport.domain.errors import QueueError
from jobport.domain.models import utcnow


class QueueEvent(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    JOB_RETRYING = "job.retrying"
    PROCESSOR_SHUTTING_DOWN = "processor.shutting_down"
    PROCESSOR_SHUTDOWN_TIMEOUT = "processor.shutdown_timeout"
    QUEUE_ERROR = "queue.error"
    QUEUE_DRAINED = "queue.drained"
    QUEUE_PAUSED = "queue.paused"
    QUEUE_RESUMED = "queue.resumed"


class ErrorInfo(BaseModel):
    """Serializable projection of a QueueError."""

    model_config = ConfigDict(frozen=True)

    kind: str
    code: str
    message: str
    retryable: bool = False

    @classmethod
    def from_error(cls, error: QueueError) -> ErrorInfo:
        return cls(
            kind=error.kind.value,
            code=error.code.value,
            message=error.message,
            retryable=error.retryable,
        )


class EventPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    queue_name: str
    timestamp: datetime = Field(default_factory=utcnow)


class JobActivePayload(EventPayload):
    job_id: str
    attempts: int
    max_attempts: int


class JobCompletedPayload(EventPayload):
    job_id: str
    attempts: int
    duration: float
    result: Any = None


class JobFailedPayload(EventPayload):
    job_id: str
    attempts: int
    max_attempts: int
    duration: float
    error: ErrorInfo
    will_retry: bool


class JobRetryingPayload(EventPayload):
    job_id: str
    attempts: int
    max_attempts: int
    error: ErrorInfo
    will_retry: bool = True
    next_attempt_at: datetime | None = None


class ShuttingDownPayload(EventPayload):
    active_jobs: int


class ShutdownTimeoutPayload(EventPayload):
    timeout: float
    pending_jobs: int


class QueueErrorPayload(EventPayload):
    error: ErrorInfo
    source_event: str | None = None
    job_id: str | None = None


class QueueDrainedPayload(EventPayload):
    pass


class QueuePausedPayload(EventPayload):
    pass


class QueueResumedPayload(EventPayload):
    pass


EVENT_PAYLOADS: dict[QueueEvent, type[EventPayload]] = {
    QueueEvent.ACTIVE: JobActivePayload,
    QueueEvent.COMPLETED: JobCompletedPayload,
    QueueEvent.FAILED: JobFailedPayload,
    QueueEvent.JOB_RETRYING: JobRetryingPayload,
    QueueEvent.PROCESSOR_SHUTTING_DOWN: ShuttingDownPayload,
    QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT: ShutdownTimeoutPayload,
    QueueEvent.QUEUE_ERROR: QueueErrorPayload,
    QueueEvent.QUEUE_DRAINED: QueueDrainedPayload,
    QueueEvent.QUEUE_PAUSED: QueuePausedPayload,
    QueueEvent.QUEUE_RESUMED: QueueResumedPayload,
}
