"""
Domain models for jobport — backed by Pydantic v2.

All models are frozen (immutable). Mutations return new instances via
model_copy(update=...), following a functional-update style.

`Job.data` and `Job.metadata` are opaque: nothing in the core inspects them.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Lifecycle states for a job. `paused` is a queue flag, not a job state."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(BaseModel):
    """
    A single unit of work.

    id            — unique per queue, assigned at add time
    name          — logical job name used by handlers for routing
    queue_name    — owning queue
    data          — opaque user payload
    attempts      — processing attempts so far
    max_attempts  — attempt budget, including the first attempt
    priority      — higher value = dispatched sooner (None = 0)
    scheduled_for — earliest time the job may become active
    created_at / processed_at / completed_at / failed_at
                  — set exactly once, by the adapter, at the transition
    metadata      — free-form map, round-tripped verbatim
    error         — last failure message (None until a failure)
    result        — value produced by a successful handler
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    queue_name: str
    data: Any = None
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    max_attempts: int = 1
    priority: int | None = None
    scheduled_for: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    result: Any = None

    # ------------------------------------------------------------------ #
    # Queries                                                              #
    # ------------------------------------------------------------------ #

    @property
    def effective_priority(self) -> int:
        return self.priority or 0

    def is_ready(self, now: datetime) -> bool:
        """True when the job is waiting/delayed and its schedule has passed."""
        if self.status not in (JobStatus.WAITING, JobStatus.DELAYED):
            return False
        return self.scheduled_for is None or self.scheduled_for <= now

    # ------------------------------------------------------------------ #
    # Transitions — each returns a new Job                                 #
    # ------------------------------------------------------------------ #

    def with_status(self, status: JobStatus) -> Job:
        return self.model_copy(update={"status": status})

    def mark_active(self, at: datetime) -> Job:
        """Check the job out: one more attempt, processed_at stamped once."""
        return self.model_copy(
            update={
                "status": JobStatus.ACTIVE,
                "attempts": self.attempts + 1,
                "processed_at": self.processed_at or at,
            }
        )

    def mark_completed(self, at: datetime, result: Any = None) -> Job:
        return self.model_copy(
            update={
                "status": JobStatus.COMPLETED,
                "completed_at": self.completed_at or at,
                "result": result,
            }
        )

    def mark_failed(self, at: datetime, error: str | None) -> Job:
        return self.model_copy(
            update={
                "status": JobStatus.FAILED,
                "failed_at": self.failed_at or at,
                "error": error,
            }
        )

    def mark_retry(self, ready_at: datetime, now: datetime, error: str | None) -> Job:
        """Return the job to the pool; DELAYED when ready_at is in the future."""
        delayed = ready_at > now
        return self.model_copy(
            update={
                "status": JobStatus.DELAYED if delayed else JobStatus.WAITING,
                "scheduled_for": ready_at if delayed else None,
                "error": error,
            }
        )

    def requeued(self) -> Job:
        """Return a failed (dead-lettered) job to WAITING with a fresh attempt budget."""
        return self.model_copy(
            update={
                "status": JobStatus.WAITING,
                "attempts": 0,
                "scheduled_for": None,
                "failed_at": None,
                "error": None,
            }
        )

    def to_active(self, token: Any) -> ActiveJob:
        return ActiveJob(**self._fields(), provider_metadata=token)

    def _fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in Job.model_fields}


class ActiveJob(Job):
    """
    A Job checked out to a worker.

    provider_metadata is the adapter's lease token. It is excluded from
    serialization and only meaningful to the adapter instance that issued it.
    """

    provider_metadata: Any = Field(default=None, exclude=True, repr=False)

    def as_job(self) -> Job:
        return Job(**self._fields())


class BackoffPolicy(BaseModel):
    """Delay before a retried job becomes ready again."""

    model_config = ConfigDict(frozen=True)

    type: Literal["fixed", "exponential"] = "exponential"
    delay: float = 1.0

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait after the `attempts`-th failed attempt."""
        if self.type == "fixed":
            return self.delay
        return self.delay * 2 ** max(attempts - 1, 0)


class ProviderOptions(BaseModel):
    """
    Backend-specific tuning.

    Deliberately has no job_id / attempts / delay fields: identity-affecting
    options can only come from JobOptions. `remove_on_complete` is the one
    retention field that may be refined here. `native` is passed to the
    backend as-is, below the identity fields.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    remove_on_complete: bool | int | None = None
    backoff: BackoffPolicy | None = None
    native: dict[str, Any] = Field(default_factory=dict)


JobIdGenerator = Callable[[], str]


class JobOptions(BaseModel):
    """
    Per-call (or per-queue default) options for add().

    job_id             — explicit id, or a zero-argument generator
    attempts           — attempt budget (>= 1)
    delay              — seconds before the job becomes ready
    scheduled_for      — absolute alternative to delay
    priority           — higher = sooner, must be >= 0
    remove_on_complete — True: delete on completion; int N: keep last N
    remove_on_fail     — True: delete on terminal failure; int N: keep last N
    metadata           — opaque map stored alongside the job
    provider_options   — backend escape hatch (see ProviderOptions)
    """

    model_config = ConfigDict(frozen=True)

    job_id: str | JobIdGenerator | None = None
    attempts: int | None = None
    delay: float | None = None
    scheduled_for: datetime | None = None
    priority: int | None = None
    remove_on_complete: bool | int = False
    remove_on_fail: bool | int = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    provider_options: ProviderOptions | None = None

    def merged_over(self, defaults: JobOptions) -> JobOptions:
        """Overlay the fields explicitly set on self onto `defaults`."""
        update = {name: getattr(self, name) for name in self.model_fields_set}
        if "metadata" in update:
            update["metadata"] = {**defaults.metadata, **self.metadata}
        return defaults.model_copy(update=update)


class ProviderCapabilities(BaseModel):
    """Static description of what an adapter supports. Fixed per adapter instance."""

    model_config = ConfigDict(frozen=True)

    supports_delayed_jobs: bool = False
    supports_priority: bool = False
    supports_retries: bool = False
    supports_dlq: bool = False
    supports_batching: bool = False
    supports_long_polling: bool = False
    max_job_size: int | None = None
    max_batch_size: int | None = None
    max_delay_seconds: float | None = None


class QueueStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    queue_name: str
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False

    @property
    def total(self) -> int:
        return self.waiting + self.delayed + self.active + self.completed + self.failed


class HealthStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_healthy: bool
    is_paused: bool = False
    active_workers: int = 0
    queue_depth: int = 0
    error_rate: float = 0.0

    @staticmethod
    def rate(failed: int, completed: int) -> float:
        finished = failed + completed
        return failed / finished if finished else 0.0


class NackOutcome(BaseModel):
    """The adapter's retry decision for a failed attempt. Authoritative."""

    model_config = ConfigDict(frozen=True)

    will_retry: bool
    attempts: int
    max_attempts: int
    next_attempt_at: datetime | None = None
