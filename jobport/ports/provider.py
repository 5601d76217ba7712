"""
Provider ports — the contract every backend adapter implements.

Any object satisfying these structural Protocols can act as a backend. No
base class or registration is required.

ProviderFactory
    for_queue(name) -> QueueProvider    one bound provider per queue name

QueueProvider (every adapter)
    connect / disconnect                reference-counted, surplus release is a no-op
    add / add_bulk / get_job
    pause / resume                      backend intake AND local loops
    delete                              destructive, irreversible
    get_stats / get_health              never raise; Err = backend unreachable

PullProvider (pull-delivery adapters)
    fetch(count, wait_time)             atomic per job
    ack(job, result)                    consume-once
    nack(job, error) -> NackOutcome     adapter owns the retry decision

PushProvider (push-delivery adapters)
    process(handler, options) -> Processor

DeadLetterProvider (capability-gated)
    get_dlq_jobs(limit)                 requires supports_dlq
    retry_job(job_id)                   requires supports_retries

Every operation returns Result[T, QueueError]; adapters classify failures
with the error mapper before returning them.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol, runtime_checkable

from jobport.domain.errors import QueueError
from jobport.domain.models import (
    ActiveJob,
    HealthStatus,
    Job,
    JobOptions,
    NackOutcome,
    ProviderCapabilities,
    QueueStats,
)
from jobport.domain.result import Result

ProviderHandler = Callable[[ActiveJob], Awaitable[Any]]


@dataclasses.dataclass(frozen=True)
class ProcessOptions:
    """
    Push-mode configuration.

    concurrency  : maximum number of handler invocations in flight
    on_completed : called after the adapter finalized a successful job
    on_failed    : called with the adapter's retry decision after a handler failure
    on_error     : backend-originated failures of the dispatch loop itself
    on_drained   : called when the queue runs out of ready jobs
    """

    concurrency: int = 1
    on_completed: Callable[[ActiveJob, Any], None] | None = None
    on_failed: Callable[[ActiveJob, QueueError, NackOutcome], None] | None = None
    on_error: Callable[[QueueError], None] | None = None
    on_drained: Callable[[], None] | None = None


@runtime_checkable
class Processor(Protocol):
    """Handle returned by PushProvider.process()."""

    @property
    def in_flight(self) -> int: ...

    @property
    def cancelled(self) -> int:
        """Handlers cancelled by shutdown() because they outlived its timeout."""
        ...

    async def shutdown(self, timeout: float = 30.0) -> bool:
        """
        Stop intake, drain in-flight handlers, release resources.

        Idempotent. Returns True when the drain finished within `timeout`;
        False when stragglers had to be cancelled.
        """
        ...


@runtime_checkable
class QueueProvider(Protocol):
    """Operations every adapter implements, bound to one queue name."""

    @property
    def queue_name(self) -> str: ...

    @property
    def capabilities(self) -> ProviderCapabilities: ...

    async def connect(self) -> Result[None, QueueError]:
        """Take a connection. Every connect() is paired with one disconnect()."""
        ...

    async def disconnect(self) -> Result[None, QueueError]:
        """Release a connection; teardown happens when the last one is released."""
        ...

    async def add(self, job: Job, options: JobOptions) -> Result[Job, QueueError]:
        """Translate `job` to backend form and store it. Per-call options beat adapter defaults."""
        ...

    async def add_bulk(
        self, entries: Sequence[tuple[Job, JobOptions]]
    ) -> Result[list[Job], QueueError]: ...

    async def get_job(self, job_id: str) -> Result[Job | None, QueueError]:
        """Ok(None) — not an error — when the job does not exist."""
        ...

    async def pause(self) -> Result[None, QueueError]: ...

    async def resume(self) -> Result[None, QueueError]: ...

    async def delete(self) -> Result[None, QueueError]: ...

    async def get_stats(self) -> Result[QueueStats, QueueError]: ...

    async def get_health(self) -> Result[HealthStatus, QueueError]: ...


@runtime_checkable
class PullProvider(QueueProvider, Protocol):
    async def fetch(
        self, count: int, wait_time: float | None = None
    ) -> Result[list[ActiveJob], QueueError]:
        """
        Check out up to `count` ready jobs.

        Never returns the same job to two callers. Returns fewer (possibly
        zero) jobs when the pool is exhausted; only long-polling adapters
        may wait, and never longer than min(wait_time, adapter timeout).
        """
        ...

    async def ack(self, job: ActiveJob, result: Any = None) -> Result[None, QueueError]:
        """Finalize success. A finalized or foreign token yields NotFoundError."""
        ...

    async def nack(
        self, job: ActiveJob, error: QueueError
    ) -> Result[NackOutcome, QueueError]:
        """Report failure; the adapter decides retry vs dead-letter."""
        ...


@runtime_checkable
class PushProvider(QueueProvider, Protocol):
    def process(self, handler: ProviderHandler, options: ProcessOptions) -> Processor:
        """
        Start a bounded worker pool feeding jobs to `handler`.

        Handler exceptions go to the adapter's retry engine unmodified.
        """
        ...


@runtime_checkable
class DeadLetterProvider(QueueProvider, Protocol):
    async def get_dlq_jobs(self, limit: int = 100) -> Result[list[Job], QueueError]: ...

    async def retry_job(self, job_id: str) -> Result[Job, QueueError]: ...


@runtime_checkable
class ProviderFactory(Protocol):
    def for_queue(self, queue_name: str) -> QueueProvider: ...
