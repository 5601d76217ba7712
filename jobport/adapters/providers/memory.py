"""
InMemoryProvider — full-featured in-process backend for tests and development.

Supports every capability: delayed jobs, priority, retries with backoff,
dead-letter listing, batching, long polling, and both delivery models
(pull via fetch/ack/nack, push via process()).

Jobs are stored the way a real backend would store them: the user payload is
wrapped in an envelope and deep-copied on the way in and out, so callers can
never mutate stored state through a returned Job.

Atomicity
---------
Everything runs on one asyncio event loop. Selecting ready jobs and assigning
their leases happens without an await in between, so concurrent fetch()
calls can never check out the same job twice.

Adapter instances
-----------------
for_queue(name) returns one cached adapter per queue name, so a Queue and a
Worker built from the same InMemoryProvider share it. attach(name) returns a
*new* adapter instance over the same stored jobs — the in-process analogue of
a second process connecting to the same backend. Lease tokens are bound to
the instance that issued them.

Zero external dependencies. NOT safe across processes or threads.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from jobport.core.envelope import unwrap_payload, wrap_payload
from jobport.core.error_mapper import ErrorMapper
from jobport.core.options import build_backend_options
from jobport.domain.errors import (
    ConfigurationError,
    JobExistsError,
    JobNotFoundError,
    LeaseError,
    QueueError,
    QueueRuntimeError,
    RuntimeCode,
)
from jobport.domain.models import (
    ActiveJob,
    BackoffPolicy,
    HealthStatus,
    Job,
    JobOptions,
    JobStatus,
    NackOutcome,
    ProviderCapabilities,
    QueueStats,
    utcnow,
)
from jobport.domain.result import Err, Ok, Result
from jobport.ports.provider import ProcessOptions, ProviderHandler

logger = logging.getLogger(__name__)

MEMORY_CAPABILITIES = ProviderCapabilities(
    supports_delayed_jobs=True,
    supports_priority=True,
    supports_retries=True,
    supports_dlq=True,
    supports_batching=True,
    supports_long_polling=True,
    max_batch_size=1000,
)

_CANCEL_GRACE: float = 1.0
_MIN_WAIT: float = 0.005


# --------------------------------------------------------------------------- #
# Shared backend state                                                          #
# --------------------------------------------------------------------------- #


class _Signal:
    """Wakes every coroutine currently waiting; notify() is synchronous."""

    def __init__(self) -> None:
        self._waiters: set[asyncio.Future[None]] = set()

    def notify(self) -> None:
        for fut in self._waiters:
            if not fut.done():
                fut.set_result(None)

    async def wait(self, timeout: float | None) -> None:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.add(fut)
        try:
            await asyncio.wait_for(fut, timeout)
        except TimeoutError:
            pass
        finally:
            self._waiters.discard(fut)


@dataclasses.dataclass(frozen=True)
class _Lease:
    instance_id: str
    token: str


@dataclasses.dataclass
class _Entry:
    """A stored job: payload-free Job, wrapped body and backend bookkeeping."""

    job: Job
    body: dict[str, Any]
    seq: int
    ready_at: datetime
    remove_on_complete: bool | int = False
    remove_on_fail: bool | int = False
    backoff: BackoffPolicy | None = None
    lease: str | None = None


@dataclasses.dataclass
class _QueueState:
    entries: dict[str, _Entry] = dataclasses.field(default_factory=dict)
    paused: bool = False
    completed_total: int = 0
    failed_total: int = 0
    signal: _Signal = dataclasses.field(default_factory=_Signal)
    _seq: itertools.count = dataclasses.field(default_factory=itertools.count)

    def next_seq(self) -> int:
        return next(self._seq)


# --------------------------------------------------------------------------- #
# Factory                                                                       #
# --------------------------------------------------------------------------- #


@dataclasses.dataclass
class InMemoryProvider:
    """
    Provider factory holding the stored jobs of every queue.

    Parameters
    ----------
    capabilities        : advertised capability flags (all enabled by default)
    backoff             : retry backoff used when a job carries none of its own
    default_job_options : adapter-level backend defaults, overridden per call
    long_poll_timeout   : upper bound for fetch(wait_time=...) in seconds
    idle_interval       : push dispatcher re-check interval when idle
    clock               : time source (UTC), injectable for tests
    """

    capabilities: ProviderCapabilities = MEMORY_CAPABILITIES
    backoff: BackoffPolicy = dataclasses.field(default_factory=BackoffPolicy)
    default_job_options: dict[str, Any] = dataclasses.field(default_factory=dict)
    long_poll_timeout: float = 5.0
    idle_interval: float = 0.5
    clock: Callable[[], datetime] = utcnow

    _queues: dict[str, _QueueState] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _providers: dict[str, InMemoryQueueProvider] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )

    def for_queue(self, queue_name: str) -> InMemoryQueueProvider:
        provider = self._providers.get(queue_name)
        if provider is None:
            provider = self.attach(queue_name)
            self._providers[queue_name] = provider
        return provider

    def attach(self, queue_name: str) -> InMemoryQueueProvider:
        """A fresh adapter instance over the same stored jobs."""
        return InMemoryQueueProvider(queue_name=queue_name, backend=self)

    def state(self, queue_name: str) -> _QueueState:
        state = self._queues.get(queue_name)
        if state is None:
            state = self._queues[queue_name] = _QueueState()
        return state

    def drop(self, queue_name: str) -> None:
        state = self._queues.pop(queue_name, None)
        if state is not None:
            state.signal.notify()


# --------------------------------------------------------------------------- #
# Bound provider                                                                #
# --------------------------------------------------------------------------- #


@dataclasses.dataclass(eq=False)
class InMemoryQueueProvider:
    """Adapter instance bound to one queue. Implements Pull, Push and DeadLetter ports."""

    queue_name: str
    backend: InMemoryProvider = dataclasses.field(repr=False)
    mapper: ErrorMapper = dataclasses.field(default_factory=ErrorMapper, repr=False)

    instance_id: str = dataclasses.field(
        default_factory=lambda: uuid.uuid4().hex, init=False
    )
    _connections: int = dataclasses.field(default=0, init=False, repr=False)
    _processors: list[_Processor] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.backend.capabilities

    @property
    def _state(self) -> _QueueState:
        return self.backend.state(self.queue_name)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    @property
    def connected(self) -> bool:
        return self._connections > 0

    async def connect(self) -> Result[None, QueueError]:
        """Take one connection. Queue and Worker on the same name share this adapter."""
        self._connections += 1
        return Ok(None)

    async def disconnect(self) -> Result[None, QueueError]:
        """Release one connection; processors are shut down with the last one."""
        if self._connections == 0:
            return Ok(None)
        self._connections -= 1
        if self._connections == 0:
            for processor in list(self._processors):
                await processor.shutdown()
        return Ok(None)

    def _require_connected(self) -> None:
        if not self.connected:
            raise ConnectionError(
                f"provider for queue {self.queue_name!r} is not connected"
            )

    # ------------------------------------------------------------------ #
    # Producer side                                                        #
    # ------------------------------------------------------------------ #

    async def add(self, job: Job, options: JobOptions) -> Result[Job, QueueError]:
        try:
            self._require_connected()
            if job.id in self._state.entries:
                raise JobExistsError(job.id)
            entry = self._insert(job, options)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        self._state.signal.notify()
        return Ok(self._materialize(entry))

    async def add_bulk(
        self, entries: Sequence[tuple[Job, JobOptions]]
    ) -> Result[list[Job], QueueError]:
        try:
            self._require_connected()
            seen: set[str] = set()
            for job, _ in entries:
                if job.id in self._state.entries or job.id in seen:
                    raise JobExistsError(job.id)
                seen.add(job.id)
            stored = [self._insert(job, options) for job, options in entries]
        except Exception as exc:
            return Err(self.mapper.map(exc))
        self._state.signal.notify()
        return Ok([self._materialize(entry) for entry in stored])

    def _insert(self, job: Job, options: JobOptions) -> _Entry:
        now = self.backend.clock()
        backend_options = build_backend_options(
            job, options, self.backend.default_job_options, now=now
        )
        ready_at = now + timedelta(seconds=backend_options["delay"])
        entry = _Entry(
            job=job.model_copy(update={"data": None, "metadata": {}}),
            body=wrap_payload(job.data, job.metadata),
            seq=self._state.next_seq(),
            ready_at=ready_at,
            remove_on_complete=backend_options["remove_on_complete"],
            remove_on_fail=backend_options["remove_on_fail"],
            backoff=backend_options.get("backoff"),
        )
        self._state.entries[job.id] = entry
        logger.debug("Stored job %r on queue %r", job.id, self.queue_name)
        return entry

    async def get_job(self, job_id: str) -> Result[Job | None, QueueError]:
        try:
            self._require_connected()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        entry = self._state.entries.get(job_id)
        return Ok(self._materialize(entry) if entry is not None else None)

    # ------------------------------------------------------------------ #
    # Pull model                                                           #
    # ------------------------------------------------------------------ #

    async def fetch(
        self, count: int, wait_time: float | None = None
    ) -> Result[list[ActiveJob], QueueError]:
        if count < 1:
            return Err(ConfigurationError(f"fetch count must be >= 1, got {count}"))
        try:
            self._require_connected()
            jobs = self._claim(count)
            if jobs or not wait_time or not self.capabilities.supports_long_polling:
                return Ok(jobs)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + min(wait_time, self.backend.long_poll_timeout)
            while not jobs:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await self._state.signal.wait(min(remaining, self._next_wakeup()))
                jobs = self._claim(count)
            return Ok(jobs)
        except Exception as exc:
            return Err(self.mapper.map(exc))

    async def ack(self, job: ActiveJob, result: Any = None) -> Result[None, QueueError]:
        try:
            self._require_connected()
            self._complete(job, result)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        return Ok(None)

    async def nack(
        self, job: ActiveJob, error: QueueError
    ) -> Result[NackOutcome, QueueError]:
        try:
            self._require_connected()
            return Ok(self._fail(job, error))
        except Exception as exc:
            return Err(self.mapper.map(exc))

    def _claim(self, count: int) -> list[ActiveJob]:
        """Select and lease up to `count` ready jobs. Must not await."""
        state = self._state
        if state.paused:
            return []
        now = self.backend.clock()
        ready = sorted(
            (e for e in state.entries.values() if e.lease is None and e.job.is_ready(now)),
            key=lambda e: (-e.job.effective_priority, e.ready_at, e.seq),
        )
        claimed: list[ActiveJob] = []
        for entry in ready[:count]:
            token = uuid.uuid4().hex
            entry.lease = token
            entry.job = entry.job.mark_active(now)
            claimed.append(
                self._materialize(entry).to_active(_Lease(self.instance_id, token))
            )
        return claimed

    def _leased_entry(self, job: ActiveJob) -> _Entry:
        lease = job.provider_metadata
        if not isinstance(lease, _Lease) or lease.instance_id != self.instance_id:
            raise LeaseError(job.id)
        entry = self._state.entries.get(job.id)
        if entry is None or entry.lease is None or entry.lease != lease.token:
            raise LeaseError(job.id)
        return entry

    def _complete(self, job: ActiveJob, result: Any) -> None:
        entry = self._leased_entry(job)
        state = self._state
        entry.lease = None
        entry.job = entry.job.mark_completed(self.backend.clock(), result)
        state.completed_total += 1
        self._apply_retention(entry, entry.remove_on_complete, JobStatus.COMPLETED)
        state.signal.notify()
        logger.debug("Job %r completed on queue %r", job.id, self.queue_name)

    def _fail(self, job: ActiveJob, error: QueueError) -> NackOutcome:
        entry = self._leased_entry(job)
        state = self._state
        now = self.backend.clock()
        current = entry.job
        entry.lease = None
        will_retry = (
            self.capabilities.supports_retries
            and error.retryable
            and current.attempts < current.max_attempts
        )
        next_attempt_at: datetime | None = None
        if will_retry:
            policy = entry.backoff or self.backend.backoff
            next_attempt_at = now + timedelta(seconds=policy.delay_for(current.attempts))
            entry.job = current.mark_retry(next_attempt_at, now, error.message)
            entry.ready_at = next_attempt_at
            logger.debug(
                "Job %r scheduled for retry %d/%d at %s",
                job.id,
                current.attempts + 1,
                current.max_attempts,
                next_attempt_at.isoformat(),
            )
        else:
            entry.job = current.mark_failed(now, error.message)
            state.failed_total += 1
            self._apply_retention(entry, entry.remove_on_fail, JobStatus.FAILED)
            logger.debug("Job %r failed terminally on queue %r", job.id, self.queue_name)
        state.signal.notify()
        return NackOutcome(
            will_retry=will_retry,
            attempts=current.attempts,
            max_attempts=current.max_attempts,
            next_attempt_at=next_attempt_at,
        )

    def _apply_retention(self, entry: _Entry, policy: bool | int, status: JobStatus) -> None:
        entries = self._state.entries
        if policy is True:
            entries.pop(entry.job.id, None)
            return
        if policy is False or isinstance(policy, bool):
            return
        finished = sorted(
            (e for e in entries.values() if e.job.status == status),
            key=lambda e: e.seq,
        )
        for stale in finished[: max(len(finished) - policy, 0)]:
            entries.pop(stale.job.id, None)

    def _next_wakeup(self) -> float:
        """Seconds until the earliest delayed job is ready, capped at idle_interval."""
        if self._state.paused:
            return self.backend.idle_interval
        now = self.backend.clock()
        pending = [
            (e.ready_at - now).total_seconds()
            for e in self._state.entries.values()
            if e.lease is None and e.job.status == JobStatus.DELAYED
        ]
        return max(min([self.backend.idle_interval, *pending]), _MIN_WAIT)

    # ------------------------------------------------------------------ #
    # Push model                                                           #
    # ------------------------------------------------------------------ #

    def process(self, handler: ProviderHandler, options: ProcessOptions) -> _Processor:
        self._require_connected()
        if options.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {options.concurrency}")
        processor = _Processor(provider=self, handler=handler, options=options)
        self._processors.append(processor)
        processor.start()
        return processor

    # ------------------------------------------------------------------ #
    # Queue management                                                     #
    # ------------------------------------------------------------------ #

    async def pause(self) -> Result[None, QueueError]:
        try:
            self._require_connected()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        self._state.paused = True
        for processor in self._processors:
            processor.paused = True
        return Ok(None)

    async def resume(self) -> Result[None, QueueError]:
        try:
            self._require_connected()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        self._state.paused = False
        for processor in self._processors:
            processor.paused = False
        self._state.signal.notify()
        return Ok(None)

    async def delete(self) -> Result[None, QueueError]:
        try:
            self._require_connected()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        self.backend.drop(self.queue_name)
        return Ok(None)

    async def get_stats(self) -> Result[QueueStats, QueueError]:
        try:
            self._require_connected()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        now = self.backend.clock()
        counts = dict.fromkeys(JobStatus, 0)
        for entry in self._state.entries.values():
            status = entry.job.status
            if status == JobStatus.DELAYED and entry.job.is_ready(now):
                status = JobStatus.WAITING
            counts[status] += 1
        return Ok(
            QueueStats(
                queue_name=self.queue_name,
                waiting=counts[JobStatus.WAITING],
                delayed=counts[JobStatus.DELAYED],
                active=counts[JobStatus.ACTIVE],
                completed=counts[JobStatus.COMPLETED],
                failed=counts[JobStatus.FAILED],
                paused=self._state.paused,
            )
        )

    async def get_health(self) -> Result[HealthStatus, QueueError]:
        match await self.get_stats():
            case Err() as err:
                return err
            case Ok(stats):
                state = self._state
                return Ok(
                    HealthStatus(
                        is_healthy=True,
                        is_paused=stats.paused,
                        active_workers=len(self._processors),
                        queue_depth=stats.waiting + stats.delayed,
                        error_rate=HealthStatus.rate(
                            state.failed_total, state.completed_total
                        ),
                    )
                )

    async def get_dlq_jobs(self, limit: int = 100) -> Result[list[Job], QueueError]:
        if limit < 1:
            return Err(ConfigurationError(f"limit must be >= 1, got {limit}"))
        try:
            self._require_connected()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        dead = sorted(
            (e for e in self._state.entries.values() if e.job.status == JobStatus.FAILED),
            key=lambda e: e.seq,
        )
        return Ok([self._materialize(e) for e in dead[:limit]])

    async def retry_job(self, job_id: str) -> Result[Job, QueueError]:
        try:
            self._require_connected()
            entry = self._state.entries.get(job_id)
            if entry is None or entry.job.status != JobStatus.FAILED:
                raise JobNotFoundError(job_id)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        entry.job = entry.job.requeued()
        entry.ready_at = self.backend.clock()
        self._state.signal.notify()
        return Ok(self._materialize(entry))

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _materialize(self, entry: _Entry) -> Job:
        data, metadata = unwrap_payload(entry.body)
        return entry.job.model_copy(update={"data": data, "metadata": metadata})


# --------------------------------------------------------------------------- #
# Push-mode worker pool                                                         #
# --------------------------------------------------------------------------- #


@dataclasses.dataclass(eq=False)
class _Processor:
    """Dispatch loop plus at most `concurrency` in-flight handler tasks."""

    provider: InMemoryQueueProvider
    handler: ProviderHandler
    options: ProcessOptions
    paused: bool = False

    _slots: asyncio.Semaphore = dataclasses.field(init=False, repr=False)
    _tasks: set[asyncio.Task[None]] = dataclasses.field(
        default_factory=set, init=False, repr=False
    )
    _dispatcher: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _stopping: bool = dataclasses.field(default=False, init=False, repr=False)
    cancelled: int = dataclasses.field(default=0, init=False)
    _shutdown: asyncio.Future[bool] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._slots = asyncio.Semaphore(self.options.concurrency)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def start(self) -> None:
        self._dispatcher = asyncio.create_task(
            self._dispatch(), name=f"jobport-dispatch-{self.provider.queue_name}"
        )
        logger.info(
            "Processor started on queue %r (concurrency=%d)",
            self.provider.queue_name,
            self.options.concurrency,
        )

    async def shutdown(self, timeout: float = 30.0) -> bool:
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._drain(timeout))
        return await asyncio.shield(self._shutdown)

    async def _drain(self, timeout: float) -> bool:
        self._stopping = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)

        drained = True
        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                drained = False
                self.cancelled = len(pending)
                logger.warning(
                    "Processor on queue %r cancelling %d handler(s) after %.1fs",
                    self.provider.queue_name,
                    len(pending),
                    timeout,
                )
                for task in pending:
                    task.cancel()
                await asyncio.wait(pending, timeout=_CANCEL_GRACE)

        if self in self.provider._processors:
            self.provider._processors.remove(self)
        logger.info("Processor stopped on queue %r", self.provider.queue_name)
        return drained

    async def _dispatch(self) -> None:
        busy = False
        while not self._stopping:
            await self._slots.acquire()
            try:
                jobs = [] if self.paused else self.provider._claim(1)
            except Exception as exc:
                self._slots.release()
                self._report(self.options.on_error, self.provider.mapper.map(exc))
                await asyncio.sleep(self.provider.backend.idle_interval)
                continue

            if not jobs:
                self._slots.release()
                if busy and not self._tasks:
                    busy = False
                    self._report(self.options.on_drained)
                await self.provider._state.signal.wait(self.provider._next_wakeup())
                continue

            busy = True
            task = asyncio.create_task(self._execute(jobs[0]))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: ActiveJob) -> None:
        provider = self.provider
        try:
            try:
                result = await self.handler(job)
            except asyncio.CancelledError:
                self._settle_failure(
                    job,
                    QueueRuntimeError(
                        "processing interrupted by shutdown",
                        code=RuntimeCode.PROCESSING,
                        retryable=True,
                    ),
                )
                raise
            except Exception as exc:
                self._settle_failure(job, provider.mapper.map(exc))
            else:
                try:
                    provider._complete(job, result)
                except Exception as exc:
                    self._report(self.options.on_error, provider.mapper.map(exc))
                else:
                    self._report(self.options.on_completed, job, result)
        finally:
            self._slots.release()
            provider._state.signal.notify()

    def _settle_failure(self, job: ActiveJob, error: QueueError) -> None:
        try:
            outcome = self.provider._fail(job, error)
        except Exception as exc:
            self._report(self.options.on_error, self.provider.mapper.map(exc))
        else:
            self._report(self.options.on_failed, job, error, outcome)

    def _report(self, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(
                "Processor callback failed on queue %r", self.provider.queue_name
            )
