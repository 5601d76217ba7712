"""
ObjectStorageProvider — pull-only provider keeping each queue in one object.

Any ObjectStoragePort (in-memory, local file, S3, GCS) can hold a queue. The
whole queue is one JSON document (see core/codec.py) and every state change
is a compare-and-set cycle:

  1. read document + etag
  2. apply the mutation in memory (pure function of StoredQueue)
  3. write back with if_match=etag; on CASConflictError retry from 1

Conflicts are retried up to `max_retries` times with linear back-off
(10ms × attempt) before the CASConflictError surfaces, mapped to a
retryable RuntimeError/PROCESSING.

Leases
------
fetch() leases jobs for `visibility_timeout` seconds. A job whose lease has
expired (the worker died) is reclaimed on the next fetch: back to waiting
while it has attempts left, dead-lettered otherwise.

Suited to low-throughput queues (a handful of operations per second per
queue, bounded by storage latency) where no broker is available.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from jobport.core import codec
from jobport.core.envelope import unwrap_payload, wrap_payload
from jobport.core.error_mapper import ErrorMapper
from jobport.core.options import build_backend_options
from jobport.domain.errors import (
    CASConflictError,
    ConfigurationError,
    JobExistsError,
    JobNotFoundError,
    LeaseError,
    QueueError,
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
from jobport.domain.state import StoredJob, StoredQueue
from jobport.ports.storage import ObjectStoragePort

logger = logging.getLogger(__name__)

OBJECT_STORAGE_CAPABILITIES = ProviderCapabilities(
    supports_delayed_jobs=True,
    supports_priority=True,
    supports_retries=True,
    supports_dlq=True,
    supports_batching=True,
    supports_long_polling=False,
    max_job_size=256 * 1024,
    max_batch_size=100,
)

Mutation = Callable[[StoredQueue], StoredQueue]


@dataclasses.dataclass(frozen=True)
class _Lease:
    instance_id: str
    token: str


@dataclasses.dataclass
class ObjectStorageProvider:
    """
    Provider factory over object storage.

    Parameters
    ----------
    storage_for         : queue name -> ObjectStoragePort holding that queue
    capabilities        : advertised capability flags
    backoff             : retry backoff used when a job carries none of its own
    default_job_options : adapter-level backend defaults, overridden per call
    visibility_timeout  : seconds a fetched job stays leased before reclaim
    max_retries         : CAS attempts per operation
    clock               : time source (UTC), injectable for tests
    """

    storage_for: Callable[[str], ObjectStoragePort]
    capabilities: ProviderCapabilities = OBJECT_STORAGE_CAPABILITIES
    backoff: BackoffPolicy = dataclasses.field(default_factory=BackoffPolicy)
    default_job_options: dict[str, Any] = dataclasses.field(default_factory=dict)
    visibility_timeout: float = 300.0
    max_retries: int = 10
    clock: Callable[[], datetime] = utcnow

    _providers: dict[str, ObjectStorageQueueProvider] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )

    def for_queue(self, queue_name: str) -> ObjectStorageQueueProvider:
        provider = self._providers.get(queue_name)
        if provider is None:
            provider = self._providers[queue_name] = ObjectStorageQueueProvider(
                queue_name=queue_name,
                storage=self.storage_for(queue_name),
                config=self,
            )
        return provider


@dataclasses.dataclass(eq=False)
class ObjectStorageQueueProvider:
    """Adapter instance bound to one queue. Implements Pull and DeadLetter ports."""

    queue_name: str
    storage: ObjectStoragePort
    config: ObjectStorageProvider = dataclasses.field(repr=False)
    mapper: ErrorMapper = dataclasses.field(default_factory=ErrorMapper, repr=False)

    instance_id: str = dataclasses.field(
        default_factory=lambda: uuid.uuid4().hex, init=False
    )
    _connections: int = dataclasses.field(default=0, init=False, repr=False)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.config.capabilities

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def connect(self) -> Result[None, QueueError]:
        """Probe the storage object on first connect; a missing object is an empty queue."""
        if self._connections > 0:
            self._connections += 1
            return Ok(None)
        try:
            await self._snapshot()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        self._connections += 1
        logger.info("Connected to object storage for queue %r", self.queue_name)
        return Ok(None)

    async def disconnect(self) -> Result[None, QueueError]:
        if self._connections > 0:
            self._connections -= 1
        return Ok(None)

    def _require_connected(self) -> None:
        if self._connections == 0:
            raise ConnectionError(
                f"provider for queue {self.queue_name!r} is not connected"
            )

    # ------------------------------------------------------------------ #
    # Producer side                                                        #
    # ------------------------------------------------------------------ #

    async def add(self, job: Job, options: JobOptions) -> Result[Job, QueueError]:
        match await self.add_bulk([(job, options)]):
            case Ok(jobs):
                return Ok(jobs[0])
            case Err() as err:
                return err

    async def add_bulk(
        self, entries: Sequence[tuple[Job, JobOptions]]
    ) -> Result[list[Job], QueueError]:
        new: list[StoredJob] = []

        def _fn(state: StoredQueue) -> StoredQueue:
            seen: set[str] = set()
            for stored in new:
                if stored.id in seen or state.find(stored.id) is not None:
                    raise JobExistsError(stored.id)
                seen.add(stored.id)
                state = state.with_job_added(stored)
            return state

        try:
            self._require_connected()
            now = self.config.clock()
            new = [self._to_stored(job, options, now) for job, options in entries]
            await self._mutate(_fn)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        logger.debug("Stored %d job(s) on queue %r", len(new), self.queue_name)
        return Ok([self._materialize(stored) for stored in new])

    def _to_stored(self, job: Job, options: JobOptions, now: datetime) -> StoredJob:
        backend_options = build_backend_options(
            job, options, self.config.default_job_options, now=now
        )
        return StoredJob(
            job=job.model_copy(update={"data": None, "metadata": {}}),
            body=wrap_payload(job.data, job.metadata),
            ready_at=now + timedelta(seconds=backend_options["delay"]),
            remove_on_complete=backend_options["remove_on_complete"],
            remove_on_fail=backend_options["remove_on_fail"],
            backoff=backend_options.get("backoff"),
        )

    async def get_job(self, job_id: str) -> Result[Job | None, QueueError]:
        try:
            self._require_connected()
            stored = (await self._snapshot()).find(job_id)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        return Ok(self._materialize(stored) if stored is not None else None)

    # ------------------------------------------------------------------ #
    # Pull model                                                           #
    # ------------------------------------------------------------------ #

    async def fetch(
        self, count: int, wait_time: float | None = None
    ) -> Result[list[ActiveJob], QueueError]:
        """Lease up to `count` ready jobs. No long polling: wait_time is ignored."""
        if count < 1:
            return Err(ConfigurationError(f"fetch count must be >= 1, got {count}"))
        claimed: list[tuple[StoredJob, str]] = []

        def _fn(state: StoredQueue) -> StoredQueue:
            claimed.clear()
            now = self.config.clock()
            state = _reclaim_expired(state, now)
            if state.paused:
                return state
            until = now + timedelta(seconds=self.config.visibility_timeout)
            for stored in state.ready(now)[:count]:
                token = uuid.uuid4().hex
                leased = stored.leased(token, now, until)
                state = state.with_job_replaced(leased)
                claimed.append((leased, token))
            return state

        try:
            self._require_connected()
            await self._mutate(_fn)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        return Ok(
            [
                self._materialize(stored).to_active(_Lease(self.instance_id, token))
                for stored, token in claimed
            ]
        )

    async def ack(self, job: ActiveJob, result: Any = None) -> Result[None, QueueError]:
        def _fn(state: StoredQueue) -> StoredQueue:
            stored = _leased(state, job, self.instance_id)
            done = stored.released(stored.job.mark_completed(self.config.clock(), result))
            state = state.with_job_replaced(done).with_counters(completed=1)
            return state.retained(done, done.remove_on_complete)

        try:
            self._require_connected()
            await self._mutate(_fn)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        logger.debug("Job %r completed on queue %r", job.id, self.queue_name)
        return Ok(None)

    async def nack(
        self, job: ActiveJob, error: QueueError
    ) -> Result[NackOutcome, QueueError]:
        outcome: NackOutcome | None = None

        def _fn(state: StoredQueue) -> StoredQueue:
            nonlocal outcome
            stored = _leased(state, job, self.instance_id)
            now = self.config.clock()
            current = stored.job
            will_retry = (
                self.capabilities.supports_retries
                and error.retryable
                and current.attempts < current.max_attempts
            )
            next_attempt_at: datetime | None = None
            if will_retry:
                policy = stored.backoff or self.config.backoff
                next_attempt_at = now + timedelta(seconds=policy.delay_for(current.attempts))
                updated = stored.released(
                    current.mark_retry(next_attempt_at, now, error.message),
                    ready_at=next_attempt_at,
                )
                state = state.with_job_replaced(updated)
            else:
                updated = stored.released(current.mark_failed(now, error.message))
                state = state.with_job_replaced(updated).with_counters(failed=1)
                state = state.retained(updated, updated.remove_on_fail)
            outcome = NackOutcome(
                will_retry=will_retry,
                attempts=current.attempts,
                max_attempts=current.max_attempts,
                next_attempt_at=next_attempt_at,
            )
            return state

        try:
            self._require_connected()
            await self._mutate(_fn)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        if outcome is None:
            raise RuntimeError(f"nack of job {job.id!r} produced no outcome")
        logger.debug(
            "Job %r nacked on queue %r (will_retry=%s)", job.id, self.queue_name, outcome.will_retry
        )
        return Ok(outcome)

    async def requeue_expired(self) -> Result[int, QueueError]:
        """Reclaim jobs whose lease has expired. Returns how many were reclaimed."""
        reclaimed = 0

        def _fn(state: StoredQueue) -> StoredQueue:
            nonlocal reclaimed
            now = self.config.clock()
            reclaimed = sum(1 for s in state.jobs if s.lease_expired(now))
            return _reclaim_expired(state, now)

        try:
            self._require_connected()
            await self._mutate(_fn)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        return Ok(reclaimed)

    # ------------------------------------------------------------------ #
    # Queue management                                                     #
    # ------------------------------------------------------------------ #

    async def pause(self) -> Result[None, QueueError]:
        return await self._set_paused(True)

    async def resume(self) -> Result[None, QueueError]:
        return await self._set_paused(False)

    async def _set_paused(self, paused: bool) -> Result[None, QueueError]:
        try:
            self._require_connected()
            await self._mutate(lambda state: state.with_paused(paused))
        except Exception as exc:
            return Err(self.mapper.map(exc))
        return Ok(None)

    async def delete(self) -> Result[None, QueueError]:
        try:
            self._require_connected()
            await self.storage.delete()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        logger.info("Deleted storage object for queue %r", self.queue_name)
        return Ok(None)

    async def get_stats(self) -> Result[QueueStats, QueueError]:
        try:
            self._require_connected()
            state = await self._snapshot()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        return Ok(_stats(self.queue_name, state, self.config.clock()))

    async def get_health(self) -> Result[HealthStatus, QueueError]:
        """active_workers is the number of live leases."""
        try:
            self._require_connected()
            state = await self._snapshot()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        now = self.config.clock()
        stats = _stats(self.queue_name, state, now)
        return Ok(
            HealthStatus(
                is_healthy=True,
                is_paused=state.paused,
                active_workers=state.live_leases(now),
                queue_depth=stats.waiting + stats.delayed,
                error_rate=HealthStatus.rate(state.failed_total, state.completed_total),
            )
        )

    async def get_dlq_jobs(self, limit: int = 100) -> Result[list[Job], QueueError]:
        if limit < 1:
            return Err(ConfigurationError(f"limit must be >= 1, got {limit}"))
        try:
            self._require_connected()
            state = await self._snapshot()
        except Exception as exc:
            return Err(self.mapper.map(exc))
        dead = sorted(state.with_status(JobStatus.FAILED), key=lambda s: s.seq)
        return Ok([self._materialize(s) for s in dead[:limit]])

    async def retry_job(self, job_id: str) -> Result[Job, QueueError]:
        revived: StoredJob | None = None

        def _fn(state: StoredQueue) -> StoredQueue:
            nonlocal revived
            stored = state.find(job_id)
            if stored is None or stored.status != JobStatus.FAILED:
                raise JobNotFoundError(job_id)
            revived = stored.released(stored.job.requeued(), ready_at=self.config.clock())
            return state.with_job_replaced(revived)

        try:
            self._require_connected()
            await self._mutate(_fn)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        if revived is None:
            raise RuntimeError(f"retry of job {job_id!r} produced no job")
        return Ok(self._materialize(revived))

    # ------------------------------------------------------------------ #
    # CAS plumbing                                                         #
    # ------------------------------------------------------------------ #

    async def _snapshot(self) -> StoredQueue:
        content, _ = await self.storage.read()
        return codec.decode(content)

    async def _mutate(self, fn: Mutation) -> StoredQueue:
        """
        Read-modify-write with CAS retry.

        fn(state) -> new_state is synchronous and may run more than once.
        An unchanged state is not written back.
        """
        for attempt in range(self.config.max_retries):
            content, etag = await self.storage.read()
            state = codec.decode(content)
            new_state = fn(state)
            if new_state is state:
                return state
            try:
                await self.storage.write(codec.encode(new_state), if_match=etag)
                return new_state
            except CASConflictError:
                if attempt == self.config.max_retries - 1:
                    raise
                logger.debug(
                    "CAS conflict on queue %r (attempt %d)", self.queue_name, attempt + 1
                )
                await asyncio.sleep(0.01 * (attempt + 1))
        raise CASConflictError(f"no CAS attempts configured for queue {self.queue_name!r}")

    def _materialize(self, stored: StoredJob) -> Job:
        data, metadata = unwrap_payload(stored.body)
        return stored.job.model_copy(update={"data": data, "metadata": metadata})


def _leased(state: StoredQueue, job: ActiveJob, instance_id: str) -> StoredJob:
    lease = job.provider_metadata
    if not isinstance(lease, _Lease) or lease.instance_id != instance_id:
        raise LeaseError(job.id)
    stored = state.find(job.id)
    if stored is None or stored.lease_token != lease.token:
        raise LeaseError(job.id)
    return stored


def _reclaim_expired(state: StoredQueue, now: datetime) -> StoredQueue:
    for stored in state.jobs:
        if not stored.lease_expired(now):
            continue
        job = stored.job
        if job.attempts < job.max_attempts:
            logger.warning("Lease expired for job %r; returning it to the queue", job.id)
            state = state.with_job_replaced(
                stored.released(job.mark_retry(now, now, "lease expired"), ready_at=now)
            )
        else:
            logger.warning("Lease expired for job %r with no attempts left", job.id)
            failed = stored.released(job.mark_failed(now, "lease expired"))
            state = state.with_job_replaced(failed).with_counters(failed=1)
            state = state.retained(failed, failed.remove_on_fail)
    return state


def _stats(queue_name: str, state: StoredQueue, now: datetime) -> QueueStats:
    counts = dict.fromkeys(JobStatus, 0)
    for stored in state.jobs:
        status = stored.status
        if status == JobStatus.DELAYED and stored.job.is_ready(now):
            status = JobStatus.WAITING
        counts[status] += 1
    return QueueStats(
        queue_name=queue_name,
        waiting=counts[JobStatus.WAITING],
        delayed=counts[JobStatus.DELAYED],
        active=counts[JobStatus.ACTIVE],
        completed=counts[JobStatus.COMPLETED],
        failed=counts[JobStatus.FAILED],
        paused=state.paused,
    )
