"""
Worker — consumer-side client running a handler over a queue.

Dispatch model
--------------
mode="auto"  push when the adapter implements process(), otherwise pull
mode="push"  require PushProvider; the adapter owns the worker pool
mode="pull"  require PullProvider; the worker runs its own bounded loop:

    acquire up to `concurrency` free slots
    fetch(slots, wait_time)        -- atomic per job
    for each job: run handler, then ack(result) or nack(error)
    nothing ready  -> sleep poll_interval
    backend error  -> emit queue.error, sleep error_backoff

Handlers
--------
    async def handler(data, job) -> value | Ok(value) | Err(error)

Raising, or returning Err, is a failure. Failures are classified with the
error mapper; only retryable errors are retried by the adapter, and only
while attempts < max_attempts. The adapter's NackOutcome decides which of
`job.retrying` or `failed` is published.

Shutdown
--------
close(timeout) stops intake, waits up to `timeout` for in-flight handlers,
then cancels the rest. Cancelled jobs are nacked with a retryable error so
the adapter can hand them out again. `processor.shutdown_timeout` is
published when the drain did not finish in time.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any, Literal

from jobport.core.error_mapper import ErrorMapper
from jobport.core.events import EventChannel, Listener
from jobport.core.options import unsupported_feature
from jobport.domain.errors import (
    ConfigurationError,
    QueueError,
    QueueRuntimeError,
    RuntimeCode,
)
from jobport.domain.events import (
    ErrorInfo,
    EventPayload,
    JobActivePayload,
    JobCompletedPayload,
    JobFailedPayload,
    JobRetryingPayload,
    QueueDrainedPayload,
    QueueErrorPayload,
    QueueEvent,
    ShutdownTimeoutPayload,
    ShuttingDownPayload,
)
from jobport.domain.models import ActiveJob, Job, NackOutcome
from jobport.domain.result import Err, Ok, Result
from jobport.ports.provider import (
    ProcessOptions,
    Processor,
    ProviderFactory,
    PullProvider,
    PushProvider,
    QueueProvider,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Job], Awaitable[Any]]
DispatchMode = Literal["auto", "push", "pull"]

_CANCEL_GRACE: float = 1.0


@dataclasses.dataclass
class Worker:
    """
    Parameters
    ----------
    name          : queue name
    handler       : async (data, job) -> value | Ok | Err
    provider      : ProviderFactory; bound via provider.for_queue(name)
    concurrency   : maximum number of handler invocations in flight
    poll_interval : pull mode, seconds to sleep when nothing is ready
    error_backoff : pull mode, seconds to sleep after a backend failure
    wait_time     : pull mode, long-poll budget passed to fetch()
    mode          : "auto", "push" or "pull"
    """

    name: str
    handler: Handler
    provider: ProviderFactory
    concurrency: int = 1
    poll_interval: float = 1.0
    error_backoff: float = 5.0
    wait_time: float | None = None
    mode: DispatchMode = "auto"
    mapper: ErrorMapper = dataclasses.field(default_factory=ErrorMapper, repr=False)

    events: EventChannel = dataclasses.field(init=False)
    _provider: QueueProvider = dataclasses.field(init=False, repr=False)
    _processor: Processor | None = dataclasses.field(default=None, init=False, repr=False)
    _loop: asyncio.Task[None] | None = dataclasses.field(default=None, init=False, repr=False)
    _tasks: set[asyncio.Task[None]] = dataclasses.field(
        default_factory=set, init=False, repr=False
    )
    _started: dict[str, float] = dataclasses.field(default_factory=dict, init=False, repr=False)
    _stopping: bool = dataclasses.field(default=False, init=False, repr=False)
    _connected: bool = dataclasses.field(default=False, init=False, repr=False)
    _wake: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )
    _closing: asyncio.Future[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._provider = self.provider.for_queue(self.name)
        self.events = EventChannel(queue_name=self.name, mapper=self.mapper)

    @property
    def is_running(self) -> bool:
        return (self._processor is not None or self._loop is not None) and not self._stopping

    @property
    def in_flight(self) -> int:
        if self._processor is not None:
            return self._processor.in_flight
        return len(self._tasks)

    # ------------------------------------------------------------------ #
    # Events                                                               #
    # ------------------------------------------------------------------ #

    def on(self, event: QueueEvent | str, listener: Listener) -> Callable[[], None]:
        return self.events.on(event, listener)

    def on_safe(self, event: QueueEvent | str, listener: Listener) -> Callable[[], None]:
        return self.events.on_safe(event, listener)

    def off(self, event: QueueEvent | str, listener: Listener) -> None:
        self.events.off(event, listener)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> Result[None, QueueError]:
        """Connect and begin consuming. Calling start() on a running worker is a no-op."""
        if self.is_running:
            return Ok(None)
        if self._stopping:
            return Err(ConfigurationError(f"worker for queue {self.name!r} is closed"))
        if self.concurrency < 1:
            return Err(ConfigurationError(f"concurrency must be >= 1, got {self.concurrency}"))

        resolved = self._resolve_mode()
        if isinstance(resolved, Err):
            return resolved
        mode = resolved.value

        match await self._provider.connect():
            case Err(error):
                self._emit_error(error)
                return Err(error)
        self._connected = True

        match mode:
            case "push":
                started = self._start_push()
                if isinstance(started, Err):
                    await self._release()
                return started
            case _:
                self._loop = asyncio.create_task(
                    self._pull_loop(), name=f"jobport-worker-{self.name}"
                )
                logger.info(
                    "Worker started on queue %r (pull, concurrency=%d)",
                    self.name,
                    self.concurrency,
                )
                return Ok(None)

    def _resolve_mode(self) -> Result[str, QueueError]:
        push = isinstance(self._provider, PushProvider)
        pull = isinstance(self._provider, PullProvider)
        match self.mode:
            case "push" if not push:
                return Err(unsupported_feature("push delivery"))
            case "pull" if not pull:
                return Err(unsupported_feature("pull delivery"))
            case "auto" if not (push or pull):
                return Err(unsupported_feature("job delivery"))
            case "auto":
                return Ok("push" if push else "pull")
            case mode:
                return Ok(mode)

    def _start_push(self) -> Result[None, QueueError]:
        options = ProcessOptions(
            concurrency=self.concurrency,
            on_completed=self._on_push_completed,
            on_failed=self._on_push_failed,
            on_error=self._emit_error,
            on_drained=self._emit_drained,
        )
        try:
            self._processor = self._provider.process(self._run_push, options)
        except Exception as exc:
            error = self.mapper.map(exc)
            self._emit_error(error)
            return Err(error)
        logger.info(
            "Worker started on queue %r (push, concurrency=%d)", self.name, self.concurrency
        )
        return Ok(None)

    async def close(
        self, timeout: float = 30.0, finish_active_jobs: bool = True
    ) -> Result[None, QueueError]:
        """
        Stop intake and drain. Idempotent; concurrent callers share one drain.

        finish_active_jobs=False cancels in-flight handlers immediately.
        """
        if self._closing is None:
            self._closing = asyncio.ensure_future(
                self._close(timeout if finish_active_jobs else 0.0)
            )
        await asyncio.shield(self._closing)
        return Ok(None)

    async def _close(self, timeout: float) -> None:
        self._stopping = True
        self._wake.set()
        self._emit(
            QueueEvent.PROCESSOR_SHUTTING_DOWN,
            ShuttingDownPayload(queue_name=self.name, active_jobs=self.in_flight),
        )

        pending = 0
        if self._processor is not None:
            if not await self._processor.shutdown(timeout):
                pending = self._processor.cancelled
        elif self._loop is not None:
            self._loop.cancel()
            await asyncio.gather(self._loop, return_exceptions=True)
            pending = await self._drain(timeout)

        if pending:
            logger.warning(
                "Worker on queue %r did not drain within %.1fs (%d job(s) cancelled)",
                self.name,
                timeout,
                pending,
            )
            self._emit(
                QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT,
                ShutdownTimeoutPayload(
                    queue_name=self.name, timeout=timeout, pending_jobs=pending
                ),
            )
        await self._release()
        logger.info("Worker stopped on queue %r", self.name)

    async def _release(self) -> None:
        """Give back the connection taken in start(); the adapter is shared."""
        if not self._connected:
            return
        self._connected = False
        match await self._provider.disconnect():
            case Err(error):
                self._emit_error(error)

    async def _drain(self, timeout: float) -> int:
        if not self._tasks:
            return 0
        if timeout > 0:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        else:
            pending = {task for task in self._tasks if not task.done()}
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending, timeout=_CANCEL_GRACE)
        return len(pending)

    async def __aenter__(self) -> Worker:
        match await self.start():
            case Err(error):
                raise error
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------ #
    # Push mode                                                            #
    # ------------------------------------------------------------------ #

    async def _run_push(self, job: ActiveJob) -> Any:
        """Handler wrapper given to the adapter. Failures propagate unmodified."""
        self._begin(job)
        returned = await self.handler(job.data, job)
        match returned:
            case Err(error):
                raise _as_exception(error)
            case Ok(value):
                return value
            case _:
                return returned

    def _on_push_completed(self, job: ActiveJob, result: Any) -> None:
        self._emit_completed(job, result)

    def _on_push_failed(self, job: ActiveJob, error: QueueError, outcome: NackOutcome) -> None:
        self._emit_failure(job, error, outcome)

    # ------------------------------------------------------------------ #
    # Pull mode                                                            #
    # ------------------------------------------------------------------ #

    async def _pull_loop(self) -> None:
        provider: PullProvider = self._provider  # type: ignore[assignment]
        slots = asyncio.Semaphore(self.concurrency)
        busy = False
        while not self._stopping:
            await slots.acquire()
            held = 1
            while held < self.concurrency and not slots.locked():
                await slots.acquire()
                held += 1

            try:
                fetched = await provider.fetch(held, self.wait_time)
            except Exception as exc:
                fetched = Err(self.mapper.map(exc))

            match fetched:
                case Err(error):
                    for _ in range(held):
                        slots.release()
                    self._emit_error(error)
                    await self._idle(self.error_backoff)
                    continue
                case Ok(jobs):
                    pass

            for _ in range(held - len(jobs)):
                slots.release()

            if not jobs:
                if busy and not self._tasks:
                    busy = False
                    self._emit_drained()
                await self._idle(self.poll_interval)
                continue

            busy = True
            for job in jobs:
                task = asyncio.create_task(self._run_pulled(provider, job, slots))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _run_pulled(
        self, provider: PullProvider, job: ActiveJob, slots: asyncio.Semaphore
    ) -> None:
        try:
            self._begin(job)
            try:
                outcome = await self._invoke(job)
            except asyncio.CancelledError:
                await self._nack(
                    provider,
                    job,
                    QueueRuntimeError(
                        "processing interrupted by shutdown",
                        code=RuntimeCode.PROCESSING,
                        retryable=True,
                    ),
                )
                raise

            match outcome:
                case Ok(value):
                    match await provider.ack(job, value):
                        case Err(error):
                            self._emit_error(error, source=QueueEvent.COMPLETED, job_id=job.id)
                        case Ok(_):
                            self._emit_completed(job, value)
                case Err(error):
                    await self._nack(provider, job, error)
        finally:
            self._started.pop(job.id, None)
            slots.release()

    async def _invoke(self, job: ActiveJob) -> Result[Any, QueueError]:
        try:
            returned = await self.handler(job.data, job)
        except Exception as exc:
            return Err(self.mapper.map(exc))
        match returned:
            case Err(error):
                return Err(self.mapper.map(_as_exception(error)))
            case Ok(value):
                return Ok(value)
            case _:
                return Ok(returned)

    async def _nack(self, provider: PullProvider, job: ActiveJob, error: QueueError) -> None:
        match await provider.nack(job, error):
            case Err(failure):
                self._emit_error(failure, source=QueueEvent.FAILED, job_id=job.id)
            case Ok(outcome):
                self._emit_failure(job, error, outcome)

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), seconds)
        except TimeoutError:
            pass

    # ------------------------------------------------------------------ #
    # Event publishing                                                     #
    # ------------------------------------------------------------------ #

    def _begin(self, job: ActiveJob) -> None:
        self._started[job.id] = asyncio.get_running_loop().time()
        logger.debug("Job %r active (attempt %d/%d)", job.id, job.attempts, job.max_attempts)
        self._emit(
            QueueEvent.ACTIVE,
            JobActivePayload(
                queue_name=self.name,
                job_id=job.id,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
            ),
        )

    def _duration(self, job: ActiveJob) -> float:
        started = self._started.pop(job.id, None)
        if started is None:
            return 0.0
        return max(asyncio.get_running_loop().time() - started, 0.0)

    def _emit_completed(self, job: ActiveJob, result: Any) -> None:
        self._emit(
            QueueEvent.COMPLETED,
            JobCompletedPayload(
                queue_name=self.name,
                job_id=job.id,
                attempts=job.attempts,
                duration=self._duration(job),
                result=result,
            ),
        )

    def _emit_failure(self, job: ActiveJob, error: QueueError, outcome: NackOutcome) -> None:
        """Exactly one of `job.retrying` / `failed`, as decided by the adapter."""
        info = ErrorInfo.from_error(error)
        duration = self._duration(job)
        if outcome.will_retry:
            self._emit(
                QueueEvent.JOB_RETRYING,
                JobRetryingPayload(
                    queue_name=self.name,
                    job_id=job.id,
                    attempts=outcome.attempts,
                    max_attempts=outcome.max_attempts,
                    error=info,
                    next_attempt_at=outcome.next_attempt_at,
                ),
            )
            return
        self._emit(
            QueueEvent.FAILED,
            JobFailedPayload(
                queue_name=self.name,
                job_id=job.id,
                attempts=outcome.attempts,
                max_attempts=outcome.max_attempts,
                duration=duration,
                error=info,
                will_retry=False,
            ),
        )

    def _emit_drained(self) -> None:
        self._emit(QueueEvent.QUEUE_DRAINED, QueueDrainedPayload(queue_name=self.name))

    def _emit_error(
        self,
        error: QueueError,
        *,
        source: QueueEvent | None = None,
        job_id: str | None = None,
    ) -> None:
        logger.debug("Queue %r error: %r", self.name, error)
        self._emit(
            QueueEvent.QUEUE_ERROR,
            QueueErrorPayload(
                queue_name=self.name,
                error=ErrorInfo.from_error(error),
                source_event=source.value if source is not None else None,
                job_id=job_id,
            ),
        )

    def _emit(self, event: QueueEvent, payload: EventPayload) -> None:
        # Worker emits from background tasks; there is no caller to propagate to.
        try:
            self.events.emit(event, payload)
        except Exception:
            logger.exception("Listener for %r on queue %r failed", event.value, self.name)


def _as_exception(error: Any) -> BaseException:
    if isinstance(error, BaseException):
        return error
    return QueueRuntimeError(str(error), code=RuntimeCode.PROCESSING)
