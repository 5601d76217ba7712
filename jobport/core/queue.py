"""
Queue — producer-side client over any ProviderFactory.

Usage
-----
    from jobport import InMemoryProvider, JobOptions, Ok, Err, Queue

    async with Queue("emails", InMemoryProvider()) as queue:
        match await queue.add("send-welcome", {"to": "user@example.com"},
                              JobOptions(attempts=3, priority=5)):
            case Ok(job):
                print("queued", job.id)
            case Err(error):
                print("rejected", error.code)

Every operation returns a Result. Validation and capability checks happen
here, before the provider is called: an unsupported feature (say, a delayed
job on an adapter without supports_delayed_jobs) is an immediate
ConfigurationError and never a backend round trip.

Backend failures are also published on the `queue.error` event.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Sequence
from types import TracebackType
from typing import Any, TypeVar

from jobport.core.events import EventChannel, Listener
from jobport.core.ids import uuid_id
from jobport.core.options import (
    build_job,
    check_batch_size,
    normalize_options,
    unsupported_feature,
)
from jobport.domain.errors import ConfigurationError, QueueError
from jobport.domain.events import (
    ErrorInfo,
    QueueErrorPayload,
    QueueEvent,
    QueuePausedPayload,
    QueueResumedPayload,
)
from jobport.domain.models import (
    HealthStatus,
    Job,
    JobIdGenerator,
    JobOptions,
    ProviderCapabilities,
    QueueStats,
    utcnow,
)
from jobport.domain.result import Err, Ok, Result
from jobport.ports.provider import DeadLetterProvider, ProviderFactory, QueueProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

BulkEntry = tuple[str, Any] | tuple[str, Any, JobOptions | None]


@dataclasses.dataclass
class Queue:
    """
    Parameters
    ----------
    name                : queue name
    provider            : ProviderFactory; bound via provider.for_queue(name)
    default_job_options : queue-level defaults, overridden per call
    id_generator        : job-id generator used when a call supplies none
    """

    name: str
    provider: ProviderFactory
    default_job_options: JobOptions = dataclasses.field(default_factory=JobOptions)
    id_generator: JobIdGenerator = uuid_id

    events: EventChannel = dataclasses.field(init=False)
    _provider: QueueProvider = dataclasses.field(init=False, repr=False)
    _connected: bool = dataclasses.field(default=False, init=False, repr=False)
    _connect_lock: asyncio.Lock = dataclasses.field(
        default_factory=asyncio.Lock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._provider = self.provider.for_queue(self.name)
        self.events = EventChannel(queue_name=self.name)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._provider.capabilities

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def connect(self) -> Result[None, QueueError]:
        async with self._connect_lock:
            if self._connected:
                return Ok(None)
            result = await self._provider.connect()
            if isinstance(result, Ok):
                self._connected = True
            return self._observe(result)

    async def disconnect(self) -> Result[None, QueueError]:
        async with self._connect_lock:
            if not self._connected:
                return Ok(None)
            self._connected = False
            return self._observe(await self._provider.disconnect())

    async def __aenter__(self) -> Queue:
        match await self.connect():
            case Err(error):
                raise error
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.disconnect()

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
    # Producer operations                                                  #
    # ------------------------------------------------------------------ #

    async def add(
        self,
        name: str,
        data: Any,
        options: JobOptions | None = None,
    ) -> Result[Job, QueueError]:
        """Validate, normalize and enqueue one job."""
        built = self._build(name, data, options)
        if isinstance(built, Err):
            return built
        job, normalized = built.value
        if (failure := await self._ensure_connected()) is not None:
            return failure
        return self._observe(await self._provider.add(job, normalized))

    async def add_bulk(self, entries: Sequence[BulkEntry]) -> Result[list[Job], QueueError]:
        """Enqueue several jobs in one backend call. Requires supports_batching."""
        if (error := check_batch_size(len(entries), self.capabilities)) is not None:
            return Err(error)
        built: list[tuple[Job, JobOptions]] = []
        for entry in entries:
            name, data, *rest = entry
            match self._build(name, data, rest[0] if rest else None):
                case Err() as err:
                    return err
                case Ok(pair):
                    built.append(pair)
        if (failure := await self._ensure_connected()) is not None:
            return failure
        return self._observe(await self._provider.add_bulk(built))

    def _build(
        self, name: str, data: Any, options: JobOptions | None
    ) -> Result[tuple[Job, JobOptions], QueueError]:
        normalized = normalize_options(options, self.default_job_options)
        match build_job(
            self.name,
            name,
            data,
            normalized,
            self.capabilities,
            id_generator=self.id_generator,
            now=utcnow(),
        ):
            case Err() as err:
                return err
            case Ok(job):
                return Ok((job, normalized))

    async def get_job(self, job_id: str) -> Result[Job | None, QueueError]:
        if (failure := await self._ensure_connected()) is not None:
            return failure
        return self._observe(await self._provider.get_job(job_id))

    # ------------------------------------------------------------------ #
    # Queue management                                                     #
    # ------------------------------------------------------------------ #

    async def pause(self) -> Result[None, QueueError]:
        """Stop intake on the backend and on local processing loops."""
        if (failure := await self._ensure_connected()) is not None:
            return failure
        result = self._observe(await self._provider.pause())
        if isinstance(result, Ok):
            logger.info("Queue %r paused", self.name)
            self.events.emit(QueueEvent.QUEUE_PAUSED, QueuePausedPayload(queue_name=self.name))
        return result

    async def resume(self) -> Result[None, QueueError]:
        if (failure := await self._ensure_connected()) is not None:
            return failure
        result = self._observe(await self._provider.resume())
        if isinstance(result, Ok):
            logger.info("Queue %r resumed", self.name)
            self.events.emit(
                QueueEvent.QUEUE_RESUMED, QueueResumedPayload(queue_name=self.name)
            )
        return result

    async def delete(self) -> Result[None, QueueError]:
        """Destroy the queue and every job in it. Not reversible."""
        if (failure := await self._ensure_connected()) is not None:
            return failure
        result = self._observe(await self._provider.delete())
        if isinstance(result, Ok):
            logger.warning("Queue %r deleted", self.name)
        return result

    async def get_stats(self) -> Result[QueueStats, QueueError]:
        if (failure := await self._ensure_connected()) is not None:
            return failure
        return self._observe(await self._provider.get_stats())

    async def get_health(self) -> Result[HealthStatus, QueueError]:
        if (failure := await self._ensure_connected()) is not None:
            return failure
        return self._observe(await self._provider.get_health())

    # ------------------------------------------------------------------ #
    # Capability-gated operations                                          #
    # ------------------------------------------------------------------ #

    async def get_dlq_jobs(self, limit: int = 100) -> Result[list[Job], QueueError]:
        if not self.capabilities.supports_dlq or not isinstance(
            self._provider, DeadLetterProvider
        ):
            return Err(unsupported_feature("dead-letter queue"))
        if (failure := await self._ensure_connected()) is not None:
            return failure
        return self._observe(await self._provider.get_dlq_jobs(limit))

    async def retry_job(self, job_id: str) -> Result[Job, QueueError]:
        """Move a dead-lettered job back to waiting with a fresh attempt budget."""
        if not self.capabilities.supports_retries or not isinstance(
            self._provider, DeadLetterProvider
        ):
            return Err(unsupported_feature("manual job retry"))
        if (failure := await self._ensure_connected()) is not None:
            return failure
        return self._observe(await self._provider.retry_job(job_id))

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    async def _ensure_connected(self) -> Err[QueueError] | None:
        if self._connected:
            return None
        match await self.connect():
            case Err() as err:
                return err
        return None

    def _observe(self, result: Result[T, QueueError]) -> Result[T, QueueError]:
        """Publish backend failures on `queue.error`; caller misuse is only returned."""
        if isinstance(result, Err) and not isinstance(result.error, ConfigurationError):
            self.events.emit(
                QueueEvent.QUEUE_ERROR,
                QueueErrorPayload(
                    queue_name=self.name,
                    error=ErrorInfo.from_error(result.error),
                ),
            )
        return result


__all__ = ["Queue"]
