"""
jobport — provider-agnostic job queue with typed results and events.

Application code talks to Queue (producer) and Worker (consumer). Backends
plug in as providers that implement a small structural contract; every
operation returns a Result instead of raising, and failures are normalized
into one error taxonomy whatever the backend.

Quick start
-----------
    import asyncio
    from jobport import InMemoryProvider, JobOptions, Ok, Queue, Worker

    async def send_welcome(data, job):
        print("sending to", data["to"])
        return Ok({"sent": True})

    async def main():
        provider = InMemoryProvider()
        async with Queue("emails", provider) as queue:
            await queue.add("send-welcome", {"to": "user@example.com"},
                            JobOptions(attempts=3))
            async with Worker("emails", send_welcome, provider, concurrency=4):
                await asyncio.sleep(1)

    asyncio.run(main())

Providers
---------
Built-in (no extra deps):
  - InMemoryProvider       — push + pull, every capability; tests and dev
  - ObjectStorageProvider  — pull only, one CAS-guarded JSON document per queue

ObjectStorageProvider runs over any ObjectStoragePort:
  - InMemoryStorage, LocalFileSystemStorage   (no extra deps)
  - S3Storage   (pip install "jobport[s3]")
  - GCSStorage  (pip install "jobport[gcs]")

Custom providers implement QueueProvider plus PullProvider and/or
PushProvider (and DeadLetterProvider when they keep failed jobs).

Architecture
------------
Ports & Adapters:
  domain/   — value types (Job, JobOptions, errors, events, Result)
  ports/    — Protocol interfaces (providers, object storage)
  core/     — Queue, Worker, option normalization, error mapper, events
  adapters/ — concrete providers and storage backends
"""

from __future__ import annotations

from jobport.adapters.providers.memory import InMemoryProvider
from jobport.adapters.providers.object_storage import ObjectStorageProvider
from jobport.adapters.storage.filesystem import LocalFileSystemStorage
from jobport.adapters.storage.memory import InMemoryStorage
from jobport.core.error_mapper import ErrorMapper, ErrorRule, map_error
from jobport.core.events import EventChannel
from jobport.core.ids import prefixed_id, uuid_id
from jobport.core.queue import Queue
from jobport.core.worker import Worker
from jobport.domain.errors import (
    ConfigurationCode,
    ConfigurationError,
    DataCode,
    DataError,
    ErrorKind,
    NotFoundCode,
    NotFoundError,
    QueueError,
    QueueRuntimeError,
    RuntimeCode,
)
from jobport.domain.events import ErrorInfo, QueueEvent
from jobport.domain.models import (
    ActiveJob,
    BackoffPolicy,
    HealthStatus,
    Job,
    JobOptions,
    JobStatus,
    NackOutcome,
    ProviderCapabilities,
    ProviderOptions,
    QueueStats,
)
from jobport.domain.result import Err, Ok, Result
from jobport.ports.provider import (
    DeadLetterProvider,
    ProcessOptions,
    Processor,
    ProviderFactory,
    PullProvider,
    PushProvider,
    QueueProvider,
)
from jobport.ports.storage import ObjectStoragePort

__all__ = [
    # Client API
    "Queue",
    "Worker",
    # Domain models
    "ActiveJob",
    "BackoffPolicy",
    "HealthStatus",
    "Job",
    "JobOptions",
    "JobStatus",
    "NackOutcome",
    "ProviderCapabilities",
    "ProviderOptions",
    "QueueStats",
    # Results and errors
    "Ok",
    "Err",
    "Result",
    "QueueError",
    "ConfigurationError",
    "DataError",
    "NotFoundError",
    "QueueRuntimeError",
    "ErrorKind",
    "ConfigurationCode",
    "DataCode",
    "NotFoundCode",
    "RuntimeCode",
    "ErrorMapper",
    "ErrorRule",
    "map_error",
    # Events
    "EventChannel",
    "ErrorInfo",
    "QueueEvent",
    # Job ids
    "uuid_id",
    "prefixed_id",
    # Ports (for typing custom adapters)
    "QueueProvider",
    "PullProvider",
    "PushProvider",
    "DeadLetterProvider",
    "ProviderFactory",
    "ProcessOptions",
    "Processor",
    "ObjectStoragePort",
    # Built-in adapters
    "InMemoryProvider",
    "ObjectStorageProvider",
    "InMemoryStorage",
    "LocalFileSystemStorage",
]
