import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobport.adapters.providers.memory import InMemoryProvider
from jobport.adapters.providers.object_storage import ObjectStorageProvider
from jobport.adapters.storage.memory import InMemoryStorage
from jobport.core.queue import Queue
from jobport.core.worker import Worker
from jobport.domain.errors import (
    ConfigurationCode,
    DataCode,
    DataError,
    QueueRuntimeError,
    RuntimeCode,
)
from jobport.domain.events import QueueEvent
from jobport.domain.models import BackoffPolicy, JobOptions, JobStatus
from jobport.domain.result import Err, Ok

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def fast() -> InMemoryProvider:
    return InMemoryProvider(idle_interval=0.01, backoff=BackoffPolicy(type="fixed", delay=0))


@pytest.fixture
async def queue(fast):
    async with Queue("q", fast) as q:
        yield q


def _record(worker: Worker, *events: QueueEvent) -> list[tuple[QueueEvent, object]]:
    seen: list[tuple[QueueEvent, object]] = []
    for event in events:
        worker.on(event, lambda payload, event=event: seen.append((event, payload)))
    return seen


async def _until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


def _names(seen) -> list[QueueEvent]:
    return [event for event, _ in seen]


# ---------------------------------------------------------------------------
# Push mode
# ---------------------------------------------------------------------------


async def test_push_mode_completes_jobs(fast, queue):
    async def handler(data, job):
        return data["n"] * 2

    worker = Worker("q", handler, fast, concurrency=2)
    seen = _record(worker, QueueEvent.ACTIVE, QueueEvent.COMPLETED)
    job = (await queue.add("double", {"n": 21})).unwrap()

    async with worker:
        assert worker.is_running
        await _until(lambda: QueueEvent.COMPLETED in _names(seen))

    active = dict(seen)[QueueEvent.ACTIVE]
    completed = dict(seen)[QueueEvent.COMPLETED]
    assert active.job_id == job.id
    assert active.attempts == 1
    assert completed.result == 42
    assert completed.duration >= 0
    assert (await queue.get_job(job.id)).unwrap().status == JobStatus.COMPLETED


async def test_push_mode_retries_then_fails(fast, queue):
    async def handler(data, job):
        raise ConnectionResetError("peer reset")

    worker = Worker("q", handler, fast)
    seen = _record(worker, QueueEvent.JOB_RETRYING, QueueEvent.FAILED)
    await queue.add("t", None, JobOptions(attempts=2))

    async with worker:
        await _until(lambda: QueueEvent.FAILED in _names(seen))

    assert _names(seen) == [QueueEvent.JOB_RETRYING, QueueEvent.FAILED]
    retrying, failed = (payload for _, payload in seen)
    assert retrying.attempts == 1
    assert retrying.error.code == "CONNECTION"
    assert failed.attempts == 2
    assert failed.max_attempts == 2
    assert failed.will_retry is False


async def test_unclassified_error_is_not_retried(fast, queue):
    async def handler(data, job):
        raise ValueError("bad input")

    worker = Worker("q", handler, fast)
    seen = _record(worker, QueueEvent.JOB_RETRYING, QueueEvent.FAILED)
    await queue.add("t", None, JobOptions(attempts=5))

    async with worker:
        await _until(lambda: bool(seen))

    [(event, payload)] = seen
    assert event is QueueEvent.FAILED
    assert payload.attempts == 1
    assert payload.error.code == "PROCESSING"


async def test_handler_returning_err_fails_the_job(fast, queue):
    async def handler(data, job):
        return Err(DataError("missing field", code=DataCode.VALIDATION))

    worker = Worker("q", handler, fast)
    seen = _record(worker, QueueEvent.FAILED)
    await queue.add("t", None)

    async with worker:
        await _until(lambda: bool(seen))
    assert seen[0][1].error.kind == "DataError"
    assert seen[0][1].error.code == "VALIDATION"


async def test_handler_returning_ok_unwraps_value(fast, queue):
    async def handler(data, job):
        return Ok({"sent": True})

    worker = Worker("q", handler, fast)
    seen = _record(worker, QueueEvent.COMPLETED)
    job = (await queue.add("t", None)).unwrap()

    async with worker:
        await _until(lambda: bool(seen))
    assert seen[0][1].result == {"sent": True}
    assert (await queue.get_job(job.id)).unwrap().result == {"sent": True}


async def test_push_shutdown_timeout(fast, queue):
    started = asyncio.Event()

    async def handler(data, job):
        started.set()
        await asyncio.sleep(60)

    worker = Worker("q", handler, fast)
    seen = _record(
        worker, QueueEvent.PROCESSOR_SHUTTING_DOWN, QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT
    )
    job = (await queue.add("t", None, JobOptions(attempts=3))).unwrap()
    assert await worker.start() == Ok(None)
    await asyncio.wait_for(started.wait(), 1.0)

    assert await worker.close(timeout=0.05) == Ok(None)
    assert _names(seen) == [
        QueueEvent.PROCESSOR_SHUTTING_DOWN,
        QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT,
    ]
    assert seen[0][1].active_jobs == 1
    assert seen[1][1].pending_jobs == 1
    assert (await queue.get_job(job.id)).unwrap().status == JobStatus.WAITING


async def test_shutdown_timeout_counts_only_cancelled_handlers(fast, queue):
    started = 0

    async def handler(data, job):
        nonlocal started
        started += 1
        await asyncio.sleep(0.01 if data == "quick" else 60)

    worker = Worker("q", handler, fast, concurrency=2)
    seen = _record(worker, QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT)
    await queue.add("t", "quick")
    await queue.add("t", "stuck")
    await worker.start()
    await _until(lambda: started == 2)

    await worker.close(timeout=0.5)
    [(_, timed_out)] = seen
    assert timed_out.pending_jobs == 1


async def test_push_worker_outlives_producer_context(fast):
    handled = []

    async def handler(data, job):
        handled.append(data)

    worker = Worker("q", handler, fast)
    errors = _record(worker, QueueEvent.QUEUE_ERROR)
    async with worker:
        async with Queue("q", fast) as producer:
            await producer.add("t", 1)
            await _until(lambda: handled == [1])
        async with Queue("q", fast) as producer:
            await producer.add("t", 2)
        await _until(lambda: handled == [1, 2])
        assert worker.is_running
    assert errors == []
    assert not fast.for_queue("q").connected


# ---------------------------------------------------------------------------
# Pull mode
# ---------------------------------------------------------------------------


async def test_pull_mode_over_memory(fast, queue):
    handled = []

    async def handler(data, job):
        handled.append(data)

    worker = Worker("q", handler, fast, mode="pull", poll_interval=0.01, concurrency=3)
    seen = _record(worker, QueueEvent.COMPLETED, QueueEvent.QUEUE_DRAINED)
    for i in range(5):
        await queue.add("t", i)

    async with worker:
        await _until(lambda: QueueEvent.QUEUE_DRAINED in _names(seen))

    assert sorted(handled) == [0, 1, 2, 3, 4]
    assert _names(seen).count(QueueEvent.COMPLETED) == 5
    assert (await queue.get_stats()).unwrap().completed == 5


async def test_pull_mode_respects_concurrency(fast, queue):
    running = 0
    peak = 0
    done = 0

    async def handler(data, job):
        nonlocal running, peak, done
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        done += 1

    for i in range(8):
        await queue.add("t", i)
    async with Worker("q", handler, fast, mode="pull", poll_interval=0.01, concurrency=3):
        await _until(lambda: done == 8)
    assert peak == 3


async def test_auto_mode_pulls_from_object_storage():
    storage = InMemoryStorage()
    provider = ObjectStorageProvider(storage_for=lambda name: storage)

    async def handler(data, job):
        return {"echo": data}

    async with Queue("q", provider) as queue:
        job = (await queue.add("t", {"x": 1})).unwrap()
        worker = Worker("q", handler, provider, poll_interval=0.01)
        seen = _record(worker, QueueEvent.COMPLETED)
        async with worker:
            await _until(lambda: bool(seen))
        stored = (await queue.get_job(job.id)).unwrap()
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == {"echo": {"x": 1}}


async def test_push_mode_requires_push_provider():
    provider = ObjectStorageProvider(storage_for=lambda name: InMemoryStorage())

    async def handler(data, job):
        return None

    worker = Worker("q", handler, provider, mode="push")
    result = await worker.start()
    assert isinstance(result, Err)
    assert result.error.code is ConfigurationCode.UNSUPPORTED_FEATURE
    assert result.error.message == "provider does not support push delivery"


async def test_pull_shutdown_cancels_and_requeues(fast, queue):
    started = asyncio.Event()

    async def handler(data, job):
        started.set()
        await asyncio.sleep(60)

    worker = Worker("q", handler, fast, mode="pull", poll_interval=0.01)
    seen = _record(
        worker, QueueEvent.JOB_RETRYING, QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT
    )
    job = (await queue.add("t", None, JobOptions(attempts=3))).unwrap()
    await worker.start()
    await asyncio.wait_for(started.wait(), 1.0)

    await worker.close(timeout=0.05)
    assert _names(seen) == [QueueEvent.JOB_RETRYING, QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT]
    assert seen[0][1].error.message == "processing interrupted by shutdown"
    assert not worker.is_running
    assert worker.in_flight == 0
    stored = (await queue.get_job(job.id)).unwrap()
    assert stored.status == JobStatus.WAITING
    assert stored.attempts == 1


async def test_pull_mode_retries_then_fails(fast, queue):
    async def handler(data, job):
        raise ConnectionResetError("peer reset")

    worker = Worker("q", handler, fast, mode="pull", poll_interval=0.01)
    seen = _record(worker, QueueEvent.JOB_RETRYING, QueueEvent.FAILED)
    await queue.add("t", None, JobOptions(attempts=2))

    async with worker:
        await _until(lambda: QueueEvent.FAILED in _names(seen))

    assert _names(seen) == [QueueEvent.JOB_RETRYING, QueueEvent.FAILED]
    retrying, failed = (payload for _, payload in seen)
    assert (retrying.attempts, retrying.will_retry) == (1, True)
    assert retrying.error.code == "CONNECTION"
    assert (failed.attempts, failed.max_attempts, failed.will_retry) == (2, 2, False)


async def test_pull_worker_outlives_producer_context(fast):
    handled = []

    async def handler(data, job):
        handled.append(data)

    worker = Worker("q", handler, fast, mode="pull", poll_interval=0.01)
    errors = _record(worker, QueueEvent.QUEUE_ERROR)
    async with worker:
        async with Queue("q", fast) as producer:
            await producer.add("t", 1)
        await asyncio.sleep(0.05)
        async with Queue("q", fast) as producer:
            await producer.add("t", 2)
        await _until(lambda: handled == [1, 2])
    assert errors == []
    assert not fast.for_queue("q").connected


async def test_close_without_finishing_active_jobs(fast, queue):
    started = asyncio.Event()

    async def handler(data, job):
        started.set()
        await asyncio.sleep(60)

    worker = Worker("q", handler, fast, mode="pull", poll_interval=0.01)
    seen = _record(worker, QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT)
    await queue.add("t", None)
    await worker.start()
    await asyncio.wait_for(started.wait(), 1.0)

    loop = asyncio.get_running_loop()
    began = loop.time()
    await worker.close(timeout=30, finish_active_jobs=False)
    assert loop.time() - began < 5
    assert seen[0][1].timeout == 0.0


async def test_graceful_close_waits_for_handlers(fast, queue):
    started = asyncio.Event()

    async def handler(data, job):
        started.set()
        await asyncio.sleep(0.05)
        return "finished"

    worker = Worker("q", handler, fast, mode="pull", poll_interval=0.01)
    seen = _record(worker, QueueEvent.COMPLETED, QueueEvent.PROCESSOR_SHUTDOWN_TIMEOUT)
    await queue.add("t", None)
    await worker.start()
    await asyncio.wait_for(started.wait(), 1.0)

    await worker.close(timeout=5)
    assert _names(seen) == [QueueEvent.COMPLETED]


async def test_fetch_failure_is_published_and_loop_continues():
    factory = MagicMock()
    bound = factory.for_queue.return_value
    bound.connect = AsyncMock(return_value=Ok(None))
    failure = QueueRuntimeError("broker down", code=RuntimeCode.CONNECTION, retryable=True)
    bound.fetch = AsyncMock(return_value=Err(failure))
    bound.disconnect = AsyncMock(return_value=Ok(None))

    async def handler(data, job):
        return None

    worker = Worker("q", handler, factory, mode="pull", error_backoff=0.01)
    errors = _record(worker, QueueEvent.QUEUE_ERROR)
    await worker.start()
    await _until(lambda: len(errors) >= 2)
    await worker.close()
    assert errors[0][1].error.code == "CONNECTION"
    bound.disconnect.assert_awaited_once()


async def test_listener_failure_does_not_stop_worker(fast, queue, caplog):
    completed = []

    async def handler(data, job):
        return data

    def explode(payload):
        raise RuntimeError("listener bug")

    worker = Worker("q", handler, fast)
    worker.on(QueueEvent.ACTIVE, explode)
    worker.on(QueueEvent.COMPLETED, completed.append)
    await queue.add("t", 1)
    await queue.add("t", 2)

    with caplog.at_level(logging.ERROR, logger="jobport.core.worker"):
        async with worker:
            await _until(lambda: len(completed) == 2)
    assert "Listener for 'active'" in caplog.text


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_start_is_idempotent_and_close_is_final(fast):
    async def handler(data, job):
        return None

    worker = Worker("q", handler, fast)
    assert await worker.start() == Ok(None)
    assert await worker.start() == Ok(None)
    await asyncio.gather(worker.close(), worker.close())
    assert not worker.is_running
    assert isinstance(await worker.start(), Err)


async def test_invalid_concurrency(fast):
    async def handler(data, job):
        return None

    result = await Worker("q", handler, fast, concurrency=0).start()
    assert isinstance(result, Err)
