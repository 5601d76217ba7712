from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from jobport.adapters.providers.memory import InMemoryProvider, InMemoryQueueProvider
from jobport.core.options import build_job
from jobport.domain.models import Job, JobOptions, ProviderCapabilities

JobFactory = Callable[..., Job]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_job() -> JobFactory:
    """Build a validated Job the way Queue.add() does."""

    def _make(
        job_id: str,
        options: JobOptions | None = None,
        *,
        data: object = None,
        capabilities: ProviderCapabilities | None = None,
        now: datetime | None = None,
        queue_name: str = "q",
    ) -> Job:
        return build_job(
            queue_name,
            "task",
            data,
            options or JobOptions(),
            capabilities or InMemoryProvider().capabilities,
            id_generator=lambda: job_id,
            now=now or datetime.now(UTC),
        ).unwrap()

    return _make


@pytest.fixture
def memory() -> InMemoryProvider:
    return InMemoryProvider(idle_interval=0.01)


@pytest.fixture
async def bound(memory: InMemoryProvider) -> InMemoryQueueProvider:
    provider = memory.for_queue("q")
    await provider.connect()
    yield provider
    await provider.disconnect()
