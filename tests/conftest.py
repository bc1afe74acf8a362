"""
Pytest configuration and shared fixtures.
"""

from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from mailqueue.config import Settings
from mailqueue.constants import PAYLOAD_FIELD
from mailqueue.observability.metrics import MetricsCollector
from mailqueue.queue.backoff import BackoffPolicy
from mailqueue.queue.dedupe import DedupeMarkers
from mailqueue.queue.keys import QueueKeys
from mailqueue.queue.producer import Producer
from mailqueue.runtime import RunningFlag
from mailqueue.store.memory import InMemoryQueueStore
from mailqueue.transport.base import EmailTransport
from mailqueue.types.job import Job, StreamEntry
from mailqueue.worker.processor import RecordProcessor

START_MS = 1_700_000_000_000
CONSUMER = "test-worker"


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class ScriptedTransport(EmailTransport):
    """Fails the first `failures` deliveries, then succeeds."""

    def __init__(self, failures: int = 0, error: Exception | None = None):
        self.failures = failures
        self.error = error or RuntimeError("smtp unavailable")
        self.calls: list[Job] = []
        self.delivered: list[Job] = []

    async def deliver(self, job: Job) -> None:
        self.calls.append(job)
        if len(self.calls) <= self.failures:
            raise self.error
        self.delivered.append(job)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        queue_stream_key="test:stream",
        queue_group_name="test-group",
        worker_id=CONSUMER,
        worker_block_ms=0,
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def keys(test_settings: Settings) -> QueueKeys:
    """Create queue keys from the test settings."""
    return QueueKeys.from_settings(test_settings)


@pytest.fixture
def metrics() -> MetricsCollector:
    """Create a metrics collector with an isolated registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest_asyncio.fixture
async def store(clock: FakeClock, keys: QueueKeys) -> InMemoryQueueStore:
    """Create an in-memory store with the consumer group in place."""
    store = InMemoryQueueStore(clock=clock)
    await store.ensure_group(keys.stream, keys.group)
    return store


@pytest.fixture
def dedupe(store: InMemoryQueueStore, test_settings: Settings, clock: FakeClock) -> DedupeMarkers:
    """Create dedupe markers over the test store."""
    return DedupeMarkers.from_settings(store, test_settings, clock=clock)


@pytest.fixture
def producer(
    store: InMemoryQueueStore,
    test_settings: Settings,
    metrics: MetricsCollector,
    clock: FakeClock,
) -> Producer:
    """Create a producer over the test store."""
    return Producer.from_settings(store, test_settings, metrics=metrics, clock=clock)


@pytest.fixture
def transport() -> ScriptedTransport:
    """Create a transport that always succeeds."""
    return ScriptedTransport()


@pytest.fixture
def processor(
    store: InMemoryQueueStore,
    keys: QueueKeys,
    transport: ScriptedTransport,
    dedupe: DedupeMarkers,
    metrics: MetricsCollector,
    clock: FakeClock,
) -> RecordProcessor:
    """Create a record processor over the test store."""
    return RecordProcessor(
        store,
        keys,
        transport,
        dedupe,
        BackoffPolicy(),
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def running() -> RunningFlag:
    """Create a running flag that is already started."""
    flag = RunningFlag()
    flag.start()
    return flag


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Create a sample email payload."""
    return {
        "to": "player@example.com",
        "template": "welcome",
        "variables": {"name": "Alex"},
    }


async def read_one(store: InMemoryQueueStore, keys: QueueKeys) -> StreamEntry:
    """Read exactly one new entry from the ready stream."""
    entries = await store.stream_read_group(keys.stream, keys.group, CONSUMER, count=1, block_ms=0)
    assert len(entries) == 1
    return entries[0]


async def ready_jobs(store: InMemoryQueueStore, keys: QueueKeys) -> list[Job]:
    """Decode every job on the ready stream."""
    return [Job.decode(entry.fields[PAYLOAD_FIELD]) for entry in await store.stream_range(keys.stream)]


async def scheduled_jobs(store: InMemoryQueueStore, keys: QueueKeys) -> list[Job]:
    """Decode every job in the schedule set, earliest first."""
    members = await store.sorted_set_range_by_score(keys.schedule, 0, 2**63, 1000)
    return [Job.decode(member) for member in members]


async def dead_letter_jobs(store: InMemoryQueueStore, keys: QueueKeys) -> list[Job]:
    """Decode every job on the dead-letter stream."""
    return [
        Job.decode(entry.fields[PAYLOAD_FIELD])
        for entry in await store.stream_range(keys.dead_letter)
    ]
