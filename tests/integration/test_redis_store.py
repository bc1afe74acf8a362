"""
Integration tests for the Redis store and the full job lifecycle on top of it.
"""

from collections.abc import AsyncGenerator

import fakeredis
import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from mailqueue.config import Settings
from mailqueue.constants import PAYLOAD_FIELD, RecordOutcome
from mailqueue.exceptions import ConsumerGroupMissingError
from mailqueue.observability.metrics import MetricsCollector
from mailqueue.queue.backoff import BackoffPolicy
from mailqueue.queue.dead_letter import DeadLetterQueue
from mailqueue.queue.dedupe import DedupeMarkers
from mailqueue.queue.keys import QueueKeys
from mailqueue.queue.producer import Producer
from mailqueue.queue.scheduler import Scheduler
from mailqueue.reaper.main import RecoverySweep
from mailqueue.runtime import RunningFlag
from mailqueue.store.redis_store import RedisQueueStore
from mailqueue.types.job import Job
from mailqueue.worker.processor import RecordProcessor
from tests.conftest import CONSUMER, FakeClock, ScriptedTransport


@pytest_asyncio.fixture
async def redis_store() -> AsyncGenerator[RedisQueueStore]:
    """Create a Redis store backed by an in-process fake server."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    store = RedisQueueStore(client)

    yield store

    await client.flushall()
    await store.close()


class TestRedisQueueStore:
    """Tests for RedisQueueStore primitives."""

    @pytest.mark.asyncio
    async def test_ensure_group_is_idempotent(self, redis_store: RedisQueueStore):
        """Test that BUSYGROUP is ignored."""
        await redis_store.ensure_group("s", "g")
        await redis_store.ensure_group("s", "g")

        assert await redis_store.stream_length("s") == 0

    @pytest.mark.asyncio
    async def test_read_without_group(self, redis_store: RedisQueueStore):
        """Test that NOGROUP is translated."""
        await redis_store.stream_append("s", {"a": "1"})

        with pytest.raises(ConsumerGroupMissingError):
            await redis_store.stream_read_group("s", "g", "c", count=1, block_ms=0)

    @pytest.mark.asyncio
    async def test_read_ack_and_reclaim(self, redis_store: RedisQueueStore):
        """Test group reads, acknowledgement and reclaiming pending entries."""
        await redis_store.ensure_group("s", "g")
        first = await redis_store.stream_append("s", {"n": "1"})
        second = await redis_store.stream_append("s", {"n": "2"})

        entries = await redis_store.stream_read_group("s", "g", "dead", count=10, block_ms=0)
        assert [entry.entry_id for entry in entries] == [first, second]

        assert await redis_store.stream_ack("s", "g", first) == 1

        cursor, reclaimed = await redis_store.stream_reclaim_stale("s", "g", "live", 0)
        assert cursor == "0-0"
        assert [entry.entry_id for entry in reclaimed] == [second]
        assert reclaimed[0].fields == {"n": "2"}

    @pytest.mark.asyncio
    async def test_move_to_stream_skips_already_moved(self, redis_store: RedisQueueStore):
        """Test that the promotion script never appends a member twice."""
        await redis_store.sorted_set_add("z", "a", 1)
        await redis_store.sorted_set_add("z", "b", 2)

        assert await redis_store.move_to_stream("z", "s", ["a", "b"]) == 2
        assert await redis_store.move_to_stream("z", "s", ["a", "b"]) == 0

        entries = await redis_store.stream_range("s")
        assert [entry.payload for entry in entries] == ["a", "b"]
        assert await redis_store.sorted_set_cardinality("z") == 0

    @pytest.mark.asyncio
    async def test_transaction(self, redis_store: RedisQueueStore):
        """Test a schedule-and-ack transaction."""
        await redis_store.ensure_group("s", "g")
        await redis_store.stream_append("s", {"a": "1"})
        [entry] = await redis_store.stream_read_group("s", "g", "c", count=1, block_ms=0)

        await (
            redis_store.transaction()
            .sorted_set_add("z", "member", 10)
            .stream_ack("s", "g", entry.entry_id)
            .execute()
        )

        assert await redis_store.sorted_set_range_by_score("z", 0, 10, 10) == ["member"]
        _, pending = await redis_store.stream_reclaim_stale("s", "g", "c", 0)
        assert pending == []

    @pytest.mark.asyncio
    async def test_keys(self, redis_store: RedisQueueStore):
        """Test marker key primitives."""
        assert await redis_store.key_set_if_absent("k", "a", 60_000) is True
        assert await redis_store.key_set_if_absent("k", "b", 60_000) is False
        assert await redis_store.key_get("k") == "a"
        assert await redis_store.key_expire("k", 120_000) is True
        assert await redis_store.key_delete("k") == 1
        assert await redis_store.key_get("k") is None
        assert await redis_store.key_expire("k", 1_000) is False


class TestLifecycleOnRedis:
    """End-to-end job lifecycle against the Redis store."""

    @pytest.fixture
    def settings(self) -> Settings:
        return Settings(
            queue_stream_key="it:stream",
            queue_group_name="it-group",
            worker_id=CONSUMER,
            queue_max_attempts=2,
            retry_base_delay_ms=1_000,
            retry_max_delay_ms=1_000,
        )

    @pytest.mark.asyncio
    async def test_retry_then_dead_letter_then_replay(
        self,
        redis_store: RedisQueueStore,
        settings: Settings,
    ):
        """Test failure handling, the dead-letter stream and replay on Redis."""
        clock = FakeClock()
        metrics = MetricsCollector(registry=CollectorRegistry())
        keys = QueueKeys.from_settings(settings)
        await redis_store.ensure_group(keys.stream, keys.group)

        producer = Producer.from_settings(redis_store, settings, metrics=metrics, clock=clock)
        transport = ScriptedTransport(failures=2)
        processor = RecordProcessor(
            redis_store,
            keys,
            transport,
            DedupeMarkers.from_settings(redis_store, settings, clock=clock),
            BackoffPolicy.from_settings(settings),
            metrics=metrics,
            clock=clock,
        )
        scheduler = Scheduler.from_settings(redis_store, RunningFlag(), settings, clock=clock)
        dead_letters = DeadLetterQueue.from_settings(redis_store, settings, clock=clock)

        result = await producer.enqueue_email({"to": "a@example.com"}, dedupe_key="once")
        assert (await producer.enqueue_email({}, dedupe_key="once")).accepted is False

        async def process_next() -> RecordOutcome:
            [entry] = await redis_store.stream_read_group(
                keys.stream, keys.group, CONSUMER, count=1, block_ms=0
            )
            return await processor.process_record(entry)

        assert await process_next() == RecordOutcome.RETRIED
        clock.advance(1_000)
        assert await scheduler.promote_scheduled() == 1
        assert await process_next() == RecordOutcome.DEAD_LETTERED

        [(entry_id, dead)] = await dead_letters.list_entries()
        assert dead.id == result.job_id
        assert dead.attempts == 2
        assert dead.last_error.message == "smtp unavailable"

        # Marker released on dead-letter
        other = await producer.enqueue_email({}, dedupe_key="once")
        assert other.accepted is True

        replayed = await dead_letters.replay(entry_id)
        assert replayed.attempts == 0
        assert await redis_store.stream_length(keys.dead_letter) == 0

        # The resubmitted job and the replayed one are both delivered
        assert await process_next() == RecordOutcome.DELIVERED
        assert await process_next() == RecordOutcome.DELIVERED
        assert {job.id for job in transport.delivered} == {result.job_id, other.job_id}
        assert await redis_store.stream_length(keys.stream) == 0

    @pytest.mark.asyncio
    async def test_recovery_sweep_reclaims_abandoned_entry(
        self,
        redis_store: RedisQueueStore,
        settings: Settings,
    ):
        """Test that XAUTOCLAIM-based recovery delivers an entry left by a dead consumer."""
        keys = QueueKeys.from_settings(settings)
        await redis_store.ensure_group(keys.stream, keys.group)
        await redis_store.stream_append(keys.stream, {PAYLOAD_FIELD: Job(id="lost").encode()})
        await redis_store.stream_read_group(keys.stream, keys.group, "crashed", count=1, block_ms=0)

        transport = ScriptedTransport()
        processor = RecordProcessor.from_settings(
            redis_store,
            transport,
            settings,
            metrics=MetricsCollector(registry=CollectorRegistry()),
        )
        running = RunningFlag()
        running.start()
        sweep = RecoverySweep(
            redis_store,
            keys,
            processor,
            running,
            consumer_name=CONSUMER,
            visibility_timeout_ms=0,
            metrics=processor._metrics,
        )

        assert await sweep.recover_pending() == 1
        assert [job.id for job in transport.delivered] == ["lost"]
        _, pending = await redis_store.stream_reclaim_stale(keys.stream, keys.group, CONSUMER, 0)
        assert pending == []
