"""
Unit tests for dead-letter inspection and replay.
"""

import pytest

from mailqueue.constants import PAYLOAD_FIELD, RecordOutcome
from mailqueue.exceptions import PoisonPayloadError
from mailqueue.queue.dead_letter import DeadLetterQueue
from mailqueue.queue.keys import QueueKeys
from mailqueue.store.memory import InMemoryQueueStore
from mailqueue.types.job import Job, LastError
from mailqueue.worker.processor import RecordProcessor
from tests.conftest import FakeClock, read_one, ready_jobs


@pytest.fixture
def dead_letters(store: InMemoryQueueStore, keys: QueueKeys, clock: FakeClock) -> DeadLetterQueue:
    return DeadLetterQueue(store, keys, clock=clock)


async def add_dead(store: InMemoryQueueStore, keys: QueueKeys, job: Job) -> str:
    return await store.stream_append(keys.dead_letter, {PAYLOAD_FIELD: job.encode()})


def failed_job(job_id: str) -> Job:
    return Job(
        id=job_id,
        attempts=5,
        max_attempts=5,
        failed_at=10,
        last_error=LastError(message="bounced", at=10),
    )


class TestListEntries:
    """Tests for DeadLetterQueue.list_entries."""

    @pytest.mark.asyncio
    async def test_lists_oldest_first(
        self,
        dead_letters: DeadLetterQueue,
        store: InMemoryQueueStore,
        keys: QueueKeys,
        clock: FakeClock,
    ):
        """Test that entries come back in insertion order with decoded jobs."""
        first = await add_dead(store, keys, failed_job("a"))
        clock.advance(1)
        second = await add_dead(store, keys, failed_job("b"))

        entries = await dead_letters.list_entries()

        assert [(entry_id, job.id) for entry_id, job in entries] == [(first, "a"), (second, "b")]

    @pytest.mark.asyncio
    async def test_undecodable_entry_listed_without_job(
        self,
        dead_letters: DeadLetterQueue,
        store: InMemoryQueueStore,
        keys: QueueKeys,
    ):
        """Test that a corrupt entry does not break listing."""
        entry_id = await store.stream_append(keys.dead_letter, {PAYLOAD_FIELD: "garbage"})

        assert await dead_letters.list_entries() == [(entry_id, None)]


class TestReplay:
    """Tests for DeadLetterQueue.replay."""

    @pytest.mark.asyncio
    async def test_replay_resets_job(
        self,
        dead_letters: DeadLetterQueue,
        store: InMemoryQueueStore,
        keys: QueueKeys,
        clock: FakeClock,
    ):
        """Test that a replayed job is back on the ready stream with a fresh budget."""
        entry_id = await add_dead(store, keys, failed_job("a"))

        replayed = await dead_letters.replay(entry_id)

        assert replayed.attempts == 0
        assert replayed.failed_at is None
        assert replayed.last_error is None
        assert replayed.queued_at == clock.now
        assert await store.stream_length(keys.dead_letter) == 0
        assert [job.id for job in await ready_jobs(store, keys)] == ["a"]

    @pytest.mark.asyncio
    async def test_replay_without_reset_allows_one_attempt(
        self,
        dead_letters: DeadLetterQueue,
        store: InMemoryQueueStore,
        keys: QueueKeys,
    ):
        """Test that keeping the counter still grants a final attempt."""
        entry_id = await add_dead(store, keys, failed_job("a"))

        replayed = await dead_letters.replay(entry_id, reset_attempts=False)

        assert replayed.attempts == 5
        assert replayed.max_attempts == 6

    @pytest.mark.asyncio
    async def test_replayed_job_is_delivered(
        self,
        dead_letters: DeadLetterQueue,
        processor: RecordProcessor,
        store: InMemoryQueueStore,
        keys: QueueKeys,
    ):
        """Test that a replayed job goes through normal processing."""
        entry_id = await add_dead(store, keys, failed_job("a"))
        await dead_letters.replay(entry_id)

        outcome = await processor.process_record(await read_one(store, keys))

        assert outcome == RecordOutcome.DELIVERED

    @pytest.mark.asyncio
    async def test_replay_missing_entry(self, dead_letters: DeadLetterQueue):
        """Test replaying an id that is not in the dead-letter stream."""
        assert await dead_letters.replay("1-0") is None

    @pytest.mark.asyncio
    async def test_replay_undecodable_entry(
        self,
        dead_letters: DeadLetterQueue,
        store: InMemoryQueueStore,
        keys: QueueKeys,
    ):
        """Test that a corrupt entry is left in place."""
        entry_id = await store.stream_append(keys.dead_letter, {PAYLOAD_FIELD: "garbage"})

        with pytest.raises(PoisonPayloadError):
            await dead_letters.replay(entry_id)

        assert await store.stream_length(keys.dead_letter) == 1
