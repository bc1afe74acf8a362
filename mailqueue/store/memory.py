"""
In-process implementation of the queue store.

Mirrors the stream, consumer-group, sorted-set and expiring-key semantics the
queue relies on so the queue can run without an external store (tests, local
development). State lives in this object only; nothing is durable.
"""

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from mailqueue.constants import PAYLOAD_FIELD, STREAM_START_ID
from mailqueue.exceptions import ConsumerGroupMissingError
from mailqueue.runtime import Clock, now_ms
from mailqueue.store.base import QueueStore, StoreTransaction
from mailqueue.types.job import StreamEntry

EntryId = tuple[int, int]


def parse_entry_id(entry_id: str) -> EntryId:
    """Parse a `<ms>-<seq>` stream id into a sortable tuple."""
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


def format_entry_id(entry_id: EntryId) -> str:
    return f"{entry_id[0]}-{entry_id[1]}"


@dataclass
class _PendingEntry:
    consumer: str
    delivered_at: int
    delivery_count: int = 1


@dataclass
class _ConsumerGroup:
    last_delivered: EntryId = (0, 0)
    pending: dict[str, _PendingEntry] = field(default_factory=dict)


@dataclass
class _Stream:
    entries: dict[str, dict[str, str]] = field(default_factory=dict)
    groups: dict[str, _ConsumerGroup] = field(default_factory=dict)
    last_id: EntryId = (0, 0)


class InMemoryQueueStore(QueueStore):
    """
    Queue store backed by plain dictionaries.

    Every public operation completes without yielding to the event loop
    (except the wait inside a blocking read), so each call and each
    transaction is atomic with respect to other tasks.
    """

    def __init__(self, clock: Clock = now_ms):
        self._clock = clock
        self._streams: dict[str, _Stream] = {}
        self._sorted_sets: dict[str, dict[str, int]] = {}
        self._keys: dict[str, tuple[str, int | None]] = {}
        self._appended = asyncio.Event()

    # Streams

    async def ensure_group(self, stream: str, group: str) -> None:
        state = self._streams.setdefault(stream, _Stream())
        state.groups.setdefault(group, _ConsumerGroup())

    async def stream_append(self, stream: str, fields: dict[str, str]) -> str:
        return self._append(stream, fields)

    async def stream_read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int,
        block_ms: int,
    ) -> list[StreamEntry]:
        self._group(stream, group)
        entries = self._claim_new(stream, group, consumer, count)
        if entries or block_ms <= 0:
            return entries

        appended = self._appended
        try:
            await asyncio.wait_for(appended.wait(), timeout=block_ms / 1000)
        except TimeoutError:
            return []
        return self._claim_new(stream, group, consumer, count)

    async def stream_ack(self, stream: str, group: str, *entry_ids: str) -> int:
        return self._ack(stream, group, entry_ids)

    async def stream_reclaim_stale(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        start_id: str = STREAM_START_ID,
        count: int = 10,
    ) -> tuple[str, list[StreamEntry]]:
        consumer_group = self._group(stream, group)
        state = self._streams[stream]
        now = self._clock()
        start = parse_entry_id(start_id)

        candidates = sorted(
            (entry_id for entry_id in consumer_group.pending if parse_entry_id(entry_id) >= start),
            key=parse_entry_id,
        )

        claimed: list[StreamEntry] = []
        cursor = STREAM_START_ID
        for entry_id in candidates:
            if len(claimed) >= count:
                cursor = entry_id
                break
            pending = consumer_group.pending[entry_id]
            if now - pending.delivered_at < min_idle_ms:
                continue
            fields = state.entries.get(entry_id)
            if fields is None:
                # Deleted while pending; reported with no fields
                del consumer_group.pending[entry_id]
                claimed.append(StreamEntry(entry_id=entry_id, fields={}))
                continue
            pending.consumer = consumer
            pending.delivered_at = now
            pending.delivery_count += 1
            claimed.append(StreamEntry(entry_id=entry_id, fields=dict(fields)))

        return cursor, claimed

    async def stream_length(self, stream: str) -> int:
        state = self._streams.get(stream)
        return len(state.entries) if state else 0

    async def stream_range(
        self,
        stream: str,
        start: str = "-",
        end: str = "+",
        count: int | None = None,
    ) -> list[StreamEntry]:
        state = self._streams.get(stream)
        if state is None:
            return []
        low = (0, 0) if start == "-" else parse_entry_id(start)
        high = None if end == "+" else parse_entry_id(end)

        result: list[StreamEntry] = []
        for entry_id, fields in state.entries.items():
            parsed = parse_entry_id(entry_id)
            if parsed < low or (high is not None and parsed > high):
                continue
            result.append(StreamEntry(entry_id=entry_id, fields=dict(fields)))
            if count is not None and len(result) >= count:
                break
        return result

    async def stream_delete(self, stream: str, *entry_ids: str) -> int:
        return self._delete(stream, entry_ids)

    def pending_count(self, stream: str, group: str) -> int:
        """Number of delivered but unacknowledged entries in a group."""
        return len(self._group(stream, group).pending)

    # Sorted sets

    async def sorted_set_add(self, key: str, member: str, score: int) -> None:
        self._sorted_sets.setdefault(key, {})[member] = score

    async def sorted_set_range_by_score(
        self,
        key: str,
        min_score: int,
        max_score: int,
        limit: int,
    ) -> list[str]:
        members = self._sorted_sets.get(key, {})
        ordered = sorted(members.items(), key=lambda item: (item[1], item[0]))
        due = [member for member, score in ordered if min_score <= score <= max_score]
        return due[:limit]

    async def sorted_set_remove(self, key: str, *members: str) -> int:
        removed = sum(1 for member in members if self._zrem(key, member))
        return removed

    async def sorted_set_cardinality(self, key: str) -> int:
        return len(self._sorted_sets.get(key, {}))

    def sorted_set_score(self, key: str, member: str) -> int | None:
        """Score of a member, or None if absent."""
        return self._sorted_sets.get(key, {}).get(member)

    async def move_to_stream(
        self,
        key: str,
        stream: str,
        members: Sequence[str],
    ) -> int:
        moved = 0
        for member in members:
            if self._zrem(key, member):
                self._append(stream, {PAYLOAD_FIELD: member})
                moved += 1
        return moved

    # Keys

    async def key_set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if self._live_value(key) is not None:
            return False
        self._keys[key] = (value, self._clock() + ttl_ms)
        return True

    async def key_get(self, key: str) -> str | None:
        return self._live_value(key)

    async def key_expire(self, key: str, ttl_ms: int) -> bool:
        value = self._live_value(key)
        if value is None:
            return False
        self._keys[key] = (value, self._clock() + ttl_ms)
        return True

    async def key_delete(self, key: str) -> int:
        return 1 if self._keys.pop(key, None) is not None else 0

    # Transactions

    def transaction(self) -> "InMemoryTransaction":
        return InMemoryTransaction(self)

    # Internal helpers, all synchronous

    def _group(self, stream: str, group: str) -> _ConsumerGroup:
        state = self._streams.get(stream)
        if state is None or group not in state.groups:
            raise ConsumerGroupMissingError(
                f"NOGROUP No such key '{stream}' or consumer group '{group}'"
            )
        return state.groups[group]

    def _next_id(self, state: _Stream) -> EntryId:
        ms = self._clock()
        last_ms, last_seq = state.last_id
        if ms > last_ms:
            return ms, 0
        return last_ms, last_seq + 1

    def _append(self, stream: str, fields: dict[str, str]) -> str:
        state = self._streams.setdefault(stream, _Stream())
        state.last_id = self._next_id(state)
        entry_id = format_entry_id(state.last_id)
        state.entries[entry_id] = dict(fields)

        # Wake blocked readers
        self._appended.set()
        self._appended = asyncio.Event()
        return entry_id

    def _claim_new(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int,
    ) -> list[StreamEntry]:
        consumer_group = self._group(stream, group)
        state = self._streams[stream]
        now = self._clock()

        claimed: list[StreamEntry] = []
        for entry_id, fields in state.entries.items():
            if len(claimed) >= count:
                break
            parsed = parse_entry_id(entry_id)
            if parsed <= consumer_group.last_delivered:
                continue
            consumer_group.last_delivered = parsed
            consumer_group.pending[entry_id] = _PendingEntry(consumer=consumer, delivered_at=now)
            claimed.append(StreamEntry(entry_id=entry_id, fields=dict(fields)))
        return claimed

    def _ack(self, stream: str, group: str, entry_ids: Sequence[str]) -> int:
        consumer_group = self._group(stream, group)
        return sum(
            1 for entry_id in entry_ids if consumer_group.pending.pop(entry_id, None) is not None
        )

    def _delete(self, stream: str, entry_ids: Sequence[str]) -> int:
        state = self._streams.get(stream)
        if state is None:
            return 0
        return sum(1 for entry_id in entry_ids if state.entries.pop(entry_id, None) is not None)

    def _zrem(self, key: str, member: str) -> bool:
        members = self._sorted_sets.get(key)
        if not members or member not in members:
            return False
        del members[member]
        if not members:
            del self._sorted_sets[key]
        return True

    def _live_value(self, key: str) -> str | None:
        item = self._keys.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._keys[key]
            return None
        return value


class InMemoryTransaction(StoreTransaction):
    """Buffered writes applied in one synchronous step."""

    def __init__(self, store: InMemoryQueueStore):
        self._store = store
        self._checks: list[Callable[[], object]] = []
        self._ops: list[Callable[[], object]] = []

    def stream_append(self, stream: str, fields: dict[str, str]) -> "InMemoryTransaction":
        self._ops.append(lambda: self._store._append(stream, fields))
        return self

    def stream_ack(self, stream: str, group: str, *entry_ids: str) -> "InMemoryTransaction":
        self._checks.append(lambda: self._store._group(stream, group))
        self._ops.append(lambda: self._store._ack(stream, group, entry_ids))
        return self

    def stream_delete(self, stream: str, *entry_ids: str) -> "InMemoryTransaction":
        self._ops.append(lambda: self._store._delete(stream, entry_ids))
        return self

    def sorted_set_add(self, key: str, member: str, score: int) -> "InMemoryTransaction":
        self._ops.append(lambda: self._store._sorted_sets.setdefault(key, {}).__setitem__(member, score))
        return self

    async def execute(self) -> None:
        # Checks run before any write
        for check in self._checks:
            check()
        for op in self._ops:
            op()
        self._checks.clear()
        self._ops.clear()
