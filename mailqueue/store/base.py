"""
Durable store interface consumed by the queue.

The queue depends only on these primitives: an append-only stream with
consumer-group read/ack/reclaim, a sorted set keyed by due time, a key/value
namespace for dedupe markers, and atomic multi-operation transactions.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from mailqueue.constants import STREAM_START_ID
from mailqueue.types.job import StreamEntry


class StoreTransaction(ABC):
    """
    A batch of writes applied atomically by `execute()`.

    Builder methods return the transaction so calls can be chained.
    """

    @abstractmethod
    def stream_append(self, stream: str, fields: dict[str, str]) -> "StoreTransaction": ...

    @abstractmethod
    def stream_ack(self, stream: str, group: str, *entry_ids: str) -> "StoreTransaction": ...

    @abstractmethod
    def stream_delete(self, stream: str, *entry_ids: str) -> "StoreTransaction": ...

    @abstractmethod
    def sorted_set_add(self, key: str, member: str, score: int) -> "StoreTransaction": ...

    @abstractmethod
    async def execute(self) -> None: ...


class QueueStore(ABC):
    """Primitive surface of the shared durable store."""

    # Streams

    @abstractmethod
    async def ensure_group(self, stream: str, group: str) -> None:
        """Create the consumer group (and stream) if missing."""

    @abstractmethod
    async def stream_append(self, stream: str, fields: dict[str, str]) -> str:
        """Append an entry. Returns the entry id."""

    @abstractmethod
    async def stream_read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int,
        block_ms: int,
    ) -> list[StreamEntry]:
        """
        Read up to `count` never-delivered entries as `consumer`.

        Waits up to `block_ms` for new entries when none are available;
        `block_ms <= 0` returns immediately.
        """

    @abstractmethod
    async def stream_ack(self, stream: str, group: str, *entry_ids: str) -> int:
        """Acknowledge entries, removing them from the group's pending list."""

    @abstractmethod
    async def stream_reclaim_stale(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        start_id: str = STREAM_START_ID,
        count: int = 10,
    ) -> tuple[str, list[StreamEntry]]:
        """
        Transfer pending entries idle for at least `min_idle_ms` to `consumer`.

        Returns the cursor to continue from (`0-0` once the scan is complete)
        and the reclaimed entries. Entries deleted while pending are returned
        with empty fields so the caller can account for them.
        """

    @abstractmethod
    async def stream_length(self, stream: str) -> int: ...

    @abstractmethod
    async def stream_range(
        self,
        stream: str,
        start: str = "-",
        end: str = "+",
        count: int | None = None,
    ) -> list[StreamEntry]: ...

    @abstractmethod
    async def stream_delete(self, stream: str, *entry_ids: str) -> int: ...

    # Sorted sets

    @abstractmethod
    async def sorted_set_add(self, key: str, member: str, score: int) -> None: ...

    @abstractmethod
    async def sorted_set_range_by_score(
        self,
        key: str,
        min_score: int,
        max_score: int,
        limit: int,
    ) -> list[str]:
        """Members with `min_score <= score <= max_score`, lowest score first."""

    @abstractmethod
    async def sorted_set_remove(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def sorted_set_cardinality(self, key: str) -> int: ...

    @abstractmethod
    async def move_to_stream(
        self,
        key: str,
        stream: str,
        members: Sequence[str],
    ) -> int:
        """
        Atomically remove each member from the sorted set and append it to the stream.

        A member no longer present in the set is skipped, so concurrent movers
        never append the same member twice. Returns the number moved.
        """

    # Keys

    @abstractmethod
    async def key_set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool: ...

    @abstractmethod
    async def key_get(self, key: str) -> str | None: ...

    @abstractmethod
    async def key_expire(self, key: str, ttl_ms: int) -> bool: ...

    @abstractmethod
    async def key_delete(self, key: str) -> int: ...

    # Transactions / lifecycle

    @abstractmethod
    def transaction(self) -> StoreTransaction: ...

    async def close(self) -> None:
        """Release connections held by the store."""
