"""
Redis implementation of the queue store.

- XADD / XREADGROUP / XACK for the ready and dead-letter streams
- XAUTOCLAIM for reclaiming entries from crashed consumers
- ZADD / ZRANGEBYSCORE / ZREM / ZCARD for the schedule set
- SET NX PX / PEXPIRE / DEL for dedupe markers
- MULTI/EXEC pipelines for transactions, a Lua script for promotion
"""

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    ReadOnlyError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from mailqueue.constants import STREAM_START_ID
from mailqueue.exceptions import ConsumerGroupMissingError, StoreUnavailableError
from mailqueue.store.base import QueueStore, StoreTransaction
from mailqueue.types.job import StreamEntry

logger = logging.getLogger(__name__)

# KEYS[1] = schedule set, KEYS[2] = ready stream
# ARGV = members
MOVE_TO_STREAM_SCRIPT = """
local moved = 0
for i = 1, #ARGV do
    if redis.call('ZREM', KEYS[1], ARGV[i]) == 1 then
        redis.call('XADD', KEYS[2], '*', 'payload', ARGV[i])
        moved = moved + 1
    end
end
return moved
"""


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate redis exceptions into queue store errors."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, ReadOnlyError) as e:
        raise StoreUnavailableError(f"{operation} failed: {e}") from e
    except ResponseError as e:
        if "NOGROUP" in str(e):
            raise ConsumerGroupMissingError(str(e)) from e
        raise


def _to_entries(messages: Any) -> list[StreamEntry]:
    entries = []
    for entry_id, fields in messages or []:
        # Deleted entries come back with nil fields from XAUTOCLAIM on Redis 6.2
        entries.append(StreamEntry(entry_id=entry_id, fields=dict(fields or {})))
    return entries


class RedisQueueStore(QueueStore):
    """
    Queue store on top of a `redis.asyncio` client.

    The client must be created with `decode_responses=True`.
    """

    def __init__(self, client: redis.Redis):
        self._client = client
        self._move_script = client.register_script(MOVE_TO_STREAM_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisQueueStore":
        """Create a store with its own connection pool."""
        return cls(redis.from_url(url, decode_responses=True))

    # Streams

    async def ensure_group(self, stream: str, group: str) -> None:
        try:
            with _store_errors("XGROUP CREATE"):
                await self._client.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info("Created consumer group", extra={"stream": stream, "group": group})
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def stream_append(self, stream: str, fields: dict[str, str]) -> str:
        with _store_errors("XADD"):
            return await self._client.xadd(stream, fields)

    async def stream_read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int,
        block_ms: int,
    ) -> list[StreamEntry]:
        with _store_errors("XREADGROUP"):
            response = await self._client.xreadgroup(
                group,
                consumer,
                {stream: ">"},
                count=count,
                block=block_ms if block_ms > 0 else None,
            )
        if not response:
            return []

        # RESP2 returns [[stream, messages]], RESP3 returns {stream: messages}
        streams = response.items() if isinstance(response, dict) else response
        entries: list[StreamEntry] = []
        for _name, messages in streams:
            entries.extend(_to_entries(messages))
        return entries

    async def stream_ack(self, stream: str, group: str, *entry_ids: str) -> int:
        with _store_errors("XACK"):
            return await self._client.xack(stream, group, *entry_ids)

    async def stream_reclaim_stale(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        start_id: str = STREAM_START_ID,
        count: int = 10,
    ) -> tuple[str, list[StreamEntry]]:
        with _store_errors("XAUTOCLAIM"):
            result = await self._client.xautoclaim(
                stream,
                group,
                consumer,
                min_idle_ms,
                start_id=start_id,
                count=count,
            )
        next_id = result[0] if result else STREAM_START_ID
        messages = result[1] if result and len(result) > 1 else []
        entries = _to_entries(messages)
        # Redis 7 drops deleted entries from the pending list and reports their ids
        if result and len(result) > 2:
            entries.extend(StreamEntry(entry_id=entry_id, fields={}) for entry_id in result[2] or [])
        return next_id, entries

    async def stream_length(self, stream: str) -> int:
        with _store_errors("XLEN"):
            return int(await self._client.xlen(stream))

    async def stream_range(
        self,
        stream: str,
        start: str = "-",
        end: str = "+",
        count: int | None = None,
    ) -> list[StreamEntry]:
        with _store_errors("XRANGE"):
            messages = await self._client.xrange(stream, min=start, max=end, count=count)
        return _to_entries(messages)

    async def stream_delete(self, stream: str, *entry_ids: str) -> int:
        with _store_errors("XDEL"):
            return await self._client.xdel(stream, *entry_ids)

    # Sorted sets

    async def sorted_set_add(self, key: str, member: str, score: int) -> None:
        with _store_errors("ZADD"):
            await self._client.zadd(key, {member: score})

    async def sorted_set_range_by_score(
        self,
        key: str,
        min_score: int,
        max_score: int,
        limit: int,
    ) -> list[str]:
        with _store_errors("ZRANGEBYSCORE"):
            return await self._client.zrangebyscore(
                key, min_score, max_score, start=0, num=limit
            )

    async def sorted_set_remove(self, key: str, *members: str) -> int:
        with _store_errors("ZREM"):
            return await self._client.zrem(key, *members)

    async def sorted_set_cardinality(self, key: str) -> int:
        with _store_errors("ZCARD"):
            return int(await self._client.zcard(key))

    async def move_to_stream(
        self,
        key: str,
        stream: str,
        members: Sequence[str],
    ) -> int:
        if not members:
            return 0
        with _store_errors("EVALSHA move_to_stream"):
            moved = await self._move_script(
                keys=[key, stream],
                args=list(members),
            )
        return int(moved)

    # Keys

    async def key_set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        with _store_errors("SET NX"):
            return bool(await self._client.set(key, value, nx=True, px=ttl_ms))

    async def key_get(self, key: str) -> str | None:
        with _store_errors("GET"):
            return await self._client.get(key)

    async def key_expire(self, key: str, ttl_ms: int) -> bool:
        with _store_errors("PEXPIRE"):
            return bool(await self._client.pexpire(key, ttl_ms))

    async def key_delete(self, key: str) -> int:
        with _store_errors("DEL"):
            return await self._client.delete(key)

    # Transactions / lifecycle

    def transaction(self) -> "RedisTransaction":
        return RedisTransaction(self._client.pipeline(transaction=True))

    async def close(self) -> None:
        await self._client.aclose()


class RedisTransaction(StoreTransaction):
    """MULTI/EXEC pipeline."""

    def __init__(self, pipeline: Any):
        self._pipeline = pipeline

    def stream_append(self, stream: str, fields: dict[str, str]) -> "RedisTransaction":
        self._pipeline.xadd(stream, fields)
        return self

    def stream_ack(self, stream: str, group: str, *entry_ids: str) -> "RedisTransaction":
        self._pipeline.xack(stream, group, *entry_ids)
        return self

    def stream_delete(self, stream: str, *entry_ids: str) -> "RedisTransaction":
        self._pipeline.xdel(stream, *entry_ids)
        return self

    def sorted_set_add(self, key: str, member: str, score: int) -> "RedisTransaction":
        self._pipeline.zadd(key, {member: score})
        return self

    async def execute(self) -> None:
        with _store_errors("EXEC"):
            await self._pipeline.execute()
