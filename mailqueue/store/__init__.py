"""
Store module.
Contains the queue store interface and its Redis and in-memory implementations.
"""

from mailqueue.store.base import QueueStore, StoreTransaction
from mailqueue.store.memory import InMemoryQueueStore
from mailqueue.store.redis_store import RedisQueueStore

__all__ = [
    "QueueStore",
    "StoreTransaction",
    "InMemoryQueueStore",
    "RedisQueueStore",
]
