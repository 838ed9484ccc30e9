"""
Storage module: Remote key-value store contract and backends.

Backends:
- InMemoryBackend: single-process reference implementation
- RedisBackend: redis.asyncio with WATCH/MULTI optimistic updates
"""

from persist.storage.protocols import (
    KeyInfo,
    Write,
    Abort,
    Decision,
    Transform,
    UpdateResult,
    KeyValueStore,
    StorageBackend,
)
from persist.storage.memory import InMemoryBackend, InMemoryKeyValueStore
from persist.storage.config import RedisConfig
from persist.storage.redis_store import RedisBackend, RedisKeyValueStore
from persist.storage.codec import encode_value, decode_value

__all__ = [
    "KeyInfo",
    "Write",
    "Abort",
    "Decision",
    "Transform",
    "UpdateResult",
    "KeyValueStore",
    "StorageBackend",
    "InMemoryBackend",
    "InMemoryKeyValueStore",
    "RedisConfig",
    "RedisBackend",
    "RedisKeyValueStore",
    "encode_value",
    "decode_value",
]
