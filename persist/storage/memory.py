"""
In-Memory Key-Value Backend

Reference implementation of the KeyValueStore protocol for tests and
single-process development. Every collection of one backend shares
nothing with other backends, so two Stores with different lock ids must
be given the same backend to contend for the same records.

Atomicity:
    One asyncio.Lock per collection serializes update(); the transform
    runs with the lock held and no await inside, so each update is
    atomic relative to other updates of the same collection.

replay_transforms re-runs each transform that many extra times before
committing the final decision, mimicking an optimistic backend whose
read was invalidated by a concurrent writer.
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from persist.core.errors import StoreError
from persist.core.types import Result, Ok
from persist.storage.protocols import (
    Abort,
    KeyInfo,
    Transform,
    UpdateResult,
    Write,
)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(slots=True)
class _Entry:
    value: dict[str, Any]
    version: int
    created_time: int
    updated_time: int
    user_ids: tuple[int, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def key_info(self) -> KeyInfo:
        return KeyInfo(
            version=str(self.version),
            created_time=self.created_time,
            updated_time=self.updated_time,
            user_ids=self.user_ids,
            metadata=dict(self.metadata),
        )


class InMemoryKeyValueStore:
    """
    In-memory collection implementing KeyValueStore.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the stored record.

    Example:
        store = InMemoryKeyValueStore("players")
        await store.set("p1", {"d": {"coins": 1}, "t": 0})
    """

    __slots__ = ("_name", "_data", "_lock", "_replay_transforms", "update_count")

    def __init__(self, name: str, replay_transforms: int = 0) -> None:
        if replay_transforms < 0:
            raise ValueError("replay_transforms must be >= 0")
        self._name = name
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._replay_transforms = replay_transforms
        self.update_count = 0

    @property
    def name(self) -> str:
        return self._name

    def _commit(
        self,
        key: str,
        value: dict[str, Any],
        user_ids: Optional[Sequence[int]],
        metadata: Optional[dict[str, Any]],
    ) -> _Entry:
        now = _now_ms()
        existing = self._data.get(key)
        entry = _Entry(
            value=copy.deepcopy(value),
            version=(existing.version + 1) if existing else 1,
            created_time=existing.created_time if existing else now,
            updated_time=now,
            user_ids=tuple(user_ids or ()),
            metadata=dict(metadata or {}),
        )
        self._data[key] = entry
        return entry

    async def update(
        self,
        key: str,
        transform: Transform,
    ) -> Result[UpdateResult[Any], StoreError]:
        async with self._lock:
            self.update_count += 1
            existing = self._data.get(key)

            attempts = 0
            while True:
                attempts += 1
                decision = transform(
                    copy.deepcopy(existing.value) if existing else None,
                    existing.key_info() if existing else None,
                )
                if attempts > self._replay_transforms:
                    break

            if isinstance(decision, Abort):
                return Ok(UpdateResult(None, None, decision.outcome, False, attempts))

            if not isinstance(decision, Write):
                raise TypeError(
                    f"transform must return Write or Abort, got {type(decision).__name__}"
                )

            entry = self._commit(key, decision.value, decision.user_ids, decision.metadata)
            return Ok(UpdateResult(
                copy.deepcopy(entry.value),
                entry.key_info(),
                decision.outcome,
                True,
                attempts,
            ))

    async def get(
        self,
        key: str,
    ) -> Result[Optional[tuple[dict[str, Any], KeyInfo]], StoreError]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return Ok(None)
            return Ok((copy.deepcopy(entry.value), entry.key_info()))

    async def set(
        self,
        key: str,
        value: dict[str, Any],
        user_ids: Optional[Sequence[int]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Result[KeyInfo, StoreError]:
        async with self._lock:
            return Ok(self._commit(key, value, user_ids, metadata).key_info())

    async def remove(self, key: str) -> Result[bool, StoreError]:
        async with self._lock:
            return Ok(self._data.pop(key, None) is not None)

    def __len__(self) -> int:
        return len(self._data)


class InMemoryBackend:
    """
    Collection factory; collection(name) returns the same store per name.

    Example:
        backend = InMemoryBackend()
        server_a = Store("players", StoreOptions(backend=backend, lock_id="a", ...))
        server_b = Store("players", StoreOptions(backend=backend, lock_id="b", ...))
    """

    __slots__ = ("_collections", "_replay_transforms")

    def __init__(self, replay_transforms: int = 0) -> None:
        self._collections: dict[str, InMemoryKeyValueStore] = {}
        self._replay_transforms = replay_transforms

    def collection(self, name: str) -> InMemoryKeyValueStore:
        if name not in self._collections:
            self._collections[name] = InMemoryKeyValueStore(name, self._replay_transforms)
        return self._collections[name]
