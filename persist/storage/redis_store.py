"""
Redis Backend: Optimistic Atomic Updates via WATCH/MULTI

Each record lives in a Redis hash at "{prefix}:{collection}:{key}":

    d: encoded value (codec: marker byte + JSON, LZ4 above threshold)
    v: version counter, incremented on every write
    c: created time (Unix ms)
    u: updated time (Unix ms)
    i: user ids (JSON array)
    m: metadata (JSON object)

update() WATCHes the key, reads the hash, runs the transform and commits
the decision in MULTI/EXEC. A concurrent write aborts EXEC with
WatchError and the whole read-transform-commit cycle is retried, so the
transform may run several times; only the last decision is committed.

Error Handling:
    Redis and socket errors are returned as Err(StoreError.transport).
    Undecodable stored values are returned as Err(StoreError.corrupt_record).
    Exceptions raised by the transform propagate unchanged.

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from persist.core.errors import StoreError
from persist.core.types import Result, Ok, Err
from persist.observability.logging import StructuredLogger
from persist.storage.codec import decode_value, encode_value
from persist.storage.config import RedisConfig
from persist.storage.protocols import (
    Abort,
    KeyInfo,
    Transform,
    UpdateResult,
    Write,
)

logger = StructuredLogger("persist.redis")

_TRANSPORT_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _text(raw: Any) -> str:
    return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)


def _decode_hash(raw: dict[Any, Any]) -> Optional[tuple[dict[str, Any], KeyInfo]]:
    """
    Decode an HGETALL reply.

    Raises:
        ValueError: missing or malformed fields.
    """
    if not raw:
        return None

    fields = {_text(k): v for k, v in raw.items()}
    if "d" not in fields:
        raise ValueError("hash has no value field")

    value = decode_value(fields["d"])
    if not isinstance(value, dict):
        raise ValueError(f"expected object value, got {type(value).__name__}")

    try:
        user_ids = tuple(json.loads(_text(fields["i"]))) if "i" in fields else ()
        metadata = json.loads(_text(fields["m"])) if "m" in fields else {}
        info = KeyInfo(
            version=_text(fields.get("v", b"0")),
            created_time=int(_text(fields.get("c", b"0"))),
            updated_time=int(_text(fields.get("u", b"0"))),
            user_ids=user_ids,
            metadata=metadata,
        )
    except (json.JSONDecodeError, TypeError) as e:
        raise ValueError(f"malformed key info: {e}") from e

    return value, info


class RedisKeyValueStore:
    """
    One collection in Redis implementing KeyValueStore.

    Created by RedisBackend.collection(); shares the backend's client.
    """

    __slots__ = ("_client", "_name", "_config")

    def __init__(self, client: aioredis.Redis, name: str, config: RedisConfig) -> None:
        self._client = client
        self._name = name
        self._config = config

    @property
    def name(self) -> str:
        return self._name

    def _key(self, key: str) -> str:
        return self._config.make_key(self._name, key)

    def _mapping(
        self,
        value: dict[str, Any],
        version: int,
        created_time: int,
        updated_time: int,
        user_ids: Optional[Sequence[int]],
        metadata: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        return {
            "d": encode_value(value, threshold=self._config.compression_threshold_bytes),
            "v": version,
            "c": created_time,
            "u": updated_time,
            "i": json.dumps(list(user_ids or ())),
            "m": json.dumps(metadata or {}),
        }

    async def update(
        self,
        key: str,
        transform: Transform,
    ) -> Result[UpdateResult[Any], StoreError]:
        """
        Atomically transform the value under key.

        Returns:
            Ok(UpdateResult) with the committed value, or with committed=False
            on Abort. Err(contention) after max_watch_retries conflicting
            attempts; Err(transport) on connection failure.
        """
        redis_key = self._key(key)
        attempts = 0

        try:
            async with self._client.pipeline(transaction=True) as pipe:
                while attempts < self._config.max_watch_retries:
                    attempts += 1
                    try:
                        await pipe.watch(redis_key)
                        raw = await pipe.hgetall(redis_key)

                        try:
                            current = _decode_hash(raw)
                        except ValueError as e:
                            await pipe.reset()
                            return Err(StoreError.corrupt_record(self._name, key, str(e), cause=e))

                        value, info = current if current is not None else (None, None)
                        decision = transform(value, info)

                        if isinstance(decision, Abort):
                            await pipe.reset()
                            return Ok(UpdateResult(None, None, decision.outcome, False, attempts))

                        if not isinstance(decision, Write):
                            await pipe.reset()
                            raise TypeError(
                                "transform must return Write or Abort, "
                                f"got {type(decision).__name__}"
                            )

                        now = _now_ms()
                        version = int(info.version) + 1 if info is not None else 1
                        created = info.created_time if info is not None else now

                        pipe.multi()
                        pipe.hset(redis_key, mapping=self._mapping(
                            decision.value, version, created, now,
                            decision.user_ids, decision.metadata,
                        ))
                        await pipe.execute()

                        return Ok(UpdateResult(
                            decision.value,
                            KeyInfo(
                                version=str(version),
                                created_time=created,
                                updated_time=now,
                                user_ids=tuple(decision.user_ids or ()),
                                metadata=dict(decision.metadata or {}),
                            ),
                            decision.outcome,
                            True,
                            attempts,
                        ))
                    except WatchError:
                        logger.debug(
                            f"Concurrent write, retrying update (attempt {attempts})",
                            store=self._name,
                            key=key,
                        )
                        continue
        except _TRANSPORT_ERRORS as e:
            return Err(StoreError.transport(self._name, key, cause=e))

        return Err(StoreError.contention(self._name, key, attempts))

    async def get(
        self,
        key: str,
    ) -> Result[Optional[tuple[dict[str, Any], KeyInfo]], StoreError]:
        try:
            raw = await self._client.hgetall(self._key(key))
        except _TRANSPORT_ERRORS as e:
            return Err(StoreError.transport(self._name, key, cause=e))

        try:
            return Ok(_decode_hash(raw))
        except ValueError as e:
            return Err(StoreError.corrupt_record(self._name, key, str(e), cause=e))

    async def set(
        self,
        key: str,
        value: dict[str, Any],
        user_ids: Optional[Sequence[int]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Result[KeyInfo, StoreError]:
        """
        Overwrite unconditionally; version and created time carry over.

        The version is read under WATCH, so a concurrent update() makes
        this write retry instead of reusing a version number.
        """
        redis_key = self._key(key)
        attempts = 0

        try:
            async with self._client.pipeline(transaction=True) as pipe:
                while attempts < self._config.max_watch_retries:
                    attempts += 1
                    try:
                        await pipe.watch(redis_key)
                        version_raw, created_raw = await pipe.hmget(redis_key, ["v", "c"])
                        now = _now_ms()
                        try:
                            version = 1 if version_raw is None else int(_text(version_raw)) + 1
                            created = now if created_raw is None else int(_text(created_raw))
                        except ValueError as e:
                            await pipe.reset()
                            return Err(StoreError.corrupt_record(self._name, key, str(e), cause=e))

                        pipe.multi()
                        pipe.hset(redis_key, mapping=self._mapping(
                            value, version, created, now, user_ids, metadata,
                        ))
                        await pipe.execute()

                        return Ok(KeyInfo(
                            version=str(version),
                            created_time=created,
                            updated_time=now,
                            user_ids=tuple(user_ids or ()),
                            metadata=dict(metadata or {}),
                        ))
                    except WatchError:
                        logger.debug(
                            f"Concurrent write, retrying set (attempt {attempts})",
                            store=self._name,
                            key=key,
                        )
                        continue
        except _TRANSPORT_ERRORS as e:
            return Err(StoreError.transport(self._name, key, cause=e))

        return Err(StoreError.contention(self._name, key, attempts))

    async def remove(self, key: str) -> Result[bool, StoreError]:
        try:
            deleted = await self._client.delete(self._key(key))
        except _TRANSPORT_ERRORS as e:
            return Err(StoreError.transport(self._name, key, cause=e))
        return Ok(deleted > 0)


class RedisBackend:
    """
    Redis connection shared by every collection.

    Example:
        backend = RedisBackend(RedisConfig.from_env())
        result = await backend.connect()
        if result.is_ok():
            store = Store("players", StoreOptions(backend=backend, ...))
    """

    __slots__ = ("_config", "_client", "_collections")

    def __init__(self, config: RedisConfig, client: Optional[aioredis.Redis] = None) -> None:
        self._config = config
        self._client = client
        self._collections: dict[str, RedisKeyValueStore] = {}

    @property
    def config(self) -> RedisConfig:
        return self._config

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> Result[None, str]:
        """
        Create the client and verify it with PING.

        Returns:
            Ok(None) on success, Err with message on failure.
        """
        if self._client is None:
            self._client = aioredis.Redis(**self._config.get_connection_kwargs())

        try:
            await self._client.ping()
        except _TRANSPORT_ERRORS as e:
            await self.close()
            return Err(f"Redis connection failed: {e}")

        logger.info(f"Connected to Redis at {self._config.host}:{self._config.port}")
        return Ok(None)

    async def close(self) -> None:
        """Close the client. Safe to call multiple times."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._collections.clear()

    async def health_check(self) -> Result[dict[str, Any], str]:
        if self._client is None:
            return Err("Not connected")

        try:
            info = await self._client.info(section="server")
        except _TRANSPORT_ERRORS as e:
            return Err(f"Health check failed: {e}")

        return Ok({
            "connected": True,
            "redis_version": _text(info.get("redis_version", "unknown")),
            "collections": sorted(self._collections),
        })

    def collection(self, name: str) -> RedisKeyValueStore:
        """
        Get the store for a collection.

        Raises:
            RuntimeError: if called before connect()
        """
        if self._client is None:
            raise RuntimeError("RedisBackend.collection() called before connect()")

        if name not in self._collections:
            self._collections[name] = RedisKeyValueStore(self._client, name, self._config)
        return self._collections[name]
