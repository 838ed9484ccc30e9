"""
Redis Backend Configuration

Author: Planetary AI Systems
License: MIT
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

from persist.core.constants import (
    COMPRESSION_THRESHOLD_BYTES,
    REDIS_KEY_PREFIX,
    REDIS_MAX_WATCH_RETRIES,
)

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def _env_int(env: Mapping[str, str], name: str, fallback: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_flag(env: Mapping[str, str], name: str, fallback: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if raw in _TRUE_WORDS:
        return True
    if raw in _FALSE_WORDS:
        return False
    return fallback


@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Where the Redis backend connects and how it stores records.

    Keys are laid out as "{key_prefix}:{collection}:{key}". An update gives
    up with a contention error after max_watch_retries failed WATCH rounds.
    Encoded values longer than compression_threshold_bytes are stored as
    LZ4 frames.

    Example:
        >>> RedisConfig(host="redis.example.com", key_prefix="game").make_key("players", "p1")
        'game:players:p1'
    """

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str | None = None
    ssl: bool = False
    max_connections: int = 50
    connect_timeout_ms: int = 2000
    socket_timeout_ms: int = 5000
    key_prefix: str = REDIS_KEY_PREFIX
    max_watch_retries: int = REDIS_MAX_WATCH_RETRIES
    compression_threshold_bytes: int = COMPRESSION_THRESHOLD_BYTES

    def __post_init__(self) -> None:
        problems = []
        if not 1 <= self.port <= 65535:
            problems.append(f"port {self.port} is outside 1..65535")
        if not 0 <= self.db <= 15:
            problems.append(f"db {self.db} is outside 0..15")
        for name in ("max_connections", "connect_timeout_ms", "socket_timeout_ms", "max_watch_retries"):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive, got {getattr(self, name)}")
        if self.compression_threshold_bytes < 0:
            problems.append("compression_threshold_bytes cannot be negative")
        if not self.key_prefix:
            problems.append("key_prefix cannot be empty")
        if problems:
            raise ValueError("invalid Redis configuration: " + "; ".join(problems))

    @classmethod
    def from_env(cls, prefix: str = "REDIS", env: Mapping[str, str] | None = None) -> RedisConfig:
        """
        Read {prefix}_HOST, _PORT, _DB, _PASSWORD, _SSL, _MAX_CONNECTIONS,
        _CONNECT_TIMEOUT_MS, _SOCKET_TIMEOUT_MS, _KEY_PREFIX,
        _MAX_WATCH_RETRIES and _COMPRESSION_THRESHOLD_BYTES. Unset
        variables keep the field defaults.
        """
        source = os.environ if env is None else env
        defaults = cls()

        def var(name: str) -> str:
            return f"{prefix}_{name}"

        return cls(
            host=source.get(var("HOST")) or defaults.host,
            port=_env_int(source, var("PORT"), defaults.port),
            db=_env_int(source, var("DB"), defaults.db),
            password=source.get(var("PASSWORD")) or None,
            ssl=_env_flag(source, var("SSL"), defaults.ssl),
            max_connections=_env_int(source, var("MAX_CONNECTIONS"), defaults.max_connections),
            connect_timeout_ms=_env_int(source, var("CONNECT_TIMEOUT_MS"), defaults.connect_timeout_ms),
            socket_timeout_ms=_env_int(source, var("SOCKET_TIMEOUT_MS"), defaults.socket_timeout_ms),
            key_prefix=source.get(var("KEY_PREFIX")) or defaults.key_prefix,
            max_watch_retries=_env_int(source, var("MAX_WATCH_RETRIES"), defaults.max_watch_retries),
            compression_threshold_bytes=_env_int(
                source, var("COMPRESSION_THRESHOLD_BYTES"), defaults.compression_threshold_bytes
            ),
        )

    def get_connection_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for redis.asyncio.Redis. Replies stay bytes for the codec."""
        kwargs: dict[str, Any] = dict(
            host=self.host,
            port=self.port,
            db=self.db,
            ssl=self.ssl,
            max_connections=self.max_connections,
            socket_connect_timeout=self.connect_timeout_ms / 1000,
            socket_timeout=self.socket_timeout_ms / 1000,
            decode_responses=False,
        )
        if self.password:
            kwargs["password"] = self.password
        return kwargs

    def make_key(self, collection: str, key: str) -> str:
        return f"{self.key_prefix}:{collection}:{key}"
