"""
Configuration Management for Persist

Provides validated store options with sensible defaults and
process-level settings loaded from environment variables.

Design:
- Immutable after validation
- Fail-fast on invalid configuration (ConfigurationError)
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Generic,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from persist.core import constants as C
from persist.core.errors import ConfigurationError
from persist.core.types import Result, Ok, Err

if TYPE_CHECKING:
    from persist.storage.protocols import KeyValueStore, StorageBackend

TKey = TypeVar("TKey")
TData = TypeVar("TData")


# =============================================================================
# CONFLICT POLICY
# =============================================================================
class ConflictPolicy(Enum):
    """What load() does when another server holds a live lock."""

    REQUEST_RELEASE = "requestRelease"  # Ask the holder to hand over, then retry
    STEAL = "steal"                     # Overwrite the lock; holder may lose data

    @classmethod
    def parse(cls, value: Union[ConflictPolicy, str]) -> ConflictPolicy:
        """Accept the enum, its value, or a snake_case name."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip()
        for policy in cls:
            if normalized in (policy.value, policy.name, policy.name.lower()):
                return policy
        raise ConfigurationError(
            f"Unknown conflict policy {value!r}; "
            f"expected one of {[p.value for p in cls]}"
        )


# =============================================================================
# STORE OPTIONS
# =============================================================================
@dataclass(frozen=True)
class StoreOptions(Generic[TKey, TData]):
    """
    Options for a Store.

    Attributes:
        data: Returns the payload to persist for a key (required).
        default: Returns the payload for a key that has never been saved (required).
        key: Converts a key to the remote string key; optional for str keys.
        metadata: Returns custom metadata written alongside the record.
        user_ids: Returns user ids associated with the record.
        datastore: Remote handle to use instead of backend.collection(name).
        backend: Factory for remote handles when datastore is not given.
        lock_id: Unique per server. None uses PersistSettings.lock_id, then
            Store.default_lock_id.
        release_sessions_on_close: Participate in coordinated shutdown.
        autosave_seconds: Seconds between autosave cycles; <= 0 disables.
            None uses PersistSettings.autosave_seconds.
        max_load_attempts: Cap on conflict retries; None retries forever.
        retry_delays: Backoff schedule between conflicting load attempts.
    """

    data: Callable[[TKey], TData]
    default: Callable[[TKey], TData]
    key: Optional[Callable[[TKey], str]] = None
    metadata: Optional[Callable[[TKey], Optional[dict[str, Any]]]] = None
    user_ids: Optional[Callable[[TKey], Optional[Sequence[int]]]] = None
    datastore: Optional[KeyValueStore] = None
    backend: Optional[StorageBackend] = None
    lock_id: Optional[str] = None
    release_sessions_on_close: bool = True
    autosave_seconds: Optional[float] = None
    max_load_attempts: Optional[int] = None
    retry_delays: tuple[float, ...] = C.LOAD_RETRY_DELAYS_S

    def __post_init__(self) -> None:
        if not callable(self.data):
            raise ConfigurationError("StoreOptions.data must be callable")
        if not callable(self.default):
            raise ConfigurationError("StoreOptions.default must be callable")
        for name in ("key", "metadata", "user_ids"):
            fn = getattr(self, name)
            if fn is not None and not callable(fn):
                raise ConfigurationError(f"StoreOptions.{name} must be callable")
        if self.datastore is None and self.backend is None:
            raise ConfigurationError(
                "StoreOptions requires a datastore or a backend"
            )
        if self.lock_id is not None and not self.lock_id:
            raise ConfigurationError("lock_id must be a non-empty string")
        if self.max_load_attempts is not None and self.max_load_attempts < 1:
            raise ConfigurationError(
                f"max_load_attempts must be >= 1, got {self.max_load_attempts}"
            )
        if not self.retry_delays or any(d < 0 for d in self.retry_delays):
            raise ConfigurationError(
                "retry_delays must be a non-empty sequence of non-negative seconds"
            )

    def autosave_interval(self, settings: PersistSettings) -> Optional[float]:
        """Seconds between autosave cycles, or None when autosave is off."""
        seconds = self.autosave_seconds
        if seconds is None:
            seconds = settings.autosave_seconds
        return seconds if seconds > 0 else None


# =============================================================================
# PROCESS SETTINGS
# =============================================================================
@dataclass(frozen=True)
class PersistSettings:
    """Process-wide settings, typically loaded from the environment."""

    lock_id: Optional[str] = None
    autosave_seconds: float = C.DEFAULT_AUTOSAVE_SECONDS
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def load(cls) -> PersistSettings:
        """
        from_env() for code that cannot return a Result.

        Raises:
            ConfigurationError: the environment holds invalid settings.
        """
        result = cls.from_env()
        if result.is_err():
            raise ConfigurationError(result.error)
        return result.unwrap()

    @classmethod
    def from_env(cls) -> Result[PersistSettings, str]:
        """
        Load settings from environment variables.

        Environment variables are prefixed with PERSIST_.
        Example: PERSIST_LOCK_ID, PERSIST_AUTOSAVE_SECONDS
        """
        try:
            settings = cls(
                lock_id=os.getenv("PERSIST_LOCK_ID") or None,
                autosave_seconds=float(
                    os.getenv("PERSIST_AUTOSAVE_SECONDS", str(C.DEFAULT_AUTOSAVE_SECONDS))
                ),
                log_level=os.getenv("PERSIST_LOG_LEVEL", "INFO").upper(),
                log_json=os.getenv("PERSIST_LOG_JSON", "false").lower() in ("1", "true", "yes"),
            )
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

        validation = settings.validate()
        if validation.is_err():
            return validation
        return Ok(settings)

    def validate(self) -> Result[None, str]:
        """Validate settings invariants."""
        if self.log_level not in ("NONE", "DEBUG", "INFO", "WARNING", "ERROR"):
            return Err(f"Unknown log level {self.log_level!r}")
        return Ok(None)
