"""
Persist: Cooperative Session Locking Over a Remote Key-Value Store

Lets many servers share one record store while guaranteeing that at most
one server edits a record at a time:
- Store: claims records with lock-or-request-release acquisition
- Session: saves, hands over and releases one claimed record
- Autosave: periodic saves spread across the interval
- Shutdown: releases every session before the process exits

Backends are pluggable (in-memory, Redis).

Author: Planetary AI Systems
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Planetary AI Systems"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from persist.core.types import Result, Ok, Err
from persist.core.errors import (
    ErrorCode,
    PersistError,
    StoreError,
    SessionError,
    LoadError,
    ConfigurationError,
)
from persist.core.config import ConflictPolicy, StoreOptions, PersistSettings

from persist.session import Record, Session, SessionState, UpdateOutcome
from persist.store import Store, LoadAction, AutosaveScheduler, ShutdownCoordinator
from persist.storage import (
    KeyInfo,
    KeyValueStore,
    StorageBackend,
    InMemoryBackend,
    RedisBackend,
    RedisConfig,
)

__all__ = [
    "__version__",
    "Result",
    "Ok",
    "Err",
    "ErrorCode",
    "PersistError",
    "StoreError",
    "SessionError",
    "LoadError",
    "ConfigurationError",
    "ConflictPolicy",
    "StoreOptions",
    "PersistSettings",
    "Record",
    "Session",
    "SessionState",
    "UpdateOutcome",
    "Store",
    "LoadAction",
    "AutosaveScheduler",
    "ShutdownCoordinator",
    "KeyInfo",
    "KeyValueStore",
    "StorageBackend",
    "InMemoryBackend",
    "RedisBackend",
    "RedisConfig",
]
