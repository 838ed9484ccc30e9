"""
Core module: Type definitions, error hierarchy, configuration and signals.

This module provides the foundational abstractions for persist:
- Result/Either monads for expected failures
- Error hierarchy carrying store name and key context
- Store options and environment settings with validation
- Signal observer lists for release notifications
"""

from persist.core.types import (
    Result,
    Ok,
    Err,
    generate_lock_id,
)
from persist.core.errors import (
    ErrorCode,
    PersistError,
    StoreError,
    SessionError,
    LoadError,
    ConfigurationError,
)
from persist.core.config import (
    ConflictPolicy,
    StoreOptions,
    PersistSettings,
)
from persist.core.signal import Signal, Connection

__all__ = [
    "Result",
    "Ok",
    "Err",
    "generate_lock_id",
    "ErrorCode",
    "PersistError",
    "StoreError",
    "SessionError",
    "LoadError",
    "ConfigurationError",
    "ConflictPolicy",
    "StoreOptions",
    "PersistSettings",
    "Signal",
    "Connection",
]
