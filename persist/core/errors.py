"""
Error Hierarchy for Persist

Design Principles:
- Expected failures are returned as Err(PersistError), never raised
- Every error carries the store name and key it concerns
- Configuration misuse raises ConfigurationError synchronously

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause for root cause analysis

Usage:
    result = await session.update()
    match result:
        case Ok(outcome):
            handle(outcome)
        case Err(StoreError() as err):
            log_and_maybe_retry(err)
        case Err(SessionError()):
            pass  # session already released
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Remote store errors
    - 2xxx: Session state errors
    - 3xxx: Load errors
    - 9xxx: Configuration/internal errors
    """

    # Remote store errors (1xxx)
    STORE_TRANSPORT_FAILED = 1001
    STORE_CORRUPT_RECORD = 1002
    STORE_NOT_CONNECTED = 1003
    STORE_CONTENTION = 1004

    # Session state errors (2xxx)
    SESSION_RELEASING = 2001
    SESSION_RELEASED = 2002
    SESSION_CALLBACK_FAILED = 2003

    # Load errors (3xxx)
    LOAD_SHUTTING_DOWN = 3001
    LOAD_ATTEMPTS_EXHAUSTED = 3002

    # Configuration/internal errors (9xxx)
    INTERNAL_CONFIGURATION_ERROR = 9001


def _prefix(store: str, key: str) -> str:
    return f'(store: "{store}", key: "{key}")'


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass(eq=False)
class PersistError(Exception):
    """
    Base class for all persist errors.

    Dataclass exception so instances can be returned inside Err
    and still be raised where a caller prefers exceptions.
    """

    code: ErrorCode
    message: str
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def store(self) -> Optional[str]:
        return self.context.get("store")

    @property
    def key(self) -> Optional[str]:
        return self.context.get("key")

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for structured logs."""
        return {
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "context": self.context,
            "cause": repr(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r})"
        )


# =============================================================================
# REMOTE STORE ERRORS
# =============================================================================
@dataclass(eq=False)
class StoreError(PersistError):
    """
    Errors surfaced by the remote key-value store.

    Never retried automatically by update/release; the caller decides.
    """

    @classmethod
    def transport(
        cls,
        store: str,
        key: str,
        cause: Optional[BaseException] = None,
    ) -> StoreError:
        """Network, quota or throttling failure."""
        return cls(
            code=ErrorCode.STORE_TRANSPORT_FAILED,
            message=f"{_prefix(store, key)}: Store error: {cause}",
            cause=cause,
            context={"store": store, "key": key},
        )

    @classmethod
    def corrupt_record(
        cls,
        store: str,
        key: str,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> StoreError:
        """Stored value could not be decoded as a record."""
        return cls(
            code=ErrorCode.STORE_CORRUPT_RECORD,
            message=f"{_prefix(store, key)}: Corrupt record: {reason}",
            cause=cause,
            context={"store": store, "key": key, "reason": reason},
        )

    @classmethod
    def not_connected(cls, store: str, key: str) -> StoreError:
        return cls(
            code=ErrorCode.STORE_NOT_CONNECTED,
            message=f"{_prefix(store, key)}: Backend is not connected",
            context={"store": store, "key": key},
        )

    @classmethod
    def contention(cls, store: str, key: str, attempts: int) -> StoreError:
        """Optimistic update kept conflicting with other writers."""
        return cls(
            code=ErrorCode.STORE_CONTENTION,
            message=(
                f"{_prefix(store, key)}: Update abandoned after "
                f"{attempts} conflicting attempts"
            ),
            context={"store": store, "key": key, "attempts": attempts},
        )


# =============================================================================
# SESSION STATE ERRORS
# =============================================================================
@dataclass(eq=False)
class SessionError(PersistError):
    """Operation not permitted in the session's current state."""

    @classmethod
    def releasing(cls, store: str, key: str) -> SessionError:
        return cls(
            code=ErrorCode.SESSION_RELEASING,
            message=(
                f"{_prefix(store, key)}: Can't update session "
                "whilst session is being released"
            ),
            context={"store": store, "key": key},
        )

    @classmethod
    def released(cls, store: str, key: str) -> SessionError:
        return cls(
            code=ErrorCode.SESSION_RELEASED,
            message=f"{_prefix(store, key)}: Can't update session that is released",
            context={"store": store, "key": key},
        )

    @classmethod
    def callback_failed(cls, store: str, key: str, cause: BaseException) -> SessionError:
        """A data, default, user_ids or metadata option function raised."""
        return cls(
            code=ErrorCode.SESSION_CALLBACK_FAILED,
            message=f"{_prefix(store, key)}: Option function raised {cause!r}",
            cause=cause,
            context={"store": store, "key": key},
        )


# =============================================================================
# LOAD ERRORS
# =============================================================================
@dataclass(eq=False)
class LoadError(PersistError):
    """Acquisition did not produce a session."""

    @classmethod
    def shutting_down(cls, store: str, key: str) -> LoadError:
        return cls(
            code=ErrorCode.LOAD_SHUTTING_DOWN,
            message=f"{_prefix(store, key)}: Cannot load store whilst server is closing",
            context={"store": store, "key": key},
        )

    @classmethod
    def attempts_exhausted(cls, store: str, key: str, attempts: int) -> LoadError:
        return cls(
            code=ErrorCode.LOAD_ATTEMPTS_EXHAUSTED,
            message=(
                f"{_prefix(store, key)}: Session still locked after "
                f"{attempts} attempts"
            ),
            context={"store": store, "key": key, "attempts": attempts},
        )


# =============================================================================
# CONFIGURATION ERRORS (RAISED)
# =============================================================================
class ConfigurationError(ValueError):
    """
    Misconfiguration detected synchronously.

    Raised, not returned: this is a defect in the calling code.
    """

    code = ErrorCode.INTERNAL_CONFIGURATION_ERROR
