"""
Record Codec: Stored Value Shape and Lock Predicates

Every key in the remote store holds one record:

    {
        "d": <payload>,
        "t": <last save time, unix seconds>,
        "l": <lock id of the owning server, absent when unowned>,
        "r": <lock id of a server asking for a release, optional>,
    }

All functions here are pure; the caller supplies `now` in tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from persist.core.constants import (
    DEAD_LOCK_DURATION_S,
    RECORD_DATA_KEY,
    RECORD_LAST_UPDATE_TIME_KEY,
    RECORD_LOCK_KEY,
    RECORD_RELEASE_REQUEST_KEY,
)

TData = TypeVar("TData")


def _now() -> int:
    return int(time.time())


# =============================================================================
# RECORD MODEL
# =============================================================================
@dataclass(frozen=True, slots=True)
class Record(Generic[TData]):
    """
    Decoded record.

    A record with lock=None is unowned. release_request, when present,
    always differs from lock.
    """

    data: TData
    last_update_time: int
    lock: Optional[str] = None
    release_request: Optional[str] = None

    def __post_init__(self) -> None:
        if self.release_request is not None and self.release_request == self.lock:
            raise ValueError(
                f"release_request {self.release_request!r} equals the current lock"
            )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape; absent fields are omitted."""
        raw: dict[str, Any] = {
            RECORD_DATA_KEY: self.data,
            RECORD_LAST_UPDATE_TIME_KEY: self.last_update_time,
        }
        if self.lock is not None:
            raw[RECORD_LOCK_KEY] = self.lock
        if self.release_request is not None:
            raw[RECORD_RELEASE_REQUEST_KEY] = self.release_request
        return raw

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Record[Any]:
        """
        Deserialize from the wire shape.

        Raises:
            ValueError: value is not a record.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"expected a mapping, got {type(raw).__name__}")
        if RECORD_LAST_UPDATE_TIME_KEY not in raw:
            raise ValueError(f"missing '{RECORD_LAST_UPDATE_TIME_KEY}' field")
        try:
            last_update_time = int(raw[RECORD_LAST_UPDATE_TIME_KEY])
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid last update time: {e}") from e
        return cls(
            data=raw.get(RECORD_DATA_KEY),
            last_update_time=last_update_time,
            lock=raw.get(RECORD_LOCK_KEY),
            release_request=raw.get(RECORD_RELEASE_REQUEST_KEY),
        )


# =============================================================================
# PREDICATES
# =============================================================================
def is_locked(record: Record[Any], lock_id: str) -> bool:
    """True if the record is locked by a server other than lock_id."""
    return record.lock is not None and record.lock != lock_id


def is_dead_lock(record: Record[Any], now: Optional[int] = None) -> bool:
    """
    True if the record has not been saved for longer than the dead-lock
    duration; its owner is presumed to have crashed.
    """
    current = _now() if now is None else now
    return current - record.last_update_time > DEAD_LOCK_DURATION_S


# =============================================================================
# ACCESSORS
# =============================================================================
def get_data(record: Record[TData]) -> TData:
    return record.data


def get_current_lock(record: Record[Any]) -> Optional[str]:
    return record.lock


def get_release_request(record: Record[Any]) -> Optional[str]:
    return record.release_request


def get_last_save_time(record: Record[Any]) -> int:
    return record.last_update_time


# =============================================================================
# BUILDERS
# =============================================================================
def locked(data: TData, lock_id: str, now: Optional[int] = None) -> Record[TData]:
    """Record owned by lock_id, saved now. Clears any release request."""
    return Record(
        data=data,
        last_update_time=_now() if now is None else now,
        lock=lock_id,
    )


def request_release(
    data: TData,
    current_lock: str,
    new_lock: str,
    last_save_time: int,
) -> Record[TData]:
    """
    Record still owned by current_lock, carrying a release request from
    new_lock. Keeps last_save_time: asking is not saving, so a crashed
    owner's lock still goes stale.
    """
    return Record(
        data=data,
        last_update_time=last_save_time,
        lock=current_lock,
        release_request=new_lock,
    )


def released(data: TData, now: Optional[int] = None) -> Record[TData]:
    """Unowned record, saved now."""
    return Record(
        data=data,
        last_update_time=_now() if now is None else now,
    )


def without_release_request(record: Record[TData]) -> Record[TData]:
    """The same record with its release request dropped. Keeps the save time."""
    return Record(
        data=record.data,
        last_update_time=record.last_update_time,
        lock=record.lock,
    )
