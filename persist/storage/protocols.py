"""
Key-Value Store Protocol: Remote Store Contract

Provides structural subtyping protocols (PEP 544) for pluggable backends:
- KeyValueStore: one named collection with an atomic update primitive
- StorageBackend: factory returning a KeyValueStore per collection name

Atomic Update Contract:
    update(key, transform) reads the current value and its KeyInfo, calls
    transform(value, key_info), and applies the returned decision atomically
    relative to other writers of the same key.

    An optimistic backend (Redis WATCH/MULTI) may call transform more than
    once when a concurrent write invalidates its read. Only the decision
    from the final call is committed, so transforms must be pure: the
    branch they took is reported through Write.outcome / Abort.outcome and
    surfaced as UpdateResult.outcome, never through captured variables.

Design Principles:
    - Result[T, StoreError] for transport failures
    - Values are JSON-compatible dicts (the record wire shape)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Generic,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
    Union,
    runtime_checkable,
)

from persist.core.errors import StoreError
from persist.core.types import Result

O = TypeVar("O")  # Outcome tag type


# =============================================================================
# KEY INFO
# =============================================================================
@dataclass(frozen=True, slots=True)
class KeyInfo:
    """
    Metadata the store keeps next to each value.

    version is assigned by the store on every committed write; callers
    never supply it.
    """
    version: str
    created_time: int               # Unix milliseconds
    updated_time: int               # Unix milliseconds
    user_ids: tuple[int, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_user_ids(self) -> list[int]:
        return list(self.user_ids)

    def get_metadata(self) -> dict[str, Any]:
        return dict(self.metadata)


# =============================================================================
# TRANSFORM DECISIONS
# =============================================================================
@dataclass(frozen=True, slots=True)
class Write(Generic[O]):
    """Commit value. user_ids/metadata of None clear the stored ones."""
    value: dict[str, Any]
    user_ids: Optional[Sequence[int]] = None
    metadata: Optional[dict[str, Any]] = None
    outcome: Optional[O] = None


@dataclass(frozen=True, slots=True)
class Abort(Generic[O]):
    """Leave the stored value unchanged."""
    outcome: Optional[O] = None


Decision = Union[Write[Any], Abort[Any]]

Transform = Callable[[Optional[dict[str, Any]], Optional[KeyInfo]], Decision]


@dataclass(frozen=True, slots=True)
class UpdateResult(Generic[O]):
    """
    Result of an atomic update.

    value/key_info describe the committed value; both are None when the
    final decision was Abort.
    """
    value: Optional[dict[str, Any]]
    key_info: Optional[KeyInfo]
    outcome: Optional[O]
    committed: bool
    attempts: int = 1


# =============================================================================
# STORE PROTOCOLS
# =============================================================================
@runtime_checkable
class KeyValueStore(Protocol):
    """
    One named collection in the remote store.

    Example:
        result = await store.update("p1", lambda value, info: Write({"d": 1, "t": 0}))
        if result.is_ok():
            committed = result.unwrap()
    """

    @property
    def name(self) -> str:
        ...

    async def update(
        self,
        key: str,
        transform: Transform,
    ) -> Result[UpdateResult[Any], StoreError]:
        """Atomically transform the value under key."""
        ...

    async def get(
        self,
        key: str,
    ) -> Result[Optional[tuple[dict[str, Any], KeyInfo]], StoreError]:
        """Read value and key info; Ok(None) if absent."""
        ...

    async def set(
        self,
        key: str,
        value: dict[str, Any],
        user_ids: Optional[Sequence[int]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Result[KeyInfo, StoreError]:
        """Unconditionally overwrite the value under key."""
        ...

    async def remove(self, key: str) -> Result[bool, StoreError]:
        """Delete key; Ok(False) if it did not exist."""
        ...


@runtime_checkable
class StorageBackend(Protocol):
    """Factory for named collections."""

    def collection(self, name: str) -> KeyValueStore:
        ...
