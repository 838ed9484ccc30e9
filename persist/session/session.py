"""
Session: One Server's Claim on One Record

States:
    ACTIVE    → Lock held; update() saves, release() hands the record back
    RELEASING → A release is in flight; update() is rejected
    RELEASED  → Terminal; data/key_info keep their last known values

Transitions:
    ACTIVE    → RELEASING : release() called
    ACTIVE    → RELEASED  : update() found a foreign lock or release request
    RELEASING → RELEASED  : release write settled
    RELEASING → ACTIVE    : release write failed (caller may retry)

Each update()/release() performs exactly one atomic update on the remote
store. The transform is pure: the branch it took comes back as the
update's outcome, so a backend that re-runs the transform after a write
conflict still reports the branch that was actually committed.

Thread Safety:
    Calls on one Session must not overlap; callers serialize them.
    Sessions of different keys are independent.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import (
    Any,
    Generic,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
)

from persist.core.errors import PersistError, SessionError, StoreError
from persist.core.signal import Signal
from persist.core.types import Result, Ok, Err
from persist.observability.logging import StructuredLogger
from persist.observability.metrics import MetricsCollector
from persist.session import record as R
from persist.storage.protocols import (
    Abort,
    Decision,
    KeyInfo,
    KeyValueStore,
    Write,
)

TKey = TypeVar("TKey")
TData = TypeVar("TData")

logger = StructuredLogger("persist.session")


# =============================================================================
# SESSION STATE ENUMERATION
# =============================================================================
class SessionState(Enum):
    """Session lifecycle states; RELEASED is terminal."""
    ACTIVE = auto()
    RELEASING = auto()
    RELEASED = auto()

    @property
    def is_terminal(self) -> bool:
        return self is SessionState.RELEASED


class UpdateOutcome(Enum):
    """What a successful update() did."""
    SAVED = "saved"                            # Saved, lock kept
    SAVED_AND_RELEASED = "saved_and_released"  # Saved, then handed over on request
    OWNERSHIP_LOST = "ownership_lost"          # Another server owns the lock; not saved

    @property
    def did_save(self) -> bool:
        return self is not UpdateOutcome.OWNERSHIP_LOST

    @property
    def did_release(self) -> bool:
        return self is not UpdateOutcome.SAVED


# =============================================================================
# STORE-SIDE INTERFACE
# =============================================================================
class SessionOwner(Protocol[TKey, TData]):
    """The parts of a Store a Session relies on."""

    name: str
    lock_id: str
    datastore: KeyValueStore

    def get_key(self, key: TKey) -> str: ...

    def get_data(self, key: TKey) -> TData: ...

    def get_user_ids(self, key: TKey) -> Optional[Sequence[int]]: ...

    def get_metadata(self, key: TKey) -> Optional[dict[str, Any]]: ...


# =============================================================================
# SESSION
# =============================================================================
class Session(Generic[TKey, TData]):
    """
    A claimed record.

    Created by Store.load(); you should not construct one directly.

    Attributes:
        key: Application key
        key_info: Store metadata of the last committed write
        data: Payload as of the last load/save
        store: Owning store (not owned by the session)
        released: Signal[bool] fired once, with whether data was saved
        saved_this_cycle: Set by update(); lets autosave skip this session

    Usage:
        result = await store.load("p1")
        session = result.unwrap()
        session.released.connect(lambda did_save: ...)
        await session.update()
        await session.release()
    """

    __slots__ = (
        "store", "key", "key_info", "data", "released",
        "saved_this_cycle", "_state",
    )

    def __init__(
        self,
        store: SessionOwner[TKey, TData],
        key: TKey,
        data: TData,
        key_info: Optional[KeyInfo],
    ) -> None:
        self.store = store
        self.key = key
        self.key_info = key_info
        self.data = data
        self.released: Signal[bool] = Signal("session.released")
        self.saved_this_cycle = False
        self._state = SessionState.ACTIVE

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def is_releasing(self) -> bool:
        return self._state is SessionState.RELEASING

    @property
    def is_released(self) -> bool:
        return self._state is SessionState.RELEASED

    @property
    def key_str(self) -> str:
        return self.store.get_key(self.key)

    def _log(self, key_str: str) -> StructuredLogger:
        return logger.with_extra(store=self.store.name, key=key_str)

    def _refresh(self, value: Optional[dict[str, Any]], key_info: Optional[KeyInfo]) -> None:
        if value is not None and key_info is not None:
            self.data = R.Record.from_dict(value).data
            self.key_info = key_info

    def _collect(self, key_str: str) -> Result[tuple[TData, Any, Any], SessionError]:
        """Call the data, user_ids and metadata option functions once, before any remote step."""
        store = self.store
        try:
            return Ok((
                store.get_data(self.key),
                store.get_user_ids(self.key),
                store.get_metadata(self.key),
            ))
        except Exception as e:
            return Err(SessionError.callback_failed(store.name, key_str, e))

    def _finish_release(self, saved: bool) -> None:
        self._state = SessionState.RELEASED
        MetricsCollector.get_instance().releases.inc(
            store=self.store.name, saved=str(saved).lower()
        )
        self.released.fire(saved)

    # -------------------------------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------------------------------

    async def update(self) -> Result[UpdateOutcome, PersistError]:
        """
        Save the current data, refreshing data and key_info from the
        committed record.

        Hands the record over when another server has requested a release,
        and gives it up without saving when another server has taken the
        lock. Either way the session ends RELEASED and `released` fires.

        Returns:
            Ok(outcome), Err(SessionError) if releasing/released or an option
            function raised (no remote call made), or Err(StoreError) on
            transport failure.
        """
        store = self.store
        key_str = store.get_key(self.key)

        if self._state is SessionState.RELEASING:
            return Err(SessionError.releasing(store.name, key_str))
        if self._state is SessionState.RELEASED:
            return Err(SessionError.released(store.name, key_str))

        log = self._log(key_str)
        collected = self._collect(key_str)
        if collected.is_err():
            log.warning(f"Session update failed: {collected.error}")
            return collected
        data, user_ids, metadata = collected.unwrap()
        lock_id = store.lock_id
        self.saved_this_cycle = True

        log.info("Updating session.")

        def transform(value: Optional[dict[str, Any]], _info: Optional[KeyInfo]) -> Decision:
            if value is not None:
                current = R.Record.from_dict(value)

                if R.is_locked(current, lock_id):
                    return Abort(UpdateOutcome.OWNERSHIP_LOST)

                release_request = R.get_release_request(current)
                if release_request is not None and release_request != lock_id:
                    return Write(
                        R.released(data).to_dict(),
                        user_ids,
                        metadata,
                        outcome=UpdateOutcome.SAVED_AND_RELEASED,
                    )

            return Write(
                R.locked(data, lock_id).to_dict(),
                user_ids,
                metadata,
                outcome=UpdateOutcome.SAVED,
            )

        result = await _run_update(store.datastore, store.name, key_str, transform)
        if result.is_err():
            log.warning(f"Session update failed: {result.error}")
            return result

        committed = result.unwrap()
        outcome: UpdateOutcome = committed.outcome
        MetricsCollector.get_instance().saves.inc(store=store.name, outcome=outcome.value)

        if outcome.did_release:
            self._state = SessionState.RELEASING

        self._refresh(committed.value, committed.key_info)

        if outcome is UpdateOutcome.SAVED:
            log.info("Session updated and saved.")
        elif outcome is UpdateOutcome.SAVED_AND_RELEASED:
            log.info("A different server is requesting a release. Session saved and released.")
            self._finish_release(True)
        else:
            log.warning(
                "Data was locked whilst trying to update - data could not be "
                "saved - session has been released"
            )
            self._finish_release(False)

        return Ok(outcome)

    async def release(self) -> Result[Optional[bool], PersistError]:
        """
        Save the data and remove the lock.

        A foreign lock is never overwritten; the session is still released
        and `released` fires with False.

        Returns:
            Ok(None) if already releasing/released, Ok(saved) otherwise.
            Err(SessionError) if an option function raised, Err(StoreError)
            on transport failure; the session stays ACTIVE either way.
        """
        if self._state is not SessionState.ACTIVE:
            return Ok(None)

        store = self.store
        key_str = store.get_key(self.key)
        log = self._log(key_str)
        collected = self._collect(key_str)
        if collected.is_err():
            log.warning(f"Session release failed: {collected.error}")
            return collected
        data, user_ids, metadata = collected.unwrap()
        lock_id = store.lock_id

        log.info("Releasing session.")
        self._state = SessionState.RELEASING

        def transform(value: Optional[dict[str, Any]], _info: Optional[KeyInfo]) -> Decision:
            if value is not None and R.is_locked(R.Record.from_dict(value), lock_id):
                return Abort(False)

            return Write(R.released(data).to_dict(), user_ids, metadata, outcome=True)

        try:
            result = await _run_update(store.datastore, store.name, key_str, transform)
        except BaseException:
            self._state = SessionState.ACTIVE
            raise

        if result.is_err():
            self._state = SessionState.ACTIVE
            log.warning(f"Session release failed: {result.error}")
            return result

        committed = result.unwrap()
        saved = bool(committed.outcome)
        self._refresh(committed.value, committed.key_info)

        if saved:
            log.info("Data saved and released.")
        else:
            log.warning("Data was locked whilst trying to release - data could not be saved")

        self._finish_release(saved)
        return Ok(saved)

    def __repr__(self) -> str:
        return (
            f"Session(store={self.store.name!r}, key={self.key!r}, "
            f"state={self._state.name})"
        )


async def _run_update(
    datastore: KeyValueStore,
    store_name: str,
    key_str: str,
    transform: Any,
) -> Result[Any, StoreError]:
    """
    Run an atomic update, turning a record that cannot be decoded into
    Err(StoreError) instead of an exception escaping the transform.
    """
    try:
        return await datastore.update(key_str, transform)
    except ValueError as e:
        return Err(StoreError.corrupt_record(store_name, key_str, str(e), cause=e))
