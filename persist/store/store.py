"""
Store: Key Mapping, Acquisition Protocol and Session Registry

One Store per logical collection of records. load() claims a record:

    1. Reject if the process is shutting down
    2. Compute the remote key
    3. Atomically, in one update:
         no record            → create it from the default, locked by us
         unlocked or dead lock → take the lock
         live foreign lock    → "steal": take the lock anyway
                                "requestRelease": leave a release request
    4. After a release request, wait on the backoff schedule and go to 3
    5. Wrap the record in an ACTIVE Session and register it

The holder sees the release request on its next update() (explicit or
autosave), saves and unlocks; our next attempt then takes the lock with
the holder's latest data.

Safety Guarantees:
    - The remote store's per-key atomic update is the only mutual exclusion
    - A lock not saved for DEAD_LOCK_DURATION_S is reclaimed unilaterally
    - "steal" may lose the previous holder's unsaved changes
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from enum import Enum, auto
from typing import (
    Any,
    AsyncIterator,
    Generic,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from persist.core.config import ConflictPolicy, PersistSettings, StoreOptions
from persist.core.errors import (
    ConfigurationError,
    LoadError,
    PersistError,
    SessionError,
    StoreError,
)
from persist.core.signal import Signal
from persist.core.types import Result, Ok, Err, generate_lock_id
from persist.observability.logging import StructuredLogger
from persist.observability.metrics import MetricsCollector
from persist.reliability.backoff import LoadBackoff, Sleep
from persist.session import record as R
from persist.session.session import Session
from persist.storage.protocols import (
    Abort,
    Decision,
    KeyInfo,
    KeyValueStore,
    UpdateResult,
    Write,
)
from persist.store.autosave import AutosaveScheduler
from persist.store.shutdown import ShutdownCoordinator

TKey = TypeVar("TKey")
TData = TypeVar("TData")

logger = StructuredLogger("persist.store")


class LoadAction(Enum):
    """What an acquisition attempt wrote."""
    LOCK = auto()
    REQUEST_RELEASE = auto()


class Store(Generic[TKey, TData]):
    """
    Stores a collection of records.

    Attributes:
        name: Name of the collection
        lock_id: Id used for locking; unique per server
        datastore: Remote handle used for every read/write
        sessions: Loaded sessions by string key
        session_released: Signal[Session, bool] fired when any session releases

    Usage:
        store = Store("players", StoreOptions(
            backend=backend,
            data=lambda key: players[key].to_dict(),
            default=lambda key: {"coins": 0},
        ))

        result = await store.load("p1")
        if result.is_ok():
            session = result.unwrap()
            ...
            await session.release()
    """

    default_lock_id: str = generate_lock_id()

    __slots__ = (
        "name", "lock_id", "datastore", "sessions", "session_released",
        "_options", "_coordinator", "_backoff", "_autosave",
    )

    def __init__(
        self,
        name: str,
        options: StoreOptions[TKey, TData],
        coordinator: Optional[ShutdownCoordinator] = None,
        sleep: Optional[Sleep] = None,
        settings: Optional[PersistSettings] = None,
    ) -> None:
        if not name:
            raise ConfigurationError("Store name must be a non-empty string")

        self.name = name
        self.datastore: KeyValueStore = (
            options.datastore
            if options.datastore is not None
            else options.backend.collection(name)  # type: ignore[union-attr]
        )
        settings = settings if settings is not None else PersistSettings.load()
        self.lock_id = options.lock_id or settings.lock_id or Store.default_lock_id
        self.sessions: dict[str, Session[TKey, TData]] = {}
        self.session_released: Signal[Any] = Signal("store.session_released")

        self._options = options
        self._coordinator = coordinator or ShutdownCoordinator.default()
        self._backoff = LoadBackoff(options.retry_delays, sleep)
        autosave_s = options.autosave_interval(settings)
        self._autosave: Optional[AutosaveScheduler] = (
            AutosaveScheduler(self, autosave_s, sleep) if autosave_s is not None else None
        )

        if options.release_sessions_on_close:
            self._coordinator.register(self)

    # -------------------------------------------------------------------------
    # KEY AND DATA MAPPING
    # -------------------------------------------------------------------------

    def get_key(self, key: TKey) -> str:
        """Get the string key used in the remote store."""
        if self._options.key is not None:
            return self._options.key(key)

        if not isinstance(key, str):
            raise ConfigurationError(
                f"Store '{self.name}' doesn't know how to convert value of type "
                f"'{type(key).__name__}' into a data store key."
            )
        return key

    def get_data(self, key: TKey) -> TData:
        """Get the data to store in the remote store."""
        return self._options.data(key)

    def get_default(self, key: TKey) -> TData:
        """Get the default data for a key that was never saved."""
        return self._options.default(key)

    def get_metadata(self, key: TKey) -> Optional[dict[str, Any]]:
        if self._options.metadata is not None:
            return self._options.metadata(key)
        return None

    def get_user_ids(self, key: TKey) -> Optional[Sequence[int]]:
        if self._options.user_ids is not None:
            return self._options.user_ids(key)
        return None

    def get_session(self, key: TKey) -> Optional[Session[TKey, TData]]:
        """Get an existing session using the key."""
        return self.sessions.get(self.get_key(key))

    @property
    def coordinator(self) -> ShutdownCoordinator:
        return self._coordinator

    @property
    def autosave(self) -> Optional[AutosaveScheduler]:
        return self._autosave

    # -------------------------------------------------------------------------
    # LOADING
    # -------------------------------------------------------------------------

    async def load(
        self,
        key: TKey,
        on_session_locked: Union[ConflictPolicy, str] = ConflictPolicy.REQUEST_RELEASE,
        default: Optional[TData] = None,
    ) -> Result[Session[TKey, TData], PersistError]:
        """
        Load the record under key and claim it.

        Args:
            key: The key to load
            on_session_locked: "requestRelease" retries until the holder
                hands over (or its lock goes stale); "steal" overwrites the
                holder's lock, which may lose its unsaved data
            default: Data for a new record, overrides StoreOptions.default

        Returns:
            Ok(session) once acquired. With "requestRelease" this waits
            without a deadline unless max_load_attempts is set; Err on
            store errors, shutdown, or exhausted attempts.
        """
        policy = ConflictPolicy.parse(on_session_locked)
        key_str = self.get_key(key)

        if self._coordinator.is_closing:
            return Err(LoadError.shutting_down(self.name, key_str))

        if self._autosave is not None:
            self._autosave.start()

        return await self._coordinator.track_load(
            self._load(key, key_str, policy, default)
        )

    @asynccontextmanager
    async def session(
        self,
        key: TKey,
        on_session_locked: Union[ConflictPolicy, str] = ConflictPolicy.REQUEST_RELEASE,
        default: Optional[TData] = None,
    ) -> AsyncIterator[Session[TKey, TData]]:
        """
        Load as async context manager; releases on exit.

        Raises:
            PersistError: if the load fails
        """
        result = await self.load(key, on_session_locked, default)
        if result.is_err():
            raise result.error

        session = result.unwrap()
        try:
            yield session
        finally:
            await session.release()

    async def _load(
        self,
        key: TKey,
        key_str: str,
        policy: ConflictPolicy,
        default: Optional[TData],
    ) -> Result[Session[TKey, TData], PersistError]:
        log = logger.with_extra(store=self.name, key=key_str)
        metrics = MetricsCollector.get_instance()
        max_attempts = self._options.max_load_attempts

        log.info("Loading session.")

        try:
            fresh = (
                self.get_default(key) if default is None else default,
                self.get_user_ids(key),
                self.get_metadata(key),
            )
        except Exception as e:
            metrics.loads.inc(store=self.name, outcome="error")
            return Err(SessionError.callback_failed(self.name, key_str, e))

        attempt = 0
        while True:
            result = await self._attempt_load(key_str, policy, fresh, log)
            if result.is_err():
                metrics.loads.inc(store=self.name, outcome="error")
                return result

            committed = result.unwrap()
            if committed.outcome is LoadAction.LOCK:
                break
            if committed.outcome is not LoadAction.REQUEST_RELEASE:
                raise RuntimeError(
                    f"Invalid load action: {committed.outcome!r}. This is a persist bug."
                )

            log.debug("Requesting release.")
            if max_attempts is not None and attempt + 1 >= max_attempts:
                metrics.loads.inc(store=self.name, outcome="exhausted")
                await self._withdraw_release_request(key_str, log)
                return Err(LoadError.attempts_exhausted(self.name, key_str, attempt + 1))

            metrics.load_retries.inc(store=self.name)
            log.debug(f"Retrying in {self._backoff.delay_for(attempt)} seconds.")
            await self._backoff.wait(attempt)
            attempt += 1

            if self._coordinator.is_closing:
                metrics.loads.inc(store=self.name, outcome="shutdown")
                await self._withdraw_release_request(key_str, log)
                return Err(LoadError.shutting_down(self.name, key_str))
            log.debug("Retrying.")

        record = R.Record.from_dict(committed.value)
        session: Session[TKey, TData] = Session(self, key, record.data, committed.key_info)
        self._register(key_str, session)

        metrics.loads.inc(store=self.name, outcome="locked")
        log.info("Loaded session.")
        return Ok(session)

    async def _attempt_load(
        self,
        key_str: str,
        policy: ConflictPolicy,
        fresh: tuple[TData, Optional[Sequence[int]], Optional[dict[str, Any]]],
        log: StructuredLogger,
    ) -> Result[UpdateResult[LoadAction], PersistError]:
        lock_id = self.lock_id
        new_data, user_ids, metadata = fresh

        def transform(value: Optional[dict[str, Any]], info: Optional[KeyInfo]) -> Decision:
            if value is None:
                log.debug("Data was nil, using default.")
                return Write(
                    R.locked(new_data, lock_id).to_dict(),
                    user_ids,
                    metadata,
                    outcome=LoadAction.LOCK,
                )

            current = R.Record.from_dict(value)
            action = self._get_load_action(current, policy, log)

            if action is LoadAction.LOCK:
                new_record = R.locked(current.data, lock_id)
            elif action is LoadAction.REQUEST_RELEASE:
                new_record = R.request_release(
                    current.data,
                    R.get_current_lock(current),
                    lock_id,
                    R.get_last_save_time(current),
                )
            else:
                raise RuntimeError(
                    f"Invalid load action: {action!r}. This is a persist bug."
                )

            return Write(
                new_record.to_dict(),
                info.user_ids if info is not None else None,
                info.metadata if info is not None else None,
                outcome=action,
            )

        try:
            result = await self.datastore.update(key_str, transform)
        except ValueError as e:
            return Err(StoreError.corrupt_record(self.name, key_str, str(e), cause=e))

        if result.is_ok() and result.unwrap().outcome is LoadAction.LOCK:
            log.debug("Locked session.")
        return result

    async def _withdraw_release_request(self, key_str: str, log: StructuredLogger) -> None:
        """Take back our release request if it is still on the record."""
        lock_id = self.lock_id

        def transform(value: Optional[dict[str, Any]], info: Optional[KeyInfo]) -> Decision:
            if value is None:
                return Abort(False)
            current = R.Record.from_dict(value)
            if R.get_release_request(current) != lock_id:
                return Abort(False)
            return Write(
                R.without_release_request(current).to_dict(),
                info.user_ids if info is not None else None,
                info.metadata if info is not None else None,
                outcome=True,
            )

        try:
            result = await self.datastore.update(key_str, transform)
        except ValueError as e:
            log.warning(f"Could not withdraw release request: {e}")
            return

        if result.is_err():
            log.warning(f"Could not withdraw release request: {result.error}")
        elif result.unwrap().outcome:
            log.debug("Withdrew release request.")

    def _get_load_action(
        self,
        current: R.Record[Any],
        policy: ConflictPolicy,
        log: StructuredLogger,
    ) -> LoadAction:
        if not R.is_locked(current, self.lock_id):
            log.debug("Data is not locked.")
            return LoadAction.LOCK

        log.debug("Data is locked.")

        # Not saved for a long time; the holder probably crashed
        if R.is_dead_lock(current):
            log.debug("Lock is dead.")
            return LoadAction.LOCK

        if policy is ConflictPolicy.REQUEST_RELEASE:
            return LoadAction.REQUEST_RELEASE
        return LoadAction.LOCK

    # -------------------------------------------------------------------------
    # REGISTRY
    # -------------------------------------------------------------------------

    def _register(self, key_str: str, session: Session[TKey, TData]) -> None:
        self.sessions[key_str] = session
        MetricsCollector.get_instance().sessions_active.set(
            len(self.sessions), store=self.name
        )

        def on_released(did_save: bool) -> None:
            if self.sessions.get(key_str) is session:
                del self.sessions[key_str]
                MetricsCollector.get_instance().sessions_active.set(
                    len(self.sessions), store=self.name
                )
            self.session_released.fire(session, did_save)

        session.released.once(on_released)

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def stop_autosave(self) -> None:
        if self._autosave is not None:
            await self._autosave.stop()

    async def close(self) -> None:
        """Stop autosave and release this store's sessions."""
        await self.stop_autosave()
        sessions = list(self.sessions.values())
        if sessions:
            await asyncio.gather(*(s.release() for s in sessions))
        self._coordinator.unregister(self)

    def __repr__(self) -> str:
        return (
            f"Store(name={self.name!r}, lock_id={self.lock_id!r}, "
            f"sessions={len(self.sessions)})"
        )
