"""
Integration Tests: Store Acquisition Protocol

Tests:
    - Load of a new key creates it from the default
    - Stale locks are reclaimed under both policies
    - requestRelease retries on the backoff schedule
    - Handoff between two servers sharing a backend
    - Concurrent loads of one key and stealing
    - Attempt cap, shutdown rejection and key mapping
"""

from __future__ import annotations

import asyncio
import time

import pytest

from persist.core.config import ConflictPolicy, PersistSettings, StoreOptions
from persist.core.constants import DEAD_LOCK_DURATION_S
from persist.core.errors import ConfigurationError, ErrorCode, PersistError
from persist.observability.metrics import MetricsCollector
from persist.session import record as R
from persist.session.session import UpdateOutcome
from persist.store.store import Store
from persist.tests.conftest import FakeSleep, make_store


async def _stored(datastore, key):
    found = (await datastore.get(key)).unwrap()
    return None if found is None else R.Record.from_dict(found[0])


class TestLoad:
    """Tests for uncontended loads."""

    @pytest.mark.asyncio
    async def test_load_new_key_uses_default(self, backend, coordinator):
        store = make_store(backend, coordinator, "me")
        result = await store.load("p1")

        session = result.unwrap()
        assert session.is_active
        assert session.data == {"coins": 0}
        assert store.get_session("p1") is session

        stored = await _stored(store.datastore, "p1")
        assert stored.lock == "me"
        assert stored.data == {"coins": 0}

    @pytest.mark.asyncio
    async def test_load_default_argument_overrides_option(self, backend, coordinator):
        store = make_store(backend, coordinator, "me")
        session = (await store.load("p1", default={"coins": 10})).unwrap()
        assert session.data == {"coins": 10}

    @pytest.mark.asyncio
    async def test_load_keeps_existing_data(self, backend, coordinator):
        store = make_store(backend, coordinator, "me")
        await store.datastore.set("p1", R.released({"coins": 42}).to_dict(), user_ids=[7])

        session = (await store.load("p1")).unwrap()

        assert session.data == {"coins": 42}
        assert session.key_info.get_user_ids() == [7]

    @pytest.mark.asyncio
    async def test_load_then_release_empties_registry(self, backend, coordinator):
        players = {"p1": {"coins": 0}}
        store = make_store(backend, coordinator, "me", players)
        session = (await store.load("p1")).unwrap()

        players["p1"] = {"coins": 9}
        await session.release()

        assert store.sessions == {}
        stored = await _stored(store.datastore, "p1")
        assert stored.lock is None
        assert stored.data == {"coins": 9}

    @pytest.mark.asyncio
    async def test_session_context_manager_releases(self, backend, coordinator):
        store = make_store(backend, coordinator, "me", {"p1": {"coins": 0}})

        async with store.session("p1") as session:
            assert session.is_active

        assert session.is_released
        assert store.sessions == {}

    @pytest.mark.asyncio
    async def test_session_released_signal(self, backend, coordinator):
        store = make_store(backend, coordinator, "me", {"p1": {"coins": 0}})
        events = []
        store.session_released.connect(lambda session, saved: events.append((session, saved)))

        session = (await store.load("p1")).unwrap()
        await session.release()

        assert events == [(session, True)]

    @pytest.mark.asyncio
    async def test_metadata_and_user_ids_written_on_create(self, backend, coordinator):
        store = make_store(
            backend, coordinator, "me",
            user_ids=lambda key: [1, 2],
            metadata=lambda key: {"region": "eu"},
        )
        session = (await store.load("p1")).unwrap()

        assert session.key_info.get_user_ids() == [1, 2]
        assert session.key_info.get_metadata() == {"region": "eu"}

    @pytest.mark.asyncio
    async def test_load_metrics(self, backend, coordinator):
        store = make_store(backend, coordinator, "me")
        await store.load("p1")

        metrics = MetricsCollector.get_instance()
        assert metrics.loads.get(store="players", outcome="locked") == 1
        assert metrics.sessions_active.get(store="players") == 1


class TestKeys:
    """Tests for key mapping."""

    @pytest.mark.asyncio
    async def test_non_string_key_without_key_function(self, backend, coordinator):
        store = make_store(backend, coordinator, "me")
        with pytest.raises(ConfigurationError):
            await store.load(123)

    @pytest.mark.asyncio
    async def test_key_function(self, backend, coordinator):
        players = {7: {"coins": 1}}
        store = make_store(backend, coordinator, "me", players, key=lambda uid: f"player_{uid}")

        session = (await store.load(7)).unwrap()

        assert session.key_str == "player_7"
        assert store.get_session(7) is session
        assert await _stored(store.datastore, "player_7") is not None

    def test_unknown_policy(self, backend, coordinator):
        with pytest.raises(ConfigurationError):
            ConflictPolicy.parse("wait")

    def test_policy_spellings(self):
        assert ConflictPolicy.parse("requestRelease") is ConflictPolicy.REQUEST_RELEASE
        assert ConflictPolicy.parse("steal") is ConflictPolicy.STEAL
        assert ConflictPolicy.parse("STEAL") is ConflictPolicy.STEAL


class TestContention:
    """Tests for loads of a key locked by another server."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", ["requestRelease", "steal"])
    async def test_stale_lock_is_reclaimed(self, backend, coordinator, policy):
        sleep = FakeSleep()
        store = make_store(backend, coordinator, "me", sleep=sleep)
        stale = int(time.time()) - DEAD_LOCK_DURATION_S - 1
        await store.datastore.set("p1", R.locked({"coins": 5}, "crashed", now=stale).to_dict())

        session = (await store.load("p1", policy)).unwrap()

        assert session.data == {"coins": 5}
        assert sleep.delays == []
        assert (await _stored(store.datastore, "p1")).lock == "me"

    @pytest.mark.asyncio
    async def test_backoff_schedule(self, backend, coordinator):
        """Delays follow the schedule and repeat the last entry."""
        store_ref = {}

        async def unlock_after_eight(calls):
            if calls == 8:
                await store_ref["store"].datastore.set(
                    "p1", R.released({"coins": 5}).to_dict()
                )

        sleep = FakeSleep(unlock_after_eight)
        store = make_store(backend, coordinator, "me", sleep=sleep)
        store_ref["store"] = store
        await store.datastore.set("p1", R.locked({"coins": 1}, "other").to_dict())

        session = (await store.load("p1")).unwrap()

        assert sleep.delays == [6, 8, 10, 12, 24, 30, 30, 30]
        assert session.data == {"coins": 5}
        assert MetricsCollector.get_instance().load_retries.get(store="players") == 8

    @pytest.mark.asyncio
    async def test_request_release_leaves_request_and_save_time(self, backend, coordinator):
        seen = {}

        async def inspect(calls):
            seen["record"] = await _stored(store.datastore, "p1")
            await store.datastore.set("p1", R.released({"coins": 1}).to_dict())

        store = make_store(backend, coordinator, "me", sleep=FakeSleep(inspect))
        saved_at = int(time.time()) - 60
        await store.datastore.set(
            "p1", R.locked({"coins": 1}, "other", now=saved_at).to_dict()
        )

        await store.load("p1")

        assert seen["record"].lock == "other"
        assert seen["record"].release_request == "me"
        assert seen["record"].last_update_time == saved_at

    @pytest.mark.asyncio
    async def test_handoff_between_servers(self, backend, coordinator):
        """Server Y asks, server X hands over on its next save, Y gets X's data."""
        players_x = {"p1": {"coins": 0}}
        store_x = make_store(backend, coordinator, "X", players_x)
        session_x = (await store_x.load("p1")).unwrap()
        x_events = []
        session_x.released.connect(x_events.append)

        players_x["p1"] = {"coins": 100}
        outcomes = []

        async def x_saves(calls):
            if calls == 1:
                outcomes.append((await session_x.update()).unwrap())

        sleep_y = FakeSleep(x_saves)
        store_y = make_store(backend, coordinator, "Y", sleep=sleep_y)

        session_y = (await store_y.load("p1", "requestRelease")).unwrap()

        assert outcomes == [UpdateOutcome.SAVED_AND_RELEASED]
        assert x_events == [True]
        assert store_x.sessions == {}
        assert sleep_y.delays == [6]
        assert session_y.data == {"coins": 100}
        assert (await _stored(backend.collection("players"), "p1")).lock == "Y"

    @pytest.mark.asyncio
    async def test_concurrent_loads_single_owner(self, backend, coordinator):
        """Two servers racing for a new key: one wins, the other waits its turn."""
        stores = {}

        async def release_winner(calls):
            if calls == 1:
                for store in stores.values():
                    for session in list(store.sessions.values()):
                        await session.release()

        sleep = FakeSleep(release_winner)
        stores["a"] = make_store(backend, coordinator, "a", {"p1": {"coins": 0}}, sleep=sleep)
        stores["b"] = make_store(backend, coordinator, "b", {"p1": {"coins": 0}}, sleep=sleep)

        first, second = await asyncio.gather(
            stores["a"].load("p1"),
            stores["b"].load("p1"),
        )

        sessions = [first.unwrap(), second.unwrap()]
        assert sleep.delays == [6]
        assert sum(s.is_active for s in sessions) == 1

        winner = next(s for s in sessions if s.is_active)
        assert (await _stored(backend.collection("players"), "p1")).lock == winner.store.lock_id

    @pytest.mark.asyncio
    async def test_steal(self, backend, coordinator):
        players_x = {"p1": {"coins": 0}}
        store_x = make_store(backend, coordinator, "X", players_x)
        session_x = (await store_x.load("p1")).unwrap()

        sleep_y = FakeSleep()
        store_y = make_store(backend, coordinator, "Y", sleep=sleep_y)
        session_y = (await store_y.load("p1", ConflictPolicy.STEAL)).unwrap()

        assert sleep_y.delays == []
        assert session_y.is_active

        players_x["p1"] = {"coins": 1000}
        result = await session_x.update()
        assert result.unwrap() is UpdateOutcome.OWNERSHIP_LOST
        assert store_x.sessions == {}

        stored = await _stored(backend.collection("players"), "p1")
        assert stored.lock == "Y"
        assert stored.data == {"coins": 0}

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, backend, coordinator):
        sleep = FakeSleep()
        store = make_store(backend, coordinator, "me", sleep=sleep, max_load_attempts=2)
        await store.datastore.set("p1", R.locked({"coins": 1}, "other").to_dict())

        result = await store.load("p1")

        assert result.error.code is ErrorCode.LOAD_ATTEMPTS_EXHAUSTED
        assert sleep.delays == [6]
        assert store.sessions == {}

    @pytest.mark.asyncio
    async def test_exhausted_load_withdraws_release_request(self, backend, coordinator):
        """A load that gives up must not make the holder hand over to nobody."""
        store_x = make_store(backend, coordinator, "X", {"p1": {"coins": 5}})
        session_x = (await store_x.load("p1")).unwrap()
        store_y = make_store(backend, coordinator, "Y", max_load_attempts=1)

        result = await store_y.load("p1")

        assert result.error.code is ErrorCode.LOAD_ATTEMPTS_EXHAUSTED
        stored = await _stored(backend.collection("players"), "p1")
        assert stored.lock == "X"
        assert stored.release_request is None
        assert (await session_x.update()).unwrap() is UpdateOutcome.SAVED
        assert session_x.is_active

    @pytest.mark.asyncio
    async def test_shutdown_during_wait_withdraws_release_request(self, backend, coordinator):
        async def close(calls):
            coordinator.begin_shutdown()

        store = make_store(backend, coordinator, "me", sleep=FakeSleep(close))
        await store.datastore.set("p1", R.locked({"coins": 1}, "other").to_dict())

        result = await store.load("p1")

        assert result.error.code is ErrorCode.LOAD_SHUTTING_DOWN
        stored = await _stored(store.datastore, "p1")
        assert stored.lock == "other"
        assert stored.release_request is None

    @pytest.mark.asyncio
    async def test_withdraw_leaves_other_servers_request(self, backend, coordinator):
        async def overtaken_then_close(calls):
            await store.datastore.set(
                "p1", R.request_release({"coins": 1}, "other", "third", int(time.time())).to_dict()
            )
            coordinator.begin_shutdown()

        store = make_store(backend, coordinator, "me", sleep=FakeSleep(overtaken_then_close))
        await store.datastore.set("p1", R.locked({"coins": 1}, "other").to_dict())

        result = await store.load("p1")

        assert result.error.code is ErrorCode.LOAD_SHUTTING_DOWN
        assert (await _stored(store.datastore, "p1")).release_request == "third"


class TestShutdownInteraction:
    """Tests for loads during shutdown."""

    @pytest.mark.asyncio
    async def test_load_rejected_while_closing(self, backend, coordinator):
        store = make_store(backend, coordinator, "me")
        coordinator.begin_shutdown()

        result = await store.load("p1")

        assert result.error.code is ErrorCode.LOAD_SHUTTING_DOWN
        assert store.datastore.update_count == 0

    @pytest.mark.asyncio
    async def test_retry_stops_when_shutdown_begins(self, backend, coordinator):
        async def close(calls):
            coordinator.begin_shutdown()

        store = make_store(backend, coordinator, "me", sleep=FakeSleep(close))
        await store.datastore.set("p1", R.locked({"coins": 1}, "other").to_dict())

        result = await store.load("p1")

        assert result.error.code is ErrorCode.LOAD_SHUTTING_DOWN

    @pytest.mark.asyncio
    async def test_session_context_manager_raises_load_error(self, backend, coordinator):
        store = make_store(backend, coordinator, "me")
        coordinator.begin_shutdown()

        with pytest.raises(PersistError) as excinfo:
            async with store.session("p1"):
                pass

        assert excinfo.value.code is ErrorCode.LOAD_SHUTTING_DOWN


class TestOptionFunctions:
    """Tests for errors raised by option functions."""

    @pytest.mark.asyncio
    async def test_default_function_error_is_returned(self, backend, coordinator):
        def broken_default(key):
            raise ValueError("no template for " + key)

        store = Store(
            "players",
            StoreOptions(
                backend=backend,
                lock_id="me",
                data=lambda key: {},
                default=broken_default,
                autosave_seconds=0,
            ),
            coordinator=coordinator,
        )

        result = await store.load("p1")

        assert result.error.code is ErrorCode.SESSION_CALLBACK_FAILED
        assert isinstance(result.error.cause, ValueError)
        assert store.datastore.update_count == 0


class TestSettings:
    """Tests for process settings applied to stores."""

    def _store(self, backend, coordinator, settings=None, **overrides):
        options = dict(backend=backend, data=lambda key: {}, default=lambda key: {})
        options.update(overrides)
        return Store("players", StoreOptions(**options), coordinator=coordinator, settings=settings)

    def test_settings_supply_lock_id_and_autosave(self, backend, coordinator):
        store = self._store(
            backend, coordinator, PersistSettings(lock_id="server-9", autosave_seconds=12)
        )
        assert store.lock_id == "server-9"
        assert store.autosave.interval == 12

    def test_options_override_settings(self, backend, coordinator):
        store = self._store(
            backend, coordinator, PersistSettings(lock_id="server-9", autosave_seconds=12),
            lock_id="me", autosave_seconds=0,
        )
        assert store.lock_id == "me"
        assert store.autosave is None

    def test_settings_read_from_environment(self, backend, coordinator, monkeypatch):
        monkeypatch.setenv("PERSIST_LOCK_ID", "server-env")
        monkeypatch.setenv("PERSIST_AUTOSAVE_SECONDS", "0")

        store = self._store(backend, coordinator)

        assert store.lock_id == "server-env"
        assert store.autosave is None

    def test_process_default_lock_id(self, backend, coordinator, monkeypatch):
        monkeypatch.delenv("PERSIST_LOCK_ID", raising=False)
        store = self._store(backend, coordinator)
        assert store.lock_id == Store.default_lock_id

    def test_invalid_environment(self, backend, coordinator, monkeypatch):
        monkeypatch.setenv("PERSIST_AUTOSAVE_SECONDS", "soon")
        with pytest.raises(ConfigurationError):
            self._store(backend, coordinator)
