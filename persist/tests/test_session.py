"""
Unit Tests: Session State Machine

Tests:
    - update(): save, handover on release request, ownership lost
    - release(): saves once, idempotent, foreign lock never overwritten
    - Rejections without remote calls once releasing/released
    - Transport failures and corrupt records
    - Transforms replayed by an optimistic backend commit one outcome
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from persist.core.errors import ErrorCode, StoreError
from persist.core.types import Err
from persist.session import record as R
from persist.session.session import SessionState, UpdateOutcome
from persist.storage.memory import InMemoryBackend, InMemoryKeyValueStore
from persist.tests.conftest import make_store


class GatedStore:
    """Delegates to an in-memory store; update() waits for the gate."""

    def __init__(self, inner: InMemoryKeyValueStore) -> None:
        self.inner = inner
        self.gate = asyncio.Event()
        self.gate.set()

    @property
    def name(self) -> str:
        return self.inner.name

    async def update(self, key, transform):
        await self.gate.wait()
        return await self.inner.update(key, transform)

    async def get(self, key):
        return await self.inner.get(key)

    async def set(self, key, value, user_ids=None, metadata=None):
        return await self.inner.set(key, value, user_ids, metadata)

    async def remove(self, key):
        return await self.inner.remove(key)


class BrokenPlayers(dict):
    """Lookups raise ValueError once broken is set."""

    broken = False

    def __getitem__(self, key):
        if self.broken:
            raise ValueError(f"cannot serialize {key}")
        return super().__getitem__(key)


class RaisingStore(GatedStore):
    """update() raises while raising is set."""

    def __init__(self, inner: InMemoryKeyValueStore) -> None:
        super().__init__(inner)
        self.raising = False

    async def update(self, key, transform):
        if self.raising:
            raise RuntimeError("backend bug")
        return await self.inner.update(key, transform)


class FailingStore(GatedStore):
    """update() fails with a transport error while failing is set."""

    def __init__(self, inner: InMemoryKeyValueStore) -> None:
        super().__init__(inner)
        self.failing = False

    async def update(self, key, transform):
        if self.failing:
            return Err(StoreError.transport(self.name, key, ConnectionError("reset")))
        return await self.inner.update(key, transform)


async def _stored(datastore: Any, key: str) -> Optional[R.Record[Any]]:
    found = (await datastore.get(key)).unwrap()
    return None if found is None else R.Record.from_dict(found[0])


def _track(session) -> list[bool]:
    events: list[bool] = []
    session.released.connect(events.append)
    return events


class TestSessionUpdate:
    """Tests for Session.update()."""

    @pytest.mark.asyncio
    async def test_update_saves_current_data(self, backend, coordinator):
        """update() writes the data function's value and keeps the lock."""
        players = {"p1": {"coins": 0}}
        store = make_store(backend, coordinator, "me", players)
        session = (await store.load("p1")).unwrap()
        version = session.key_info.version

        players["p1"] = {"coins": 25}
        result = await session.update()

        assert result.unwrap() is UpdateOutcome.SAVED
        assert session.is_active
        assert session.saved_this_cycle
        assert session.data == {"coins": 25}
        assert session.key_info.version != version

        stored = await _stored(store.datastore, "p1")
        assert stored.data == {"coins": 25}
        assert stored.lock == "me"

    @pytest.mark.asyncio
    async def test_update_hands_over_on_release_request(self, backend, coordinator):
        """A release request from another server makes update() save and unlock."""
        players = {"p1": {"coins": 0}}
        store = make_store(backend, coordinator, "me", players)
        session = (await store.load("p1")).unwrap()
        events = _track(session)

        await store.datastore.set(
            "p1", R.request_release({"coins": 0}, "me", "other", 0).to_dict()
        )
        players["p1"] = {"coins": 7}
        result = await session.update()

        assert result.unwrap() is UpdateOutcome.SAVED_AND_RELEASED
        assert session.state is SessionState.RELEASED
        assert events == [True]
        assert store.get_session("p1") is None

        stored = await _stored(store.datastore, "p1")
        assert stored.lock is None
        assert stored.release_request is None
        assert stored.data == {"coins": 7}

    @pytest.mark.asyncio
    async def test_update_never_overwrites_foreign_lock(self, backend, coordinator):
        """Another server's lock wins; our data is discarded."""
        players = {"p1": {"coins": 0}}
        store = make_store(backend, coordinator, "me", players)
        session = (await store.load("p1")).unwrap()
        events = _track(session)

        await store.datastore.set("p1", R.locked({"coins": 99}, "other").to_dict())
        players["p1"] = {"coins": 1}
        result = await session.update()

        assert result.unwrap() is UpdateOutcome.OWNERSHIP_LOST
        assert session.is_released
        assert events == [False]

        stored = await _stored(store.datastore, "p1")
        assert stored.lock == "other"
        assert stored.data == {"coins": 99}

    @pytest.mark.asyncio
    async def test_update_after_release_makes_no_remote_call(self, backend, coordinator):
        store = make_store(backend, coordinator, "me", {"p1": {"coins": 0}})
        session = (await store.load("p1")).unwrap()
        await session.release()
        calls = store.datastore.update_count

        result = await session.update()

        assert result.is_err()
        assert result.error.code is ErrorCode.SESSION_RELEASED
        assert store.datastore.update_count == calls

    @pytest.mark.asyncio
    async def test_update_while_releasing_is_rejected(self, coordinator):
        gated = GatedStore(InMemoryKeyValueStore("players"))
        store = make_store(None, coordinator, "me", {"p1": {"coins": 0}}, datastore=gated)
        session = (await store.load("p1")).unwrap()

        gated.gate.clear()
        release = asyncio.ensure_future(session.release())
        await asyncio.sleep(0)
        assert session.is_releasing

        result = await session.update()
        assert result.error.code is ErrorCode.SESSION_RELEASING

        gated.gate.set()
        assert (await release).unwrap() is True
        assert session.is_released

    @pytest.mark.asyncio
    async def test_update_transport_error(self, coordinator):
        failing = FailingStore(InMemoryKeyValueStore("players"))
        store = make_store(None, coordinator, "me", {"p1": {"coins": 0}}, datastore=failing)
        session = (await store.load("p1")).unwrap()

        failing.failing = True
        result = await session.update()

        assert result.error.code is ErrorCode.STORE_TRANSPORT_FAILED
        assert session.is_active

    @pytest.mark.asyncio
    async def test_update_corrupt_record(self, backend, coordinator):
        """An undecodable stored value surfaces as Err, not an exception."""
        store = make_store(backend, coordinator, "me", {"p1": {"coins": 0}})
        session = (await store.load("p1")).unwrap()

        await store.datastore.set("p1", {"d": {"coins": 0}})
        result = await session.update()

        assert result.error.code is ErrorCode.STORE_CORRUPT_RECORD
        assert session.is_active

    @pytest.mark.asyncio
    async def test_update_data_function_value_error(self, backend, coordinator):
        """A ValueError from the data function is not mistaken for a corrupt record."""
        players = BrokenPlayers({"p1": {"coins": 0}})
        store = make_store(backend, coordinator, "me", players)
        session = (await store.load("p1")).unwrap()
        updates = store.datastore.update_count

        players.broken = True
        result = await session.update()

        assert result.error.code is ErrorCode.SESSION_CALLBACK_FAILED
        assert store.datastore.update_count == updates
        assert session.is_active

    @pytest.mark.asyncio
    async def test_replayed_transform_releases_once(self, coordinator):
        """Re-running the transform must not fire released more than once."""
        backend = InMemoryBackend(replay_transforms=3)
        players = {"p1": {"coins": 0}}
        store = make_store(backend, coordinator, "me", players)
        session = (await store.load("p1")).unwrap()
        events = _track(session)

        await store.datastore.set(
            "p1", R.request_release({"coins": 0}, "me", "other", 0).to_dict()
        )
        result = await session.update()

        assert result.unwrap() is UpdateOutcome.SAVED_AND_RELEASED
        assert events == [True]


class TestSessionRelease:
    """Tests for Session.release()."""

    @pytest.mark.asyncio
    async def test_release_saves_and_unlocks(self, backend, coordinator):
        players = {"p1": {"coins": 0}}
        store = make_store(backend, coordinator, "me", players)
        session = (await store.load("p1")).unwrap()
        events = _track(session)

        players["p1"] = {"coins": 3}
        result = await session.release()

        assert result.unwrap() is True
        assert session.is_released
        assert events == [True]

        stored = await _stored(store.datastore, "p1")
        assert stored.lock is None
        assert stored.data == {"coins": 3}

    @pytest.mark.asyncio
    async def test_double_release_is_noop(self, backend, coordinator):
        store = make_store(backend, coordinator, "me", {"p1": {"coins": 0}})
        session = (await store.load("p1")).unwrap()
        events = _track(session)

        first = await session.release()
        calls = store.datastore.update_count
        second = await session.release()

        assert first.unwrap() is True
        assert second.unwrap() is None
        assert events == [True]
        assert store.datastore.update_count == calls

    @pytest.mark.asyncio
    async def test_release_with_foreign_lock(self, backend, coordinator):
        """Releasing after a steal leaves the thief's record alone."""
        store = make_store(backend, coordinator, "me", {"p1": {"coins": 5}})
        session = (await store.load("p1")).unwrap()
        events = _track(session)

        await store.datastore.set("p1", R.locked({"coins": 50}, "other").to_dict())
        result = await session.release()

        assert result.unwrap() is False
        assert events == [False]

        stored = await _stored(store.datastore, "p1")
        assert stored.lock == "other"
        assert stored.data == {"coins": 50}

    @pytest.mark.asyncio
    async def test_release_failure_returns_to_active(self, coordinator):
        failing = FailingStore(InMemoryKeyValueStore("players"))
        store = make_store(None, coordinator, "me", {"p1": {"coins": 0}}, datastore=failing)
        session = (await store.load("p1")).unwrap()
        events = _track(session)

        failing.failing = True
        result = await session.release()
        assert result.error.code is ErrorCode.STORE_TRANSPORT_FAILED
        assert session.is_active
        assert events == []

        failing.failing = False
        assert (await session.release()).unwrap() is True
        assert events == [True]

    @pytest.mark.asyncio
    async def test_release_option_function_error_keeps_session_active(self, backend, coordinator):
        broken = {"on": False}

        def user_ids(key):
            if broken["on"]:
                raise KeyError(key)
            return [7]

        store = make_store(backend, coordinator, "me", {"p1": {"coins": 0}}, user_ids=user_ids)
        session = (await store.load("p1")).unwrap()

        broken["on"] = True
        result = await session.release()

        assert result.error.code is ErrorCode.SESSION_CALLBACK_FAILED
        assert isinstance(result.error.cause, KeyError)
        assert session.is_active

        broken["on"] = False
        assert (await session.release()).unwrap() is True
        assert session.is_released

    @pytest.mark.asyncio
    async def test_release_raising_store_returns_to_active(self, coordinator):
        raising = RaisingStore(InMemoryKeyValueStore("players"))
        store = make_store(None, coordinator, "me", {"p1": {"coins": 0}}, datastore=raising)
        session = (await store.load("p1")).unwrap()

        raising.raising = True
        with pytest.raises(RuntimeError):
            await session.release()
        assert session.is_active

        raising.raising = False
        assert (await session.release()).unwrap() is True
