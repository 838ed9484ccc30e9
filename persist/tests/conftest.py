"""
Shared fixtures: fake sleep, fresh coordinator and backend per test.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import pytest

from persist.core.config import StoreOptions
from persist.observability.metrics import MetricsCollector
from persist.storage.memory import InMemoryBackend
from persist.store.shutdown import ShutdownCoordinator
from persist.store.store import Store


class FakeSleep:
    """
    Records requested delays instead of sleeping.

    on_sleep(n) is awaited after the n-th call (1-based), letting a test
    change the world while the caller "waits".
    """

    def __init__(
        self,
        on_sleep: Optional[Callable[[int], Awaitable[None]]] = None,
    ) -> None:
        self.delays: list[float] = []
        self._on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._on_sleep is not None:
            await self._on_sleep(len(self.delays))
        await asyncio.sleep(0)


def make_store(
    backend: Any,
    coordinator: ShutdownCoordinator,
    lock_id: str,
    players: Optional[dict[str, Any]] = None,
    sleep: Optional[FakeSleep] = None,
    name: str = "players",
    **options: Any,
) -> Store[Any, Any]:
    """Store whose data function reads from the players dict."""
    players = players if players is not None else {}
    options.setdefault("autosave_seconds", 0)
    if "datastore" not in options:
        options["backend"] = backend
    return Store(
        name,
        StoreOptions(
            lock_id=lock_id,
            data=lambda key: players[key],
            default=lambda key: {"coins": 0},
            **options,
        ),
        coordinator=coordinator,
        sleep=sleep or FakeSleep(),
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    MetricsCollector.get_instance().reset()
    yield
    MetricsCollector.get_instance().reset()


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    root = logging.getLogger("persist")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
    root.propagate = True


@pytest.fixture
def coordinator() -> ShutdownCoordinator:
    return ShutdownCoordinator()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()
