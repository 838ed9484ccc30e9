"""
Shutdown Coordinator: Release Every Session Before the Process Exits

Shared by all stores that participate in shutdown. On shutdown:
    1. Stop accepting new loads
    2. Wait for in-flight loads to settle (a load that succeeds registers
       its session, so it is released in step 3)
    3. Release every live session of every registered store
    4. Wait for all releases to settle

Usage:
    coordinator = ShutdownCoordinator.default()
    coordinator.install_signal_handlers()
    ...
    await coordinator.wait_closed()   # returns once SIGINT/SIGTERM has been handled
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any, Awaitable, Optional, Sequence, TypeVar

from persist.observability.logging import StructuredLogger

if TYPE_CHECKING:
    from persist.store.store import Store

T = TypeVar("T")

logger = StructuredLogger("persist.shutdown")


class ShutdownCoordinator:
    """
    Process-wide shutdown state and the set of pending loads.

    Stores register on construction when release_sessions_on_close is set.
    """

    __slots__ = ("_stores", "_pending_loads", "_closing", "_shutdown_task", "_signal_task", "_closed")

    _default: Optional[ShutdownCoordinator] = None

    def __init__(self) -> None:
        self._stores: list[Store[Any, Any]] = []
        self._pending_loads: set[asyncio.Future[Any]] = set()
        self._closing = False
        self._shutdown_task: Optional[asyncio.Task[None]] = None
        self._signal_task: Optional[asyncio.Future[None]] = None
        self._closed = asyncio.Event()

    @classmethod
    def default(cls) -> ShutdownCoordinator:
        """Get the process-wide instance."""
        if cls._default is None:
            cls._default = cls()
        return cls._default

    # -------------------------------------------------------------------------
    # REGISTRATION
    # -------------------------------------------------------------------------

    def register(self, store: Store[Any, Any]) -> None:
        if store not in self._stores:
            self._stores.append(store)

    def unregister(self, store: Store[Any, Any]) -> None:
        if store in self._stores:
            self._stores.remove(store)

    @property
    def stores(self) -> tuple[Store[Any, Any], ...]:
        return tuple(self._stores)

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def is_closed(self) -> bool:
        """True once a shutdown has finished releasing every session."""
        return self._closed.is_set()

    @property
    def pending_loads(self) -> int:
        return len(self._pending_loads)

    async def track_load(self, load: Awaitable[T]) -> T:
        """Run a load so shutdown can wait for it to settle."""
        future = asyncio.ensure_future(load)
        self._pending_loads.add(future)
        future.add_done_callback(self._pending_loads.discard)
        return await future

    # -------------------------------------------------------------------------
    # SHUTDOWN
    # -------------------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Reject new loads from now on."""
        if not self._closing:
            logger.info("Server closing! Saving and releasing all sessions.")
        self._closing = True

    async def await_drain(self) -> None:
        """Wait for pending loads, then release every session and wait for that."""
        logger.debug("Waiting for currently running loads.")
        if self._pending_loads:
            await asyncio.gather(*list(self._pending_loads), return_exceptions=True)

        releases = []
        for store in list(self._stores):
            await store.stop_autosave()
            for session in list(store.sessions.values()):
                releases.append(session.release())

        logger.debug(f"Releasing {len(releases)} sessions.")
        results = await asyncio.gather(*releases, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.warning(f"Session release raised during shutdown: {result!r}")
            elif result.is_err():
                logger.warning(f"Session release failed during shutdown: {result.error}")

        logger.info("Sessions saved and released.")

    async def shutdown(self) -> None:
        """begin_shutdown() then await_drain(); concurrent calls share one drain."""
        self.begin_shutdown()
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.await_drain())
            self._shutdown_task.add_done_callback(lambda _: self._closed.set())
        await asyncio.shield(self._shutdown_task)

    async def wait_closed(self) -> None:
        """Wait until a shutdown, however it was started, has finished."""
        await self._closed.wait()

    def install_signal_handlers(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        """
        Run shutdown() when one of the signals arrives (Unix event loops only).

        The handlers replace the default termination, so the application
        must await wait_closed() and then exit.
        """
        loop = loop or asyncio.get_running_loop()

        def on_signal() -> None:
            if self._signal_task is None:
                self._signal_task = loop.create_task(self.shutdown())

        for sig in signals:
            loop.add_signal_handler(sig, on_signal)

    def reset(self) -> None:
        """Forget all stores and reopen for loads."""
        self._stores.clear()
        self._pending_loads.clear()
        self._closing = False
        self._shutdown_task = None
        self._signal_task = None
        self._closed = asyncio.Event()
