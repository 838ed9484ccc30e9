"""
Autosave Scheduler: Periodic Saves Spread Across the Interval

Every `interval` seconds a cycle snapshots the store's sessions and saves
them one by one, starting a save every interval / (n + 1) seconds so the
remote store never sees a burst. A session saved by an explicit update()
since the previous cycle is skipped once.

Cycles are started on a fixed period; a slow cycle does not delay the next.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Optional

from persist.observability.logging import StructuredLogger
from persist.reliability.backoff import Sleep

if TYPE_CHECKING:
    from persist.session.session import Session
    from persist.store.store import Store

logger = StructuredLogger("persist.autosave")


class AutosaveScheduler:
    """
    Background autosave for one store.

    Usage:
        scheduler = AutosaveScheduler(store, 30.0)
        scheduler.start()       # inside a running loop
        ...
        await scheduler.stop()
    """

    __slots__ = ("_store", "_interval", "_sleep", "_task", "_cycles")

    def __init__(
        self,
        store: Store[Any, Any],
        interval_s: float,
        sleep: Optional[Sleep] = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"Autosave interval must be > 0, got {interval_s}")
        self._store = store
        self._interval = interval_s
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._cycles: set[asyncio.Task[None]] = set()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic loop; no-op if already running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Cancel the loop and any cycle in progress."""
        tasks = [t for t in (self._task, *self._cycles) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._cycles.clear()

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            cycle = asyncio.ensure_future(self.run_cycle())
            self._cycles.add(cycle)
            cycle.add_done_callback(self._cycles.discard)

    async def run_cycle(self) -> None:
        """Save every registered session once, spaced evenly."""
        store = self._store
        sessions = list(store.sessions.values())
        spacing = self._interval / (len(sessions) + 1)
        log = logger.with_extra(store=store.name)

        log.info(
            f"[AUTOSAVE] Saving {len(sessions)} sessions within {self._interval} seconds"
        )

        saves: list[asyncio.Future[None]] = []
        for session in sessions:
            if not session.is_active:
                continue
            if session.saved_this_cycle:
                session.saved_this_cycle = False
                log.with_extra(key=session.key_str).info("[AUTOSAVE] Skipped")
            else:
                saves.append(asyncio.ensure_future(self._save(session)))

            await self._sleep(spacing)

        if saves:
            await asyncio.gather(*saves)

    async def _save(self, session: Session[Any, Any]) -> None:
        log = logger.with_extra(store=self._store.name, key=session.key_str)
        try:
            result = await session.update()
            if result.is_err():
                log.warning(f"[AUTOSAVE] Autosave Failed: {result.error}")
        except Exception as e:
            log.warning(f"[AUTOSAVE] Autosave Failed: {e!r}")
        finally:
            session.saved_this_cycle = False
