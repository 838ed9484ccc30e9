"""
Signal: Synchronous Observer Fan-Out

Listeners are called in subscription order on the firing task.
`once` subscriptions disconnect themselves before their first call,
so a listener that fires the signal again is not re-entered.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

Listener = Callable[..., None]

T = TypeVar("T")


class Connection:
    """Handle returned by connect()/once(); disconnect() is idempotent."""

    __slots__ = ("_signal", "_listener", "_once", "connected")

    def __init__(self, signal: Signal[Any], listener: Listener, once: bool) -> None:
        self._signal = signal
        self._listener = listener
        self._once = once
        self.connected = True

    def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self._signal._remove(self)


class Signal(Generic[T]):
    """
    Observer list with exactly-once and durable subscriptions.

    Usage:
        released: Signal[bool] = Signal("session.released")
        released.once(lambda did_save: print(did_save))
        released.fire(True)
    """

    __slots__ = ("_name", "_connections")

    def __init__(self, name: str = "signal") -> None:
        self._name = name
        self._connections: list[Connection] = []

    def connect(self, listener: Listener) -> Connection:
        """Subscribe for every fire until disconnected."""
        connection = Connection(self, listener, once=False)
        self._connections.append(connection)
        return connection

    def once(self, listener: Listener) -> Connection:
        """Subscribe for the next fire only."""
        connection = Connection(self, listener, once=True)
        self._connections.append(connection)
        return connection

    def fire(self, *args: Any) -> None:
        """Call every connected listener with args."""
        for connection in list(self._connections):
            if not connection.connected:
                continue
            if connection._once:
                connection.disconnect()
            try:
                connection._listener(*args)
            except Exception:
                logger.exception("Listener of %s raised", self._name)

    def disconnect_all(self) -> None:
        for connection in list(self._connections):
            connection.disconnect()

    def _remove(self, connection: Connection) -> None:
        try:
            self._connections.remove(connection)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._connections)

    def __repr__(self) -> str:
        return f"Signal({self._name!r}, listeners={self.listener_count})"
