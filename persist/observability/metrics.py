"""
Metrics: Prometheus-Compatible Counters and Gauges for the Locking Protocol

Series exported per store:
- persist_loads_total{store, outcome}
- persist_load_retries_total{store}
- persist_saves_total{store, outcome}
- persist_releases_total{store, saved}
- persist_sessions_active{store}
"""

from __future__ import annotations

import threading
from typing import ClassVar, Iterator, Optional, Sequence

LabelKey = tuple[tuple[str, str], ...]


class _Series:
    """Values of one metric family, keyed by the declared label names."""

    __slots__ = ("name", "help_text", "label_names", "_samples", "_guard")

    kind: ClassVar[str] = "untyped"

    def __init__(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._samples: dict[LabelKey, float] = {}
        self._guard = threading.Lock()

    def _key(self, labels: dict[str, object]) -> LabelKey:
        # Undeclared labels are ignored, missing ones export as "".
        return tuple(sorted((name, str(labels.get(name, ""))) for name in self.label_names))

    def _add(self, amount: float, labels: dict[str, object]) -> None:
        key = self._key(labels)
        with self._guard:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def get(self, **labels: object) -> float:
        key = self._key(labels)
        with self._guard:
            return self._samples.get(key, 0.0)

    def samples(self) -> Iterator[tuple[LabelKey, float]]:
        with self._guard:
            snapshot = list(self._samples.items())
        yield from snapshot


class Counter(_Series):
    """
    A value that only goes up.

    Usage:
        retries = Counter("persist_load_retries_total", ["store"])
        retries.inc(store="players")
    """

    __slots__ = ()
    kind = "counter"

    def inc(self, value: float = 1.0, **labels: object) -> None:
        if value < 0:
            raise ValueError(f"{self.name}: counters cannot be decremented (got {value})")
        self._add(value, labels)


class Gauge(_Series):
    """A value that is set directly, or moved in either direction."""

    __slots__ = ()
    kind = "gauge"

    def set(self, value: float, **labels: object) -> None:
        key = self._key(labels)
        with self._guard:
            self._samples[key] = float(value)

    def inc(self, value: float = 1.0, **labels: object) -> None:
        self._add(value, labels)

    def dec(self, value: float = 1.0, **labels: object) -> None:
        self._add(-value, labels)


def _render_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{name}="{value}"' for name, value in key) + "}"


class MetricsCollector:
    """
    Process-wide metric registry.

    Families are created on first use, so reset() simply forgets them.

    Usage:
        metrics = MetricsCollector.get_instance()
        metrics.loads.inc(store="players", outcome="locked")
        print(metrics.export_prometheus())
    """

    __slots__ = ("_families", "_guard")

    _instance: ClassVar[Optional[MetricsCollector]] = None

    def __init__(self) -> None:
        self._families: dict[str, _Series] = {}
        self._guard = threading.Lock()

    @classmethod
    def get_instance(cls) -> MetricsCollector:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def _family(self, kind: type[_Series], name: str, label_names: Sequence[str], help_text: str) -> _Series:
        with self._guard:
            family = self._families.get(name)
            if family is None:
                family = self._families[name] = kind(name, label_names, help_text)
            elif not isinstance(family, kind):
                raise TypeError(f"metric {name!r} is already registered as a {family.kind}")
            return family

    def counter(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Counter:
        return self._family(Counter, name, label_names, help_text)  # type: ignore[return-value]

    def gauge(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Gauge:
        return self._family(Gauge, name, label_names, help_text)  # type: ignore[return-value]

    # Protocol series

    @property
    def loads(self) -> Counter:
        return self.counter("persist_loads_total", ("store", "outcome"), "Finished load() calls by outcome")

    @property
    def load_retries(self) -> Counter:
        return self.counter("persist_load_retries_total", ("store",), "Backoff waits spent on a live lock")

    @property
    def saves(self) -> Counter:
        return self.counter("persist_saves_total", ("store", "outcome"), "Session updates by outcome")

    @property
    def releases(self) -> Counter:
        return self.counter("persist_releases_total", ("store", "saved"), "Finished session releases")

    @property
    def sessions_active(self) -> Gauge:
        return self.gauge("persist_sessions_active", ("store",), "Sessions held by a store")

    def export_prometheus(self) -> str:
        """Render every family in the Prometheus text exposition format."""
        with self._guard:
            families = list(self._families.values())

        out: list[str] = []
        for family in families:
            if family.help_text:
                out.append(f"# HELP {family.name} {family.help_text}")
            out.append(f"# TYPE {family.name} {family.kind}")
            out.extend(
                f"{family.name}{_render_labels(key)} {value}" for key, value in family.samples()
            )
        return "\n".join(out)

    def reset(self) -> None:
        with self._guard:
            self._families.clear()
