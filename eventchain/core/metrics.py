"""eventchain.core.metrics

In-process counters and gauges for the ledger.

Nothing is exported. ``snapshot()`` is the read side; wire it to a real
backend when one is needed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import TypeVar

EVENTS_BUILT = "events.built"
EVENTS_PUBLISHED = "events.published"
EVENTS_PUBLISH_FAILED = "events.publish_failed"
EVENTS_ENCODING_FAILED = "events.encoding_failed"
TIPS_COMMITTED = "tips.committed"
TIPS_CONFLICTS = "tips.conflicts"
EVENTS_IN_FLIGHT = "events.in_flight"

LEDGER_COUNTERS = (
    EVENTS_BUILT,
    EVENTS_PUBLISHED,
    EVENTS_PUBLISH_FAILED,
    EVENTS_ENCODING_FAILED,
    TIPS_COMMITTED,
    TIPS_CONFLICTS,
)
LEDGER_GAUGES = (EVENTS_IN_FLIGHT,)


@dataclass
class _Metric:
    name: str
    _value: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class Counter(_Metric):
    """Only goes up."""

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease (got {amount})")
        with self._lock:
            self._value += amount


class Gauge(_Metric):
    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def add(self, delta: float) -> None:
        with self._lock:
            self._value += float(delta)


M = TypeVar("M", bound=_Metric)


class MetricsRegistry:
    """Name -> metric. A name belongs to one kind for the registry's lifetime.

    The ledger's own metrics are registered up front so a snapshot lists
    them at zero before anything happens.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._metrics: dict[str, _Metric] = {}
        for name in LEDGER_COUNTERS:
            self.counter(name)
        for name in LEDGER_GAUGES:
            self.gauge(name)

    def _get(self, name: str, kind: type[M]) -> M:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = kind(name=name)
            if not isinstance(metric, kind):
                raise TypeError(f"{name} is a {type(metric).__name__.lower()}, not a {kind.__name__.lower()}")
            return metric

    def counter(self, name: str) -> Counter:
        return self._get(name, Counter)

    def gauge(self, name: str) -> Gauge:
        return self._get(name, Gauge)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            metrics = sorted(self._metrics.items())
        return {f"{type(metric).__name__.lower()}.{name}": metric.value for name, metric in metrics}


REGISTRY = MetricsRegistry()
