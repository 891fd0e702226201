from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

MetricKey = Tuple[str, Optional[str]]


class _Cell:
    """Integer value guarded by its own lock; ledger amounts never need floats."""

    def __init__(self) -> None:
        self._value = 0
        self._mu = threading.Lock()

    def _apply(self, delta: int) -> None:
        with self._mu:
            self._value += int(delta)

    @property
    def value(self) -> int:
        with self._mu:
            return self._value


class Counter(_Cell):
    def inc(self, n: int = 1) -> None:
        if n < 0:
            raise ValueError("counters only go up")
        self._apply(n)


class Gauge(_Cell):
    def set(self, v: int) -> None:
        with self._mu:
            self._value = int(v)

    def add(self, delta: int) -> None:
        self._apply(delta)


class Metrics:
    """In-process registry of counters and gauges.

    A metric may carry one label (a market symbol, an error code); the
    snapshot flattens it to ``<name>.<label>``.
    """

    def __init__(self) -> None:
        self._counters: Dict[MetricKey, Counter] = {}
        self._gauges: Dict[MetricKey, Gauge] = {}
        self._mu = threading.Lock()

    def counter(self, name: str, label: Optional[str] = None) -> Counter:
        with self._mu:
            return self._counters.setdefault((name, label), Counter())

    def gauge(self, name: str, label: Optional[str] = None) -> Gauge:
        with self._mu:
            return self._gauges.setdefault((name, label), Gauge())

    @staticmethod
    def _flat(key: MetricKey) -> str:
        name, label = key
        return f"{name}.{label}" if label else name

    def snapshot(self) -> Dict[str, int]:
        with self._mu:
            cells = list(self._counters.items()) + list(self._gauges.items())
        return {self._flat(k): cell.value for k, cell in cells}
