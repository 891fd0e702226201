from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class TimeProvider:
    now_fn: Callable[[], float] = time.time

    def now(self) -> float:
        return float(self.now_fn())

    def unix_ts(self) -> int:
        # Ledger timestamps are whole seconds
        return int(self.now())

    def millis(self) -> int:
        return int(self.now() * 1000)


@dataclass
class ManualClock(TimeProvider):
    ts: float = 0.0
    now_fn: Callable[[], float] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.now_fn = lambda: self.ts

    def advance(self, seconds: float) -> None:
        self.ts += seconds
