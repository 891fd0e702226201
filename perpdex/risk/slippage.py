from __future__ import annotations

from dataclasses import dataclass

from perpdex.core.errors import SlippageExceeded


@dataclass
class SlippageController:
    max_bps: int

    def deviation_ok(self, reference_px: int, observed_px: int) -> bool:
        if reference_px <= 0:
            return False
        # Cross-multiplied to stay in integers: |obs - ref| / ref <= bps / 10000
        return abs(observed_px - reference_px) * 10_000 <= self.max_bps * reference_px

    def enforce(self, reference_px: int, observed_px: int) -> int:
        if not self.deviation_ok(reference_px, observed_px):
            raise SlippageExceeded(expected=reference_px, observed=observed_px, max_bps=self.max_bps)
        return observed_px
