from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Dict, Optional

from perpdex.core.errors import OracleUnavailable
from perpdex.oracles.base_oracle import PriceOracle, checked_price

if TYPE_CHECKING:  # pragma: no cover
    from hyperliquid.info import Info


def build_info(base_url: str) -> "Info":
    try:
        from hyperliquid.info import Info  # type: ignore
    except ImportError as e:  # pragma: no cover
        raise RuntimeError("Hyperliquid SDK not installed. Install hyperliquid-python-sdk.") from e
    return Info(base_url, skip_ws=True)


class HyperliquidOracle(PriceOracle):
    """Prices from Hyperliquid, keyed by coin name (``"BTC"``).

    ``source="mid"`` reads ``all_mids()``; ``source="mark"`` reads ``markPx``
    from ``meta_and_asset_ctxs()``. Decimal prices are scaled by
    ``10**price_decimals`` and truncated to integers.
    """

    def __init__(self, info: "Info", price_decimals: int = 6, source: str = "mid") -> None:
        if source not in ("mid", "mark"):
            raise ValueError(source)
        self.info = info
        self.price_decimals = price_decimals
        self.source = source

    def _raw_mid(self, oracle_ref: str) -> Optional[Any]:
        mids: Dict[str, Any] = self.info.all_mids() or {}
        return mids.get(oracle_ref)

    def _raw_mark(self, oracle_ref: str) -> Optional[Any]:
        ctx = self.info.meta_and_asset_ctxs()
        # meta_and_asset_ctxs returns [meta, assetCtxs]
        if not isinstance(ctx, list) or len(ctx) < 2:
            return None
        for m, a in zip(ctx[0].get("universe", []), ctx[1]):
            if m.get("name") == oracle_ref and isinstance(a, dict):
                return a.get("markPx")
        return None

    def get_price(self, oracle_ref: str) -> int:
        try:
            raw = self._raw_mid(oracle_ref) if self.source == "mid" else self._raw_mark(oracle_ref)
        except Exception as e:
            raise OracleUnavailable("hyperliquid request failed", oracle=oracle_ref, error=str(e)) from e
        if raw is None:
            raise OracleUnavailable("no price for feed", oracle=oracle_ref)
        try:
            scaled = Decimal(str(raw)).scaleb(self.price_decimals).to_integral_value(rounding=ROUND_DOWN)
        except InvalidOperation as e:
            raise OracleUnavailable("unparsable price", oracle=oracle_ref, raw=raw) from e
        return checked_price(oracle_ref, scaled)
