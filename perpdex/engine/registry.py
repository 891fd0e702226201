from __future__ import annotations

from typing import List, Optional

from perpdex.core.clock import TimeProvider
from perpdex.core.errors import (
    InvalidLeverage,
    InvalidLiquidationThreshold,
    InvalidMinCollateral,
    MarketAlreadyExists,
    MarketNotFound,
    Unauthorized,
)
from perpdex.core.persistence import StateStore
from perpdex.core.types import Market, MarketIdLike, market_key, parse_market_id, same_identity

MARKET_PREFIX = "market:"
DEFAULT_MAX_LEVERAGE_CAP = 100


class MarketRegistry:
    """Owns ``Market`` records, keyed by the key derived from ``market_id``."""

    def __init__(self, store: StateStore, clock: Optional[TimeProvider] = None, max_leverage_cap: int = DEFAULT_MAX_LEVERAGE_CAP) -> None:
        self.store = store
        self.clock = clock or TimeProvider()
        self.max_leverage_cap = max_leverage_cap

    def _record_key(self, market_id: bytes) -> str:
        return MARKET_PREFIX + market_key(market_id)

    def find(self, market_id: MarketIdLike) -> Optional[Market]:
        rec = self.store.get(self._record_key(parse_market_id(market_id)))
        return Market.from_record(rec) if rec is not None else None

    def get(self, market_id: MarketIdLike) -> Market:
        market = self.find(market_id)
        if market is None:
            raise MarketNotFound(market_id=parse_market_id(market_id).hex())
        return market

    def all(self) -> List[Market]:
        return [Market.from_record(rec) for _, rec in self.store.iter_prefix(MARKET_PREFIX)]

    def _save(self, market: Market) -> None:
        self.store.put(self._record_key(market.market_id), market.to_record())

    def _check_leverage(self, max_leverage: int) -> None:
        if not (1 <= max_leverage <= self.max_leverage_cap):
            raise InvalidLeverage(max_leverage=max_leverage, cap=self.max_leverage_cap)

    @staticmethod
    def _check_threshold(liquidation_threshold: int) -> None:
        if not (0 < liquidation_threshold < 100):
            raise InvalidLiquidationThreshold(liquidation_threshold=liquidation_threshold)

    @staticmethod
    def _check_min_collateral(min_collateral: int) -> None:
        if min_collateral < 0:
            raise InvalidMinCollateral(min_collateral=min_collateral)

    @staticmethod
    def _check_admin(market: Market, caller: str) -> None:
        if not same_identity(market.admin, caller):
            raise Unauthorized(caller=caller)

    def initialize_market(
        self,
        admin: str,
        market_id: MarketIdLike,
        oracle_ref: str,
        min_collateral: int,
        max_leverage: int,
        liquidation_threshold: int,
    ) -> Market:
        mid = parse_market_id(market_id)
        self._check_min_collateral(min_collateral)
        self._check_leverage(max_leverage)
        self._check_threshold(liquidation_threshold)
        with self.store.transaction():
            if self.store.exists(self._record_key(mid)):
                raise MarketAlreadyExists(market_id=mid.hex())
            market = Market(
                admin=admin,
                oracle_ref=oracle_ref,
                market_id=mid,
                min_collateral=int(min_collateral),
                max_leverage=int(max_leverage),
                liquidation_threshold=int(liquidation_threshold),
                is_active=True,
            )
            self._save(market)
        return market

    def update_market(
        self,
        admin: str,
        market_id: MarketIdLike,
        *,
        min_collateral: Optional[int] = None,
        max_leverage: Optional[int] = None,
        liquidation_threshold: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> Market:
        """Partial update: only the fields passed are validated and applied."""
        with self.store.transaction():
            market = self.get(market_id)
            self._check_admin(market, admin)
            if min_collateral is not None:
                self._check_min_collateral(min_collateral)
                market.min_collateral = int(min_collateral)
            if max_leverage is not None:
                self._check_leverage(max_leverage)
                market.max_leverage = int(max_leverage)
            if liquidation_threshold is not None:
                self._check_threshold(liquidation_threshold)
                market.liquidation_threshold = int(liquidation_threshold)
            if is_active is not None:
                market.is_active = bool(is_active)
            self._save(market)
        return market

    def update_funding(self, admin: str, market_id: MarketIdLike, new_index: int) -> Market:
        with self.store.transaction():
            market = self.get(market_id)
            self._check_admin(market, admin)
            market.last_funding_index = int(new_index)
            market.last_funding_time = self.clock.unix_ts()
            self._save(market)
        return market
