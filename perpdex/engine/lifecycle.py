"""Position lifecycle: open, close, liquidate, plus the admin market calls.

Every state-changing call runs under one store transaction and a process
lock, so record writes, token moves and event appends of an operation land
together or not at all. Metrics, logs and subscribers run once the outermost
store transaction commits, so a caller wrapping several operations in its own
transaction sees nothing published if it rolls back.
"""

from __future__ import annotations

from typing import Callable, List, Optional

from perpdex.collateral.token_ledger import CollateralTransferService, VaultAuthority
from perpdex.core.clock import TimeProvider
from perpdex.core.config import EngineParams
from perpdex.core.errors import (
    CannotLiquidateYet,
    InsufficientCollateral,
    InvalidLeverage,
    InvalidMint,
    InvalidOracle,
    InvalidPosition,
    MarketInactive,
    PerpDexError,
    Unauthorized,
)
from perpdex.core.logging import JsonLogger
from perpdex.core.metrics import Metrics
from perpdex.core.persistence import Event, StateStore
from perpdex.core.types import (
    LifecycleEvent,
    Market,
    MarketIdLike,
    Position,
    PositionClosed,
    PositionLiquidated,
    PositionOpened,
    TokenAccount,
    parse_market_id,
    same_identity,
)
from perpdex.engine import margin
from perpdex.engine.ledger import PositionLedger
from perpdex.engine.registry import MarketRegistry
from perpdex.oracles.base_oracle import PriceOracle
from perpdex.risk.slippage import SlippageController

EventCallback = Callable[[LifecycleEvent], None]


class PositionLifecycleController:
    def __init__(
        self,
        store: StateStore,
        registry: MarketRegistry,
        ledger: PositionLedger,
        oracle: PriceOracle,
        tokens: CollateralTransferService,
        *,
        clock: Optional[TimeProvider] = None,
        params: Optional[EngineParams] = None,
        logger: Optional[JsonLogger] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.ledger = ledger
        self.oracle = oracle
        self.tokens = tokens
        self.clock = clock or TimeProvider()
        self.params = params or EngineParams()
        self.logger = logger or JsonLogger(name="perpdex.lifecycle")
        self.metrics = metrics or Metrics()
        # Shares the store lock so nested store transactions cannot invert lock order
        self._lock = store.lock
        self._subscribers: List[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    # ----- helpers -----

    def _rejected(self, op: str, err: PerpDexError, **fields) -> None:
        self.metrics.counter("rejected", err.code).inc()
        self.logger.warn(f"{op}_rejected", code=err.code, reason=str(err), **fields)

    def _fetch_price(self, market: Market, oracle_ref: Optional[str]) -> int:
        if oracle_ref is not None and oracle_ref != market.oracle_ref:
            raise InvalidOracle(expected=market.oracle_ref, got=oracle_ref)
        return self.oracle.get_price(market.oracle_ref)

    @staticmethod
    def _vault_account(market: Market, mint: str) -> TokenAccount:
        return TokenAccount(owner=market.vault, mint=mint)

    def _pay_from_vault(self, market: Market, position: Position, recipient: TokenAccount, amount: int) -> None:
        if recipient.mint != position.collateral_mint:
            raise InvalidMint(expected=position.collateral_mint, got=recipient.mint)
        if amount > 0:
            self.tokens.transfer(
                self._vault_account(market, position.collateral_mint),
                recipient,
                VaultAuthority.for_market(market),
                amount,
            )

    def _track_vault(self, market: Market, mint: str) -> None:
        balance = self.tokens.balance_of(self._vault_account(market, mint))
        self.metrics.gauge("vault_balance", market.label).set(balance)

    def _record(self, event: LifecycleEvent) -> None:
        self.store.append_event(Event(ts=self.clock.now(), kind=event.kind, data=event.to_data()))

    def _notify(self, event: LifecycleEvent) -> None:
        # Fire and forget: a failing subscriber must not undo a committed op
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception as e:
                self.logger.error("event_subscriber_failed", kind=event.kind, error=str(e))

    def _after_commit(self, event: LifecycleEvent, market: Market, mint: str, counter: str, **fields) -> None:
        # Deferred to the outermost commit, dropped if an enclosing transaction rolls back
        def _published() -> None:
            self.metrics.counter(counter).inc()
            self._track_vault(market, mint)
            self.logger.info(f"position_{event.kind}", market=market.label, **fields)
            self._notify(event)

        self.store.after_commit(_published)

    # ----- market administration -----

    def initialize_market(
        self,
        admin: str,
        market_id: MarketIdLike,
        oracle_ref: str,
        min_collateral: int,
        max_leverage: int,
        liquidation_threshold: int,
    ) -> Market:
        with self._lock:
            try:
                market = self.registry.initialize_market(
                    admin, market_id, oracle_ref, min_collateral, max_leverage, liquidation_threshold
                )
            except PerpDexError as e:
                self._rejected("initialize_market", e, admin=admin)
                raise
        self.logger.info(
            "market_initialized",
            market=market.label,
            admin=admin,
            oracle=oracle_ref,
            vault=market.vault,
            min_collateral=market.min_collateral,
            max_leverage=market.max_leverage,
            liquidation_threshold=market.liquidation_threshold,
        )
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
        with self._lock:
            try:
                market = self.registry.update_market(
                    admin,
                    market_id,
                    min_collateral=min_collateral,
                    max_leverage=max_leverage,
                    liquidation_threshold=liquidation_threshold,
                    is_active=is_active,
                )
            except PerpDexError as e:
                self._rejected("update_market", e, admin=admin)
                raise
        self.logger.info(
            "market_updated",
            market=market.label,
            min_collateral=market.min_collateral,
            max_leverage=market.max_leverage,
            liquidation_threshold=market.liquidation_threshold,
            is_active=market.is_active,
        )
        return market

    def update_funding(self, admin: str, market_id: MarketIdLike, new_index: int) -> Market:
        with self._lock:
            try:
                market = self.registry.update_funding(admin, market_id, new_index)
            except PerpDexError as e:
                self._rejected("update_funding", e, admin=admin)
                raise
        self.logger.info("funding_updated", market=market.label, index=market.last_funding_index, ts=market.last_funding_time)
        return market

    # ----- positions -----

    def open_position(
        self,
        trader: str,
        market_id: MarketIdLike,
        is_long: bool,
        collateral_amount: int,
        leverage: int,
        max_slippage_bps: int,
        *,
        collateral_mint: str,
        oracle_ref: Optional[str] = None,
        expected_price: Optional[int] = None,
    ) -> Position:
        """Post collateral and open an isolated position at the oracle price.

        ``max_slippage_bps`` is only enforced when ``expected_price`` is
        given; without it the fill is whatever the oracle returns.
        """
        mid = parse_market_id(market_id)
        with self._lock:
            try:
                with self.store.transaction():
                    market = self.registry.get(mid)
                    if not market.is_active:
                        raise MarketInactive(market=market.label)
                    if not (1 <= leverage <= market.max_leverage):
                        raise InvalidLeverage(leverage=leverage, max_leverage=market.max_leverage)
                    if collateral_amount < market.min_collateral or collateral_amount <= 0:
                        raise InsufficientCollateral(amount=collateral_amount, min_collateral=market.min_collateral)

                    price = self._fetch_price(market, oracle_ref)
                    if expected_price is not None:
                        SlippageController(max_bps=max_slippage_bps).enforce(expected_price, price)

                    self.tokens.transfer(
                        TokenAccount(owner=trader, mint=collateral_mint),
                        self._vault_account(market, collateral_mint),
                        trader,
                        collateral_amount,
                    )

                    position = Position(
                        trader=trader,
                        market_id=mid,
                        collateral=int(collateral_amount),
                        size=int(collateral_amount) * int(leverage),
                        is_long=bool(is_long),
                        entry_price=price,
                        leverage=int(leverage),
                        open_time=self.clock.unix_ts(),
                        collateral_mint=collateral_mint,
                        last_funding_index=0,
                    )
                    key = self.ledger.create(position)
                    event = PositionOpened(
                        position=key,
                        trader=trader,
                        market_id=mid,
                        is_long=position.is_long,
                        collateral_amount=position.collateral,
                        position_size=position.size,
                        entry_price=price,
                        leverage=position.leverage,
                    )
                    self._record(event)
            except PerpDexError as e:
                self._rejected("open_position", e, trader=trader, market=mid.hex())
                raise
        self._after_commit(
            event,
            market,
            position.collateral_mint,
            "positions_opened",
            position=key,
            trader=trader,
            side=position.side,
            collateral=position.collateral,
            size=position.size,
            entry_price=price,
            leverage=position.leverage,
        )
        return position

    def close_position(
        self,
        trader: str,
        position_key: str,
        *,
        oracle_ref: Optional[str] = None,
        receive_mint: Optional[str] = None,
    ) -> PositionClosed:
        """Settle at the oracle price and pay the trader out of the vault."""
        with self._lock:
            try:
                with self.store.transaction():
                    position = self.ledger.get(position_key)
                    if not same_identity(position.trader, trader):
                        raise Unauthorized(caller=trader, position=position_key)
                    if position.size <= 0:
                        raise InvalidPosition(position=position_key)
                    market = self.registry.get(position.market_id)

                    price = self._fetch_price(market, oracle_ref)
                    pnl, fee = margin.compute_pnl_and_fee(position, price, self.params.trading_fee_bps)
                    amount = margin.settlement_amount(position, pnl, fee)

                    recipient = TokenAccount(owner=trader, mint=receive_mint or position.collateral_mint)
                    self._pay_from_vault(market, position, recipient, amount)

                    event = PositionClosed(
                        position=position_key,
                        trader=position.trader,
                        close_price=price,
                        pnl=pnl,
                        fee=fee,
                        amount_returned=amount,
                    )
                    self._record(event)
                    # Storage for the record goes back to the trader
                    self.ledger.destroy(position_key)
            except PerpDexError as e:
                self._rejected("close_position", e, trader=trader, position=position_key)
                raise
        self._after_commit(
            event,
            market,
            position.collateral_mint,
            "positions_closed",
            position=position_key,
            trader=position.trader,
            close_price=price,
            pnl=pnl,
            fee=fee,
            returned=amount,
            storage_released_to=trader,
        )
        return event

    def liquidate_position(
        self,
        liquidator: str,
        trader_ref: str,
        position_key: str,
        *,
        oracle_ref: Optional[str] = None,
        receive_mint: Optional[str] = None,
    ) -> PositionLiquidated:
        """Close an under-margined position on anyone's behalf.

        Eligibility is recomputed from a fresh price; if the market moved back
        above the threshold the call fails with ``CannotLiquidateYet``.
        """
        with self._lock:
            try:
                with self.store.transaction():
                    position = self.ledger.get(position_key)
                    if position.size <= 0:
                        raise InvalidPosition(position=position_key)
                    if not same_identity(position.trader, trader_ref):
                        raise InvalidPosition("trader does not own position", position=position_key, trader=trader_ref)
                    market = self.registry.get(position.market_id)

                    price = self._fetch_price(market, oracle_ref)
                    pnl, _ = margin.compute_pnl_and_fee(position, price, self.params.trading_fee_bps)
                    if not margin.liquidation_eligible(position, market, pnl):
                        raise CannotLiquidateYet(
                            position=position_key,
                            equity_pct=margin.equity_percentage(position, pnl),
                            threshold=market.liquidation_threshold,
                        )
                    reward = margin.liquidation_reward(
                        position,
                        self.params.liquidation_reward_pct,
                        pnl=pnl,
                        cap=self.params.cap_liquidation_reward,
                    )

                    recipient = TokenAccount(owner=liquidator, mint=receive_mint or position.collateral_mint)
                    self._pay_from_vault(market, position, recipient, reward)

                    event = PositionLiquidated(
                        position=position_key,
                        trader=position.trader,
                        liquidator=liquidator,
                        liquidation_price=price,
                        fee=reward,
                    )
                    self._record(event)
                    # Storage for the record goes to the liquidator
                    self.ledger.destroy(position_key)
            except PerpDexError as e:
                self._rejected("liquidate_position", e, liquidator=liquidator, position=position_key)
                raise
        self._after_commit(
            event,
            market,
            position.collateral_mint,
            "positions_liquidated",
            position=position_key,
            trader=position.trader,
            liquidator=liquidator,
            liquidation_price=price,
            pnl=pnl,
            reward=reward,
            storage_released_to=liquidator,
        )
        return event

    def margin_snapshot(self, position_key: str) -> margin.MarginSnapshot:
        """Read-only view of a position at the current oracle price."""
        position = self.ledger.get(position_key)
        market = self.registry.get(position.market_id)
        price = self._fetch_price(market, None)
        return margin.evaluate(
            position,
            market,
            price,
            fee_bps=self.params.trading_fee_bps,
            reward_pct=self.params.liquidation_reward_pct,
            cap_reward=self.params.cap_liquidation_reward,
        )
