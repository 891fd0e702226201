from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from perpdex.collateral.token_ledger import TokenLedger
from perpdex.core.clock import TimeProvider
from perpdex.core.config import AppConfig, OracleParams
from perpdex.core.logging import JsonLogger
from perpdex.core.metrics import Metrics
from perpdex.core.persistence import StateStore
from perpdex.engine.ledger import PositionLedger
from perpdex.engine.lifecycle import PositionLifecycleController
from perpdex.engine.registry import MarketRegistry
from perpdex.oracles.base_oracle import PriceOracle, StaticPriceOracle
from perpdex.oracles.hyperliquid_oracle import HyperliquidOracle, build_info
from perpdex.oracles.pyth_oracle import PythHermesOracle
from perpdex.utils.logging_utils import setup_app_logger


@dataclass
class AppContext:
    cfg: AppConfig
    store: StateStore
    registry: MarketRegistry
    ledger: PositionLedger
    tokens: TokenLedger
    oracle: PriceOracle
    controller: PositionLifecycleController
    logger: JsonLogger
    metrics: Metrics
    clock: TimeProvider

    def close(self) -> None:
        self.store.close()


def build_oracle(params: OracleParams, clock: TimeProvider) -> PriceOracle:
    if params.provider == "hyperliquid":
        return HyperliquidOracle(build_info(str(params.base_url)), price_decimals=params.price_decimals)
    if params.provider == "pyth":
        return PythHermesOracle(
            str(params.base_url),
            timeout_s=params.timeout_s,
            max_staleness_s=params.max_staleness_s,
            max_conf_bps=params.max_conf_bps,
            clock=clock,
        )
    return StaticPriceOracle(prices=dict(params.static_prices))


def build_context(
    cfg: AppConfig,
    *,
    oracle: Optional[PriceOracle] = None,
    clock: Optional[TimeProvider] = None,
    state_db: Optional[str] = None,
    file_logging: bool = False,
) -> AppContext:
    clock = clock or TimeProvider()
    logger = JsonLogger(name="perpdex")
    if file_logging:
        meta = setup_app_logger(
            "perpdex",
            log_level=os.environ.get("LOG_LEVEL", cfg.telemetry.log_level),
            log_file=cfg.telemetry.log_file,
            log_max_bytes=cfg.telemetry.log_max_bytes,
            log_backup_count=cfg.telemetry.log_backup_count,
            disable_console_logging=cfg.telemetry.disable_console_logging,
        )
        logger.debug("log_init", **meta)
    metrics = Metrics()
    store = StateStore(state_db or cfg.storage.state_db)
    registry = MarketRegistry(store, clock, max_leverage_cap=cfg.engine.max_leverage_cap)
    ledger = PositionLedger(store)
    tokens = TokenLedger(store)
    oracle = oracle or build_oracle(cfg.oracle, clock)
    controller = PositionLifecycleController(
        store,
        registry,
        ledger,
        oracle,
        tokens,
        clock=clock,
        params=cfg.engine,
        logger=logger.bind(component="lifecycle"),
        metrics=metrics,
    )
    return AppContext(
        cfg=cfg,
        store=store,
        registry=registry,
        ledger=ledger,
        tokens=tokens,
        oracle=oracle,
        controller=controller,
        logger=logger,
        metrics=metrics,
        clock=clock,
    )
