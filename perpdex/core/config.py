from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class OracleParams:
    # "static" | "hyperliquid" | "pyth"
    provider: str = "static"
    base_url: Optional[str] = None
    # Hyperliquid mids are decimal strings; scale them to integer price units
    price_decimals: int = 6
    # Optional Pyth checks; None leaves the price unchecked
    max_staleness_s: Optional[int] = None
    max_conf_bps: Optional[int] = None
    timeout_s: float = 5.0
    static_prices: Dict[str, int] = field(default_factory=dict)


@dataclass
class EngineParams:
    trading_fee_bps: int = 10
    liquidation_reward_pct: int = 3
    # False pays the flat reward even when equity is below it
    cap_liquidation_reward: bool = False
    max_leverage_cap: int = 100


@dataclass
class CollateralParams:
    # Lets the CLI credit balances directly; only for local/dry-run ledgers
    faucet_enabled: bool = False


@dataclass
class StorageParams:
    state_db: str = ":memory:"


@dataclass
class TelemetryParams:
    log_level: str = "INFO"
    metrics: bool = True
    log_file: str | None = None
    log_max_bytes: int | None = None
    log_backup_count: int | None = None
    disable_console_logging: bool | None = None


@dataclass
class AppConfig:
    oracle: OracleParams
    engine: EngineParams
    collateral: CollateralParams
    storage: StorageParams
    telemetry: TelemetryParams


def _opt_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return config_from_dict(raw)


def config_from_dict(raw: Dict[str, Any]) -> AppConfig:
    orc = raw.get("oracle", {})
    eng = raw.get("engine", {})
    col = raw.get("collateral", {})
    sto = raw.get("storage", {})
    tel = raw.get("telemetry", {"log_level": "INFO", "metrics": True})

    app = AppConfig(
        oracle=OracleParams(
            provider=str(orc.get("provider", "static")).lower(),
            base_url=str(orc["base_url"]) if orc.get("base_url") else None,
            price_decimals=int(orc.get("price_decimals", 6)),
            max_staleness_s=_opt_int(orc.get("max_staleness_s")),
            max_conf_bps=_opt_int(orc.get("max_conf_bps")),
            timeout_s=float(orc.get("timeout_s", 5.0)),
            static_prices={str(k): int(v) for k, v in (orc.get("static_prices") or {}).items()},
        ),
        engine=EngineParams(
            trading_fee_bps=int(eng.get("trading_fee_bps", 10)),
            liquidation_reward_pct=int(eng.get("liquidation_reward_pct", 3)),
            cap_liquidation_reward=bool(eng.get("cap_liquidation_reward", False)),
            max_leverage_cap=int(eng.get("max_leverage_cap", 100)),
        ),
        collateral=CollateralParams(
            faucet_enabled=bool(col.get("faucet_enabled", False)),
        ),
        storage=StorageParams(
            state_db=str(sto.get("state_db", ":memory:")),
        ),
        telemetry=TelemetryParams(
            log_level=str(tel.get("log_level", "INFO")),
            metrics=bool(tel.get("metrics", True)),
            log_file=str(tel.get("log_file")) if tel.get("log_file") is not None else None,
            log_max_bytes=_opt_int(tel.get("log_max_bytes")),
            log_backup_count=_opt_int(tel.get("log_backup_count")),
            disable_console_logging=bool(tel.get("disable_console_logging")) if tel.get("disable_console_logging") is not None else None,
        ),
    )
    _validate(app)
    return app


def _validate(cfg: AppConfig) -> None:
    assert cfg.oracle.provider in ("static", "hyperliquid", "pyth"), "oracle.provider must be static, hyperliquid or pyth"
    if cfg.oracle.provider != "static":
        assert cfg.oracle.base_url and cfg.oracle.base_url.startswith("http"), "oracle.base_url must be http(s)"
    assert cfg.oracle.price_decimals >= 0
    assert all(p > 0 for p in cfg.oracle.static_prices.values()), "static prices must be positive"
    assert 0 <= cfg.engine.trading_fee_bps < 10000, "trading_fee_bps must be within [0, 10000)"
    assert 0 <= cfg.engine.liquidation_reward_pct < 100, "liquidation_reward_pct must be within [0, 100)"
    assert 1 <= cfg.engine.max_leverage_cap <= 100, "max_leverage_cap must be within [1, 100]"
    assert cfg.oracle.timeout_s > 0
