import json
import logging

import pytest

from perpdex.core.clock import ManualClock, TimeProvider
from perpdex.core.config import load_config
from perpdex.core.errors import InvalidPosition, PerpDexError, PositionNotFound
from perpdex.core.logging import JsonLogger, format_field
from perpdex.core.metrics import Metrics
from perpdex.core.persistence import Event, StateStore
from perpdex.core.types import Market, Position, market_label, parse_market_id, position_key
from perpdex.utils.logging_utils import setup_app_logger


def test_clock_unix_seconds():
    tp = TimeProvider(now_fn=lambda: 1_700_000_000.5)
    assert tp.unix_ts() == 1_700_000_000
    assert tp.millis() == 1_700_000_000_500
    mc = ManualClock(ts=10)
    mc.advance(5)
    assert mc.unix_ts() == 15


def test_config_defaults_match_observed_behaviour(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"oracle": {"static_prices": {"BTC": 100}}}))
    cfg = load_config(str(path))
    assert cfg.oracle.provider == "static"
    assert cfg.oracle.static_prices == {"BTC": 100}
    assert cfg.engine.trading_fee_bps == 10
    assert cfg.engine.liquidation_reward_pct == 3
    assert cfg.engine.cap_liquidation_reward is False
    assert cfg.engine.max_leverage_cap == 100
    assert cfg.storage.state_db == ":memory:"
    assert cfg.collateral.faucet_enabled is False


def test_config_full(tmp_path):
    raw = {
        "oracle": {"provider": "pyth", "base_url": "https://hermes.example", "max_staleness_s": 30, "max_conf_bps": 50},
        "engine": {"cap_liquidation_reward": True, "max_leverage_cap": 50},
        "storage": {"state_db": str(tmp_path / "s.db")},
        "telemetry": {"log_level": "DEBUG", "log_max_bytes": 1024},
    }
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps(raw))
    cfg = load_config(str(path))
    assert cfg.oracle.max_staleness_s == 30
    assert cfg.engine.cap_liquidation_reward is True
    assert cfg.telemetry.log_max_bytes == 1024


def test_config_rejects_remote_oracle_without_url(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"oracle": {"provider": "hyperliquid"}}))
    with pytest.raises(AssertionError):
        load_config(str(path))


def test_metrics_counter_gauge_snapshot():
    m = Metrics()
    m.counter("positions_opened").inc()
    m.counter("positions_opened").inc(2)
    m.counter("rejected", "InvalidLeverage").inc()
    g = m.gauge("vault_balance", "BTC-PERP")
    g.set(100)
    g.add(-30)
    snap = m.snapshot()
    assert snap == {"positions_opened": 3, "rejected.InvalidLeverage": 1, "vault_balance.BTC-PERP": 70}


def test_store_kv_prefix_and_events(tmp_path):
    store = StateStore(str(tmp_path / "state.db"))
    store.put("position:a_1", {"size": 1})
    store.put("position:b", {"size": 2})
    store.put("positionXa", {"size": 3})
    assert store.get("position:b") == {"size": 2}
    assert [k for k, _ in store.iter_prefix("position:")] == ["position:a_1", "position:b"]
    # '_' is literal, not a LIKE wildcard
    assert [k for k, _ in store.iter_prefix("position:a_")] == ["position:a_1"]
    assert store.delete("position:b") is True
    assert store.delete("position:b") is False
    eid = store.append_event(Event(ts=1.0, kind="opened", data={"position": "a", "raw": b"\x01"}))
    store.append_event(Event(ts=2.0, kind="closed", data={"position": "a"}))
    events = list(store.iter_events("opened"))
    assert len(events) == 1 and events[0].id == eid and events[0].data["raw"] == "01"
    assert [e.kind for e in store.iter_events(since_id=eid)] == ["closed"]
    store.close()


def test_store_transaction_rolls_back_everything():
    store = StateStore(":memory:")
    store.put("k", {"v": 1})
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.put("k", {"v": 2})
            with store.transaction():
                store.put("j", {"v": 3})
            store.append_event(Event(ts=1.0, kind="opened", data={}))
            raise RuntimeError("abort")
    assert store.get("k") == {"v": 1}
    assert store.get("j") is None
    assert list(store.iter_events()) == []
    assert store.in_transaction is False
    with store.transaction():
        store.put("k", {"v": 4})
    assert store.get("k") == {"v": 4}
    store.close()


def test_market_id_parsing():
    sym = parse_market_id("BTC-PERP")
    assert len(sym) == 32 and sym.startswith(b"BTC-PERP")
    assert parse_market_id(sym.hex()) == sym
    assert parse_market_id("0x" + sym.hex()) == sym
    assert market_label(sym) == "BTC-PERP"
    assert market_label(b"\xff" * 32) == "ff" * 32
    with pytest.raises(ValueError):
        parse_market_id("X" * 33)


def test_records_round_trip_and_keys_are_deterministic():
    mid = parse_market_id("ETH-PERP")
    m = Market(admin="a", oracle_ref="ETH", market_id=mid, min_collateral=1, max_leverage=2, liquidation_threshold=3)
    assert Market.from_record(m.to_record()) == m
    assert m.vault != m.key
    p = Position("0xAA", mid, 10, 20, True, 5, 2, 99, "USDC")
    assert Position.from_record(p.to_record()) == p
    assert p.key == position_key("0xaa", mid, 99)
    assert p.key != position_key("0xaa", mid, 100)


def test_error_codes_and_hierarchy():
    err = PositionNotFound(position="abc")
    assert isinstance(err, InvalidPosition)
    assert isinstance(err, PerpDexError)
    assert err.code == "PositionNotFound"
    assert str(err) == "PositionNotFound: Position not found position=abc"


def test_json_logger_formats_fields():
    lg = JsonLogger(name="perpdex.test.fmt")
    assert format_field(b"\x0a\x0b") == "0a0b"
    assert format_field({"a": [1, 2]}) == '{"a":[1,2]}'
    child = lg.bind(component="x")
    assert child.context == {"component": "x"}
    assert lg.context == {}


def test_setup_app_logger_writes_rotating_file(tmp_path, monkeypatch):
    for var in ("LOG_LEVEL", "LOG_FILE", "LOG_MAX_BYTES", "LOG_BACKUP_COUNT", "DISABLE_CONSOLE_LOGGING"):
        monkeypatch.delenv(var, raising=False)
    log_file = tmp_path / "logs" / "engine.log"
    meta = setup_app_logger("perpdex.test.file", log_level="debug", log_file=str(log_file), log_max_bytes=2048)
    assert meta["file"] == str(log_file)
    assert meta["level"] == "DEBUG"
    assert meta["max_bytes"] == 2048
    logger = logging.getLogger("perpdex.test.file")
    logger.info("hello")
    for h in list(logger.handlers):
        h.flush()
        h.close()
        logger.removeHandler(h)
    assert "hello" in log_file.read_text(encoding="utf-8")


@pytest.mark.parametrize("cap", [0, 101, 500])
def test_config_leverage_cap_stays_within_protocol_bound(tmp_path, cap):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"engine": {"max_leverage_cap": cap}}))
    with pytest.raises(AssertionError):
        load_config(str(path))
