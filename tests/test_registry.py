import pytest

from perpdex.core.clock import ManualClock
from perpdex.core.errors import (
    InvalidLeverage,
    InvalidLiquidationThreshold,
    InvalidMinCollateral,
    MarketAlreadyExists,
    MarketNotFound,
    Unauthorized,
)
from perpdex.core.persistence import StateStore
from perpdex.core.types import parse_market_id
from perpdex.engine.registry import MarketRegistry


@pytest.fixture()
def registry():
    store = StateStore(":memory:")
    reg = MarketRegistry(store, ManualClock(ts=1_700_000_000))
    reg.initialize_market("admin", "BTC-PERP", "BTC", 100, 10, 20)
    yield reg
    store.close()


def test_initialize_sets_fields_and_activates(registry):
    m = registry.get("BTC-PERP")
    assert m.admin == "admin"
    assert m.oracle_ref == "BTC"
    assert m.market_id == parse_market_id("BTC-PERP")
    assert (m.min_collateral, m.max_leverage, m.liquidation_threshold) == (100, 10, 20)
    assert m.is_active is True
    assert (m.last_funding_index, m.last_funding_time) == (0, 0)


def test_initialize_twice_fails(registry):
    with pytest.raises(MarketAlreadyExists):
        registry.initialize_market("someone", "BTC-PERP", "BTC", 1, 2, 30)
    assert registry.get("BTC-PERP").admin == "admin"


@pytest.mark.parametrize(
    "args, err",
    [
        ((100, 0, 20), InvalidLeverage),
        ((100, 101, 20), InvalidLeverage),
        ((100, 10, 0), InvalidLiquidationThreshold),
        ((100, 10, 100), InvalidLiquidationThreshold),
        ((-1, 10, 20), InvalidMinCollateral),
    ],
)
def test_initialize_validates_bounds(registry, args, err):
    with pytest.raises(err):
        registry.initialize_market("admin", "ETH-PERP", "ETH", *args)
    assert registry.find("ETH-PERP") is None


def test_missing_market(registry):
    with pytest.raises(MarketNotFound):
        registry.get("SOL-PERP")


def test_partial_update_only_touches_given_fields(registry):
    m = registry.update_market("admin", "BTC-PERP", max_leverage=50)
    assert m.max_leverage == 50
    assert m.liquidation_threshold == 20
    assert m.min_collateral == 100
    m = registry.update_market("admin", "BTC-PERP", is_active=False, min_collateral=0)
    assert m.is_active is False
    assert m.min_collateral == 0
    assert registry.get("BTC-PERP").is_active is False


def test_update_rejects_zero_leverage_and_full_threshold(registry):
    with pytest.raises(InvalidLeverage):
        registry.update_market("admin", "BTC-PERP", max_leverage=0)
    with pytest.raises(InvalidLeverage):
        registry.update_market("admin", "BTC-PERP", max_leverage=101)
    with pytest.raises(InvalidLiquidationThreshold):
        registry.update_market("admin", "BTC-PERP", liquidation_threshold=100)
    with pytest.raises(InvalidLiquidationThreshold):
        registry.update_market("admin", "BTC-PERP", liquidation_threshold=0)


def test_rejected_update_applies_nothing(registry):
    with pytest.raises(InvalidLiquidationThreshold):
        registry.update_market("admin", "BTC-PERP", min_collateral=5, liquidation_threshold=150)
    assert registry.get("BTC-PERP").min_collateral == 100


def test_update_requires_admin(registry):
    with pytest.raises(Unauthorized):
        registry.update_market("mallory", "BTC-PERP", max_leverage=2)
    with pytest.raises(Unauthorized):
        registry.update_funding("mallory", "BTC-PERP", 7)


def test_update_funding_stamps_time(registry):
    registry.clock.advance(30)
    m = registry.update_funding("admin", "BTC-PERP", 42)
    assert m.last_funding_index == 42
    assert m.last_funding_time == 1_700_000_030


def test_admin_comparison_ignores_hex_case():
    store = StateStore(":memory:")
    reg = MarketRegistry(store)
    addr = "0xAbCdEf0000000000000000000000000000000001"
    reg.initialize_market(addr, "ETH-PERP", "ETH", 0, 5, 10)
    assert reg.update_market(addr.lower(), "ETH-PERP", max_leverage=3).max_leverage == 3
    store.close()


def test_lower_leverage_cap():
    store = StateStore(":memory:")
    reg = MarketRegistry(store, max_leverage_cap=20)
    with pytest.raises(InvalidLeverage):
        reg.initialize_market("admin", "ETH-PERP", "ETH", 0, 25, 10)
    assert len(reg.all()) == 0
    store.close()
