import pytest

from perpdex.core.types import Market, Position
from perpdex.engine import margin


def _market(threshold: int = 20) -> Market:
    return Market(
        admin="admin",
        oracle_ref="BTC",
        market_id=b"BTC-PERP".ljust(32, b"\x00"),
        min_collateral=100,
        max_leverage=10,
        liquidation_threshold=threshold,
    )


def _position(collateral: int = 1000, leverage: int = 5, entry: int = 100, is_long: bool = True) -> Position:
    return Position(
        trader="alice",
        market_id=b"BTC-PERP".ljust(32, b"\x00"),
        collateral=collateral,
        size=collateral * leverage,
        is_long=is_long,
        entry_price=entry,
        leverage=leverage,
        open_time=1_700_000_000,
        collateral_mint="USDC",
    )


def test_tdiv_truncates_toward_zero():
    assert margin.tdiv(7, 2) == 3
    assert margin.tdiv(-7, 2) == -3
    assert margin.tdiv(7, -2) == -3
    assert margin.tdiv(-7, -2) == 3
    assert margin.tdiv(0, 5) == 0
    with pytest.raises(ZeroDivisionError):
        margin.tdiv(1, 0)


def test_long_profit_close_settlement():
    pos = _position()
    pnl, fee = margin.compute_pnl_and_fee(pos, 110)
    assert (pnl, fee) == (500, 5)
    assert margin.settlement_amount(pos, pnl, fee) == 1495


def test_long_drawdown_not_liquidatable_at_25_pct_equity():
    pos = _position()
    pnl, _ = margin.compute_pnl_and_fee(pos, 85)
    assert pnl == -750
    assert margin.equity_percentage(pos, pnl) == 25
    assert margin.liquidation_eligible(pos, _market(20), pnl) is False


def test_long_deep_loss_liquidatable_with_flat_reward():
    pos = _position()
    pnl, _ = margin.compute_pnl_and_fee(pos, 75)
    assert pnl == -1250
    assert margin.equity_percentage(pos, pnl) == -25
    assert margin.liquidation_eligible(pos, _market(20), pnl) is True
    assert margin.liquidation_reward(pos) == 30


def test_equity_exactly_at_threshold_is_liquidatable():
    pos = _position()
    pnl, _ = margin.compute_pnl_and_fee(pos, 84)
    assert pnl == -800
    assert margin.equity_percentage(pos, pnl) == 20
    assert margin.liquidation_eligible(pos, _market(20), pnl) is True


def test_short_direction_is_mirrored():
    pos = _position(is_long=False)
    pnl_up, _ = margin.compute_pnl_and_fee(pos, 110)
    pnl_down, _ = margin.compute_pnl_and_fee(pos, 90)
    assert pnl_up == -500
    assert pnl_down == 500


def test_same_price_round_trip_still_charges_fee():
    pos = _position()
    pnl, fee = margin.compute_pnl_and_fee(pos, 100)
    assert pnl == 0
    assert margin.settlement_amount(pos, pnl, fee) == pos.collateral - fee == 995


def test_settlement_never_negative():
    pos = _position()
    pnl, fee = margin.compute_pnl_and_fee(pos, 75)
    assert pos.collateral + pnl - fee < 0
    assert margin.settlement_amount(pos, pnl, fee) == 0


def test_negative_pnl_rounds_toward_zero_not_down():
    # -1/3 of a unit move: floor division would give -3334 bps and -1667 pnl
    pos = _position(collateral=1000, leverage=5, entry=3)
    pnl, _ = margin.compute_pnl_and_fee(pos, 2)
    assert pnl == -1666


def test_sub_basis_point_move_is_truncated_away():
    pos = _position(entry=1_000_000)
    pnl, _ = margin.compute_pnl_and_fee(pos, 1_000_050)
    assert pnl == 0


def test_fee_is_ten_bps_of_size_truncated():
    assert margin.trading_fee(5000) == 5
    assert margin.trading_fee(999) == 0
    assert margin.trading_fee(12_345, fee_bps=25) == 30


def test_reward_independent_of_depth_below_threshold():
    pos = _position()
    for price in (80, 75, 60, 1):
        pnl, _ = margin.compute_pnl_and_fee(pos, price)
        assert margin.liquidation_reward(pos, pnl=pnl) == 30


def test_capped_reward_limited_to_remaining_equity():
    pos = _position(entry=1000)
    pnl, _ = margin.compute_pnl_and_fee(pos, 802)
    assert pnl == -990
    assert margin.liquidation_reward(pos, pnl=pnl, cap=True) == 10
    pnl, _ = margin.compute_pnl_and_fee(pos, 750)
    assert margin.liquidation_reward(pos, pnl=pnl, cap=True) == 0
    with pytest.raises(ValueError):
        margin.liquidation_reward(pos, cap=True)


def test_evaluate_snapshot():
    snap = margin.evaluate(_position(), _market(20), 75)
    assert snap.pnl == -1250
    assert snap.fee == 5
    assert snap.equity_pct == -25
    assert snap.settlement == 0
    assert snap.liquidatable is True
    assert snap.liquidation_reward == 30
