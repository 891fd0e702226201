"""Margin arithmetic for isolated positions.

Pure integer functions of ``(Position, Market, price)``; nothing here reads or
writes state. Every division truncates toward zero, so a loss of 0.5 units
rounds to 0 rather than -1. Python's ``//`` floors, hence :func:`tdiv`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from perpdex.core.types import Market, Position

BPS_DENOMINATOR = 10_000
PERCENT = 100
TRADING_FEE_BPS = 10
LIQUIDATION_REWARD_PCT = 3


def tdiv(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    if b == 0:
        raise ZeroDivisionError("integer division by zero")
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def price_delta(position: Position, current_price: int) -> int:
    # Favourable moves are positive for both directions
    if position.is_long:
        return current_price - position.entry_price
    return position.entry_price - current_price


def trading_fee(size: int, fee_bps: int = TRADING_FEE_BPS) -> int:
    return tdiv(size * fee_bps, BPS_DENOMINATOR)


def compute_pnl_and_fee(position: Position, current_price: int, fee_bps: int = TRADING_FEE_BPS) -> Tuple[int, int]:
    """Unrealized PnL and the flat trading fee at ``current_price``.

    The PnL goes through a basis-point percentage first, so sub-bp moves are
    lost to truncation: ``pct = delta * 10000 / entry`` then
    ``pnl = pct * size / 10000``.
    """
    pnl_bps = tdiv(price_delta(position, current_price) * BPS_DENOMINATOR, position.entry_price)
    pnl = tdiv(pnl_bps * position.size, BPS_DENOMINATOR)
    return pnl, trading_fee(position.size, fee_bps)


def settlement_amount(position: Position, pnl: int, fee: int) -> int:
    """Amount paid back to the trader on close; never negative."""
    if pnl >= 0:
        return max(0, position.collateral + pnl - fee)
    remaining = position.collateral + pnl - fee
    return remaining if remaining > 0 else 0


def equity_percentage(position: Position, pnl: int) -> int:
    return tdiv((position.collateral + pnl) * PERCENT, position.collateral)


def liquidation_eligible(position: Position, market: Market, pnl: int) -> bool:
    return equity_percentage(position, pnl) <= market.liquidation_threshold


def liquidation_reward(
    position: Position,
    reward_pct: int = LIQUIDATION_REWARD_PCT,
    *,
    pnl: Optional[int] = None,
    cap: bool = False,
) -> int:
    """Flat share of the collateral posted at open.

    With ``cap`` set the reward is limited to the equity left in the
    position, ``max(0, collateral + pnl)``; ``pnl`` is required then.
    """
    reward = tdiv(position.collateral * reward_pct, PERCENT)
    if cap:
        if pnl is None:
            raise ValueError("pnl is required to cap the liquidation reward")
        reward = min(reward, max(0, position.collateral + pnl))
    return reward


@dataclass(frozen=True)
class MarginSnapshot:
    price: int
    pnl: int
    fee: int
    equity_pct: int
    settlement: int
    liquidatable: bool
    liquidation_reward: int


def evaluate(
    position: Position,
    market: Market,
    current_price: int,
    *,
    fee_bps: int = TRADING_FEE_BPS,
    reward_pct: int = LIQUIDATION_REWARD_PCT,
    cap_reward: bool = False,
) -> MarginSnapshot:
    pnl, fee = compute_pnl_and_fee(position, current_price, fee_bps)
    return MarginSnapshot(
        price=current_price,
        pnl=pnl,
        fee=fee,
        equity_pct=equity_percentage(position, pnl),
        settlement=settlement_amount(position, pnl, fee),
        liquidatable=liquidation_eligible(position, market, pnl),
        liquidation_reward=liquidation_reward(position, reward_pct, pnl=pnl, cap=cap_reward),
    )
