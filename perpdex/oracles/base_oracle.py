from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

from perpdex.core.errors import OracleUnavailable


def checked_price(oracle_ref: str, raw: Any) -> int:
    """Coerce an adapter's raw value to a positive integer price."""
    if isinstance(raw, bool):
        raise OracleUnavailable("price is not numeric", oracle=oracle_ref)
    try:
        price = int(raw)
    except (TypeError, ValueError, OverflowError) as e:
        raise OracleUnavailable("price is not numeric", oracle=oracle_ref) from e
    if price <= 0:
        raise OracleUnavailable("price must be positive", oracle=oracle_ref, price=price)
    return price


class PriceOracle(ABC):
    """Price source lookup. Implementations must not touch engine state."""

    @abstractmethod
    def get_price(self, oracle_ref: str) -> int:
        raise NotImplementedError


@dataclass
class StaticPriceOracle(PriceOracle):
    """In-process price table, for dry runs and tests."""

    prices: Dict[str, int] = field(default_factory=dict)

    def set_price(self, oracle_ref: str, price: int) -> None:
        self.prices[oracle_ref] = checked_price(oracle_ref, price)

    def get_price(self, oracle_ref: str) -> int:
        if oracle_ref not in self.prices:
            raise OracleUnavailable("no price for feed", oracle=oracle_ref)
        return checked_price(oracle_ref, self.prices[oracle_ref])
