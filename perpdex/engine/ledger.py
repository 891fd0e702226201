from __future__ import annotations

from typing import List, Optional

from perpdex.core.errors import PositionAlreadyExists, PositionNotFound
from perpdex.core.persistence import StateStore
from perpdex.core.types import MarketIdLike, Position, parse_market_id, same_identity

POSITION_PREFIX = "position:"


class PositionLedger:
    """Owns open ``Position`` records. A closed position has no record."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    @staticmethod
    def _record_key(key: str) -> str:
        return POSITION_PREFIX + key

    def create(self, position: Position) -> str:
        key = position.key
        if self.store.exists(self._record_key(key)):
            raise PositionAlreadyExists(position=key)
        self.store.put(self._record_key(key), position.to_record())
        return key

    def find(self, key: str) -> Optional[Position]:
        rec = self.store.get(self._record_key(key))
        return Position.from_record(rec) if rec is not None else None

    def get(self, key: str) -> Position:
        position = self.find(key)
        if position is None:
            raise PositionNotFound(position=key)
        return position

    def destroy(self, key: str) -> None:
        if not self.store.delete(self._record_key(key)):
            raise PositionNotFound(position=key)

    def all(self) -> List[Position]:
        return [Position.from_record(rec) for _, rec in self.store.iter_prefix(POSITION_PREFIX)]

    def by_trader(self, trader: str) -> List[Position]:
        return [p for p in self.all() if same_identity(p.trader, trader)]

    def by_market(self, market_id: MarketIdLike) -> List[Position]:
        mid = parse_market_id(market_id)
        return [p for p in self.all() if p.market_id == mid]
