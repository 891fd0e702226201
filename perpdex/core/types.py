from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Dict, Union

MARKET_ID_LEN = 32

MarketIdLike = Union[bytes, str]


def parse_market_id(value: MarketIdLike) -> bytes:
    """Normalize a market id to its 32-byte form.

    Accepts raw 32 bytes, a 64 char hex string, or a short ascii symbol
    (``"BTC-PERP"``) which is right-padded with zero bytes.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = str(value).strip()
        if text.startswith("0x"):
            text = text[2:]
        if len(text) == MARKET_ID_LEN * 2:
            try:
                raw = bytes.fromhex(text)
            except ValueError:
                raw = text.encode("ascii")
        else:
            raw = text.encode("ascii")
        if len(raw) < MARKET_ID_LEN:
            raw = raw.ljust(MARKET_ID_LEN, b"\x00")
    if len(raw) != MARKET_ID_LEN:
        raise ValueError(f"market_id must be {MARKET_ID_LEN} bytes, got {len(raw)}")
    return raw


def market_label(market_id: bytes) -> str:
    # Symbol ids print as text, everything else as hex
    stripped = market_id.rstrip(b"\x00")
    try:
        text = stripped.decode("ascii")
        if text and text.isprintable():
            return text
    except UnicodeDecodeError:
        pass
    return market_id.hex()


def derive_key(*seeds: bytes) -> str:
    h = hashlib.sha256()
    for seed in seeds:
        h.update(len(seed).to_bytes(2, "little"))
        h.update(seed)
    return h.hexdigest()


def market_key(market_id: bytes) -> str:
    return derive_key(b"market", market_id)


def vault_key(market_addr: str) -> str:
    return derive_key(b"vault", bytes.fromhex(market_addr))


def position_key(trader: str, market_id: bytes, open_time: int) -> str:
    return derive_key(b"position", trader.lower().encode("utf-8"), market_id, int(open_time).to_bytes(8, "little", signed=True))


def same_identity(a: str, b: str) -> bool:
    # Hex addresses compare case-insensitively (checksum casing is cosmetic)
    return a.lower() == b.lower()


@dataclass(frozen=True)
class TokenAccount:
    owner: str
    mint: str


@dataclass
class Market:
    admin: str
    oracle_ref: str
    market_id: bytes
    min_collateral: int
    max_leverage: int
    liquidation_threshold: int
    is_active: bool = True
    last_funding_index: int = 0
    last_funding_time: int = 0

    @property
    def key(self) -> str:
        return market_key(self.market_id)

    @property
    def vault(self) -> str:
        return vault_key(self.key)

    @property
    def label(self) -> str:
        return market_label(self.market_id)

    def to_record(self) -> Dict[str, Any]:
        rec = asdict(self)
        rec["market_id"] = self.market_id.hex()
        return rec

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Market":
        return cls(
            admin=str(rec["admin"]),
            oracle_ref=str(rec["oracle_ref"]),
            market_id=bytes.fromhex(rec["market_id"]),
            min_collateral=int(rec["min_collateral"]),
            max_leverage=int(rec["max_leverage"]),
            liquidation_threshold=int(rec["liquidation_threshold"]),
            is_active=bool(rec.get("is_active", True)),
            last_funding_index=int(rec.get("last_funding_index", 0)),
            last_funding_time=int(rec.get("last_funding_time", 0)),
        )


@dataclass
class Position:
    trader: str
    market_id: bytes
    collateral: int
    size: int
    is_long: bool
    entry_price: int
    leverage: int
    open_time: int
    collateral_mint: str
    # Captured at open, not applied to settlement
    last_funding_index: int = 0

    @property
    def key(self) -> str:
        return position_key(self.trader, self.market_id, self.open_time)

    @property
    def side(self) -> str:
        return "long" if self.is_long else "short"

    def to_record(self) -> Dict[str, Any]:
        rec = asdict(self)
        rec["market_id"] = self.market_id.hex()
        return rec

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Position":
        return cls(
            trader=str(rec["trader"]),
            market_id=bytes.fromhex(rec["market_id"]),
            collateral=int(rec["collateral"]),
            size=int(rec["size"]),
            is_long=bool(rec["is_long"]),
            entry_price=int(rec["entry_price"]),
            leverage=int(rec["leverage"]),
            open_time=int(rec["open_time"]),
            collateral_mint=str(rec["collateral_mint"]),
            last_funding_index=int(rec.get("last_funding_index", 0)),
        )


@dataclass(frozen=True)
class PositionOpened:
    kind: ClassVar[str] = "opened"

    position: str
    trader: str
    market_id: bytes
    is_long: bool
    collateral_amount: int
    position_size: int
    entry_price: int
    leverage: int

    def to_data(self) -> Dict[str, Any]:
        data = asdict(self)
        data["market_id"] = self.market_id.hex()
        return data


@dataclass(frozen=True)
class PositionClosed:
    kind: ClassVar[str] = "closed"

    position: str
    trader: str
    close_price: int
    pnl: int
    fee: int
    amount_returned: int

    def to_data(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PositionLiquidated:
    kind: ClassVar[str] = "liquidated"

    position: str
    trader: str
    liquidator: str
    liquidation_price: int
    fee: int

    def to_data(self) -> Dict[str, Any]:
        return asdict(self)


LifecycleEvent = Union[PositionOpened, PositionClosed, PositionLiquidated]
