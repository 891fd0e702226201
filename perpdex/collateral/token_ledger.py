from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Union

from perpdex.core.errors import InsufficientFunds, InvalidMint, InvalidTokenAccount, Unauthorized
from perpdex.core.persistence import StateStore
from perpdex.core.types import Market, TokenAccount, same_identity

BALANCE_PREFIX = "balance:"


@dataclass(frozen=True)
class VaultAuthority:
    """Capability to move funds out of one market's vault.

    Only the lifecycle controller mints these; a plain identity string can
    never debit a vault.
    """

    market_key: str
    vault: str

    @classmethod
    def for_market(cls, market: Market) -> "VaultAuthority":
        return cls(market_key=market.key, vault=market.vault)


Authority = Union[str, VaultAuthority]


class CollateralTransferService(ABC):
    @abstractmethod
    def balance_of(self, account: TokenAccount) -> int:
        raise NotImplementedError

    @abstractmethod
    def transfer(self, source: TokenAccount, dest: TokenAccount, authority: Authority, amount: int) -> None:
        raise NotImplementedError


class TokenLedger(CollateralTransferService):
    """Fungible balances per ``(owner, mint)`` kept in the state store.

    Sharing the store with the engine means a transfer made inside an
    operation's transaction rolls back with it.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    @staticmethod
    def _record_key(account: TokenAccount) -> str:
        return f"{BALANCE_PREFIX}{account.owner.lower()}:{account.mint}"

    def balance_of(self, account: TokenAccount) -> int:
        rec = self.store.get(self._record_key(account))
        return int(rec["amount"]) if rec else 0

    def _set_balance(self, account: TokenAccount, amount: int) -> None:
        self.store.put(self._record_key(account), {"owner": account.owner, "mint": account.mint, "amount": int(amount)})

    def mint_to(self, account: TokenAccount, amount: int) -> int:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        with self.store.transaction():
            new_balance = self.balance_of(account) + amount
            self._set_balance(account, new_balance)
        return new_balance

    def _check_authority(self, source: TokenAccount, authority: Authority) -> None:
        if isinstance(authority, VaultAuthority):
            if authority.vault != source.owner:
                raise Unauthorized("vault authority does not match source", vault=authority.vault)
            return
        if not same_identity(str(authority), source.owner):
            raise InvalidTokenAccount("source account not owned by signer", owner=source.owner)

    def transfer(self, source: TokenAccount, dest: TokenAccount, authority: Authority, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        if source.mint != dest.mint:
            raise InvalidMint(source_mint=source.mint, dest_mint=dest.mint)
        self._check_authority(source, authority)
        with self.store.transaction():
            available = self.balance_of(source)
            if available < amount:
                raise InsufficientFunds(owner=source.owner, mint=source.mint, available=available, requested=amount)
            self._set_balance(source, available - amount)
            self._set_balance(dest, self.balance_of(dest) + amount)

    def balances(self, owner: str) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for _, rec in self.store.iter_prefix(f"{BALANCE_PREFIX}{owner.lower()}:"):
            out[str(rec["mint"])] = int(rec["amount"])
        return out
