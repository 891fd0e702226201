from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from perpdex.auth.signing import SignedRequest, verify_request
from perpdex.collateral.token_ledger import TokenLedger
from perpdex.core.errors import StaleNonce, UnknownAction, Unauthorized
from perpdex.core.logging import JsonLogger
from perpdex.core.persistence import StateStore
from perpdex.core.types import TokenAccount
from perpdex.engine.lifecycle import PositionLifecycleController

NONCE_PREFIX = "nonce:"

Handler = Callable[[str, Dict[str, Any]], Dict[str, Any]]


def _opt_int(params: Dict[str, Any], name: str) -> Optional[int]:
    value = params.get(name)
    return int(value) if value is not None else None


def _opt_bool(params: Dict[str, Any], name: str) -> Optional[bool]:
    value = params.get(name)
    return bool(value) if value is not None else None


class RequestDispatcher:
    """Authenticates signed requests and routes them to the engine.

    The recovered signer becomes the acting identity (trader, admin or
    liquidator). Nonces must strictly increase per signer; the nonce is
    consumed in the same transaction as the operation it authorizes.
    """

    def __init__(
        self,
        controller: PositionLifecycleController,
        store: StateStore,
        tokens: Optional[TokenLedger] = None,
        *,
        faucet_enabled: bool = False,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        self.controller = controller
        self.store = store
        self.tokens = tokens
        self.faucet_enabled = faucet_enabled
        self.logger = logger or JsonLogger(name="perpdex.dispatcher")
        self._routes: Dict[str, Handler] = {
            "initialize_market": self._initialize_market,
            "update_market": self._update_market,
            "update_funding": self._update_funding,
            "open_position": self._open_position,
            "close_position": self._close_position,
            "liquidate_position": self._liquidate_position,
            "deposit": self._deposit,
        }

    def _consume_nonce(self, signer: str, nonce: int) -> None:
        key = NONCE_PREFIX + signer.lower()
        rec = self.store.get(key)
        last = int(rec["nonce"]) if rec else -1
        if nonce <= last:
            raise StaleNonce(signer=signer, nonce=nonce, last=last)
        self.store.put(key, {"nonce": int(nonce)})

    def next_nonce(self, signer: str, floor: int = 0) -> int:
        rec = self.store.get(NONCE_PREFIX + signer.lower())
        last = int(rec["nonce"]) if rec else -1
        return max(int(floor), last + 1)

    def handle(self, request: SignedRequest) -> Dict[str, Any]:
        handler = self._routes.get(request.action)
        if handler is None:
            raise UnknownAction(action=request.action)
        signer = verify_request(request)
        with self.store.transaction():
            self._consume_nonce(signer, request.nonce)
            result = handler(signer, request.params)
        self.logger.debug("request_handled", action=request.action, signer=signer, nonce=request.nonce)
        return result

    # ----- handlers -----

    def _initialize_market(self, signer: str, p: Dict[str, Any]) -> Dict[str, Any]:
        market = self.controller.initialize_market(
            signer,
            p["market_id"],
            str(p["oracle_ref"]),
            int(p["min_collateral"]),
            int(p["max_leverage"]),
            int(p["liquidation_threshold"]),
        )
        return market.to_record()

    def _update_market(self, signer: str, p: Dict[str, Any]) -> Dict[str, Any]:
        market = self.controller.update_market(
            signer,
            p["market_id"],
            min_collateral=_opt_int(p, "min_collateral"),
            max_leverage=_opt_int(p, "max_leverage"),
            liquidation_threshold=_opt_int(p, "liquidation_threshold"),
            is_active=_opt_bool(p, "is_active"),
        )
        return market.to_record()

    def _update_funding(self, signer: str, p: Dict[str, Any]) -> Dict[str, Any]:
        market = self.controller.update_funding(signer, p["market_id"], int(p["new_index"]))
        return market.to_record()

    def _open_position(self, signer: str, p: Dict[str, Any]) -> Dict[str, Any]:
        position = self.controller.open_position(
            signer,
            p["market_id"],
            bool(p["is_long"]),
            int(p["collateral_amount"]),
            int(p["leverage"]),
            int(p.get("max_slippage_bps", 0)),
            collateral_mint=str(p["collateral_mint"]),
            oracle_ref=p.get("oracle_ref"),
            expected_price=_opt_int(p, "expected_price"),
        )
        rec = position.to_record()
        rec["position"] = position.key
        return rec

    def _close_position(self, signer: str, p: Dict[str, Any]) -> Dict[str, Any]:
        event = self.controller.close_position(
            signer,
            str(p["position"]),
            oracle_ref=p.get("oracle_ref"),
            receive_mint=p.get("receive_mint"),
        )
        return event.to_data()

    def _liquidate_position(self, signer: str, p: Dict[str, Any]) -> Dict[str, Any]:
        event = self.controller.liquidate_position(
            signer,
            str(p["trader"]),
            str(p["position"]),
            oracle_ref=p.get("oracle_ref"),
            receive_mint=p.get("receive_mint"),
        )
        return event.to_data()

    def _deposit(self, signer: str, p: Dict[str, Any]) -> Dict[str, Any]:
        if not self.faucet_enabled or self.tokens is None:
            raise Unauthorized("faucet disabled", caller=signer)
        owner = str(p.get("owner") or signer)
        account = TokenAccount(owner=owner, mint=str(p["mint"]))
        balance = self.tokens.mint_to(account, int(p["amount"]))
        return {"owner": owner, "mint": account.mint, "balance": balance}
