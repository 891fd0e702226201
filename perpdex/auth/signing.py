"""EIP-191 request signing for the outer surface.

The engine itself only compares identities; this module is where an identity
is proven. A request is the canonical JSON of ``{action, nonce, params}``
signed as a personal message, and the identity is the recovered address.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict

from eth_account import Account
from eth_account.messages import encode_defunct

from perpdex.core.errors import InvalidSignature
from perpdex.core.types import same_identity


@dataclass
class SignedRequest:
    signer: str
    action: str
    nonce: int
    signature: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SignedRequest":
        return cls(
            signer=str(raw["signer"]),
            action=str(raw["action"]),
            nonce=int(raw["nonce"]),
            signature=str(raw["signature"]),
            params=dict(raw.get("params") or {}),
        )


def canonical_message(action: str, params: Dict[str, Any], nonce: int) -> str:
    return json.dumps({"action": action, "nonce": int(nonce), "params": params}, sort_keys=True, separators=(",", ":"))


def address_from_key(secret_key: str) -> str:
    return str(Account.from_key(secret_key).address)


def sign_request(secret_key: str, action: str, params: Dict[str, Any], nonce: int) -> SignedRequest:
    acct = Account.from_key(secret_key)
    message = encode_defunct(text=canonical_message(action, params, nonce))
    signed = acct.sign_message(message)
    return SignedRequest(
        signer=str(acct.address),
        action=action,
        nonce=int(nonce),
        signature="0x" + bytes(signed.signature).hex(),
        params=params,
    )


def recover_signer(request: SignedRequest) -> str:
    message = encode_defunct(text=canonical_message(request.action, request.params, request.nonce))
    try:
        return str(Account.recover_message(message, signature=request.signature))
    except Exception as e:
        # eth_account raises several types for malformed signatures
        raise InvalidSignature("unrecoverable signature", signer=request.signer) from e


def verify_request(request: SignedRequest) -> str:
    """Return the proven signer address or raise ``InvalidSignature``."""
    recovered = recover_signer(request)
    if not same_identity(recovered, request.signer):
        raise InvalidSignature(signer=request.signer, recovered=recovered)
    return recovered
