from __future__ import annotations

from typing import Any


class PerpDexError(Exception):
    """Base for every error surfaced to a caller.

    ``code`` is stable and is what clients match on; the message is for humans.
    """

    code = "PerpDexError"
    default_message = "operation failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.details = details
        super().__init__(message or self.default_message)

    def __str__(self) -> str:
        base = super().__str__()
        if not self.details:
            return f"{self.code}: {base}"
        extras = " ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.code}: {base} {extras}"


# Configuration errors: bad bounds on market init/update

class ConfigurationError(PerpDexError):
    code = "ConfigurationError"


class InvalidLeverage(ConfigurationError):
    code = "InvalidLeverage"
    default_message = "Invalid leverage"


class InvalidLiquidationThreshold(ConfigurationError):
    code = "InvalidLiquidationThreshold"
    default_message = "Invalid liquidation threshold"


class InvalidMinCollateral(ConfigurationError):
    code = "InvalidMinCollateral"
    default_message = "Invalid minimum collateral"


# Precondition errors: the request is well formed but state forbids it

class PreconditionError(PerpDexError):
    code = "PreconditionError"


class MarketInactive(PreconditionError):
    code = "MarketInactive"
    default_message = "Market is not active"


class InsufficientCollateral(PreconditionError):
    code = "InsufficientCollateral"
    default_message = "Insufficient collateral"


class InvalidPosition(PreconditionError):
    code = "InvalidPosition"
    default_message = "Invalid position"


class CannotLiquidateYet(PreconditionError):
    code = "CannotLiquidateYet"
    default_message = "Cannot liquidate yet"


class SlippageExceeded(PreconditionError):
    code = "SlippageExceeded"
    default_message = "Price moved beyond allowed slippage"


class MarketAlreadyExists(PreconditionError):
    code = "MarketAlreadyExists"
    default_message = "Market already exists"


class MarketNotFound(PreconditionError):
    code = "MarketNotFound"
    default_message = "Market not found"


class PositionAlreadyExists(PreconditionError):
    code = "PositionAlreadyExists"
    default_message = "Position already exists"


class PositionNotFound(InvalidPosition):
    code = "PositionNotFound"
    default_message = "Position not found"


class UnknownAction(PreconditionError):
    code = "UnknownAction"
    default_message = "Unknown action"


# Authorization errors: wrong identity or wrong bound collaborator

class AuthorizationError(PerpDexError):
    code = "AuthorizationError"


class Unauthorized(AuthorizationError):
    code = "Unauthorized"
    default_message = "Unauthorized action"


class InvalidTokenAccount(AuthorizationError):
    code = "InvalidTokenAccount"
    default_message = "Invalid token account"


class InvalidMint(AuthorizationError):
    code = "InvalidMint"
    default_message = "Invalid mint"


class InvalidOracle(AuthorizationError):
    code = "InvalidOracle"
    default_message = "Invalid oracle"


class InvalidSignature(AuthorizationError):
    code = "InvalidSignature"
    default_message = "Signature does not match signer"


class StaleNonce(AuthorizationError):
    code = "StaleNonce"
    default_message = "Nonce already used"


# External-service errors: propagated from collaborators

class ExternalServiceError(PerpDexError):
    code = "ExternalServiceError"


class InsufficientFunds(ExternalServiceError):
    code = "InsufficientFunds"
    default_message = "Insufficient token balance"


class OracleUnavailable(ExternalServiceError):
    code = "OracleUnavailable"
    default_message = "Oracle price unavailable"
