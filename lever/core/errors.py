"""
Exception taxonomy for the risk engine.

- ValidationError: bad input or a violated precondition. Rejected
  synchronously with state untouched; the caller corrects and retries.
- AuthorizationError: caller not in the allow-set. No state change,
  logged as a security event.
- InvariantViolationError: an internal consistency check failed. Not
  retryable; the engine state needs inspection.

Solvency breaches are not exceptions: they trigger the liquidation state
machine. Bad debt is handled by insurance, ADL and pool absorption, not
raised.
"""


class LeverError(Exception):
    """Base class for all engine errors."""

    code = "LEVER_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": {k: str(v) for k, v in self.details.items()}}


class ValidationError(LeverError):
    code = "VALIDATION"


class StalePriceError(ValidationError):
    code = "STALE_PRICE"


class InvalidSizeError(ValidationError):
    code = "INVALID_SIZE"


class InvalidPriceError(ValidationError):
    code = "INVALID_PRICE"


class SlippageExceededError(ValidationError):
    code = "SLIPPAGE_EXCEEDED"


class InsufficientMarginError(ValidationError):
    code = "INSUFFICIENT_MARGIN"


class OICapExceededError(ValidationError):
    code = "OI_CAP_EXCEEDED"


class MarketNotFoundError(ValidationError):
    code = "MARKET_NOT_FOUND"


class MarketInactiveError(ValidationError):
    code = "MARKET_INACTIVE"


class PositionNotFoundError(ValidationError):
    code = "POSITION_NOT_FOUND"


class NotLiquidatableError(ValidationError):
    code = "NOT_LIQUIDATABLE"


class InsufficientLiquidityError(ValidationError):
    code = "INSUFFICIENT_LIQUIDITY"


class AuthorizationError(LeverError):
    code = "UNAUTHORIZED"


class InvariantViolationError(LeverError):
    """Internal accounting broke an invariant. Not retryable; indicates a bug."""

    code = "INVARIANT_VIOLATION"
