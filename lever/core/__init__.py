"""
Core records, errors, access control and the position ledger.
"""

from .access import AccessControl
from .errors import (
    LeverError,
    ValidationError,
    StalePriceError,
    InvalidSizeError,
    InvalidPriceError,
    SlippageExceededError,
    InsufficientMarginError,
    OICapExceededError,
    MarketNotFoundError,
    MarketInactiveError,
    PositionNotFoundError,
    NotLiquidatableError,
    InsufficientLiquidityError,
    AuthorizationError,
    InvariantViolationError,
)
from .ledger import PositionLedger
from .types import (
    Side,
    LiquidationStage,
    PositionAction,
    Position,
    Market,
    PriceConfig,
    PriceState,
    Rejection,
    IngestResult,
    ExecutionPool,
    Quote,
    BorrowMultipliers,
    BorrowState,
    FundingState,
    IndexSnapshot,
    Settlement,
    PositionChange,
    PositionHealth,
    ADLEvent,
    LiquidationResult,
    TradeResult,
)

__all__ = [
    # Access
    "AccessControl",
    # Errors
    "LeverError",
    "ValidationError",
    "StalePriceError",
    "InvalidSizeError",
    "InvalidPriceError",
    "SlippageExceededError",
    "InsufficientMarginError",
    "OICapExceededError",
    "MarketNotFoundError",
    "MarketInactiveError",
    "PositionNotFoundError",
    "NotLiquidatableError",
    "InsufficientLiquidityError",
    "AuthorizationError",
    "InvariantViolationError",
    # Ledger
    "PositionLedger",
    # Types
    "Side",
    "LiquidationStage",
    "PositionAction",
    "Position",
    "Market",
    "PriceConfig",
    "PriceState",
    "Rejection",
    "IngestResult",
    "ExecutionPool",
    "Quote",
    "BorrowMultipliers",
    "BorrowState",
    "FundingState",
    "IndexSnapshot",
    "Settlement",
    "PositionChange",
    "PositionHealth",
    "ADLEvent",
    "LiquidationResult",
    "TradeResult",
]
