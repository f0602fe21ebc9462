"""
LEVER - Leveraged prediction market risk engine

Margin, pricing, fee accrual and liquidation for leveraged positions on
binary outcome markets. Every solvency decision is made against a
smoothed, manipulation-resistant Probability Index (PI); trades execute on
a virtual constant-product market whose price never feeds back into risk.
"""

__version__ = "0.1.0"

from .config import get_config, EngineConfig, MarketSpec, load_market_specs
from .core import Side, LeverError, ValidationError, AuthorizationError
from .engine import RiskEngine
from .keeper import Keeper, KeeperReport

__all__ = [
    "__version__",
    "get_config",
    "EngineConfig",
    "MarketSpec",
    "load_market_specs",
    "Side",
    "LeverError",
    "ValidationError",
    "AuthorizationError",
    "RiskEngine",
    "Keeper",
    "KeeperReport",
]
