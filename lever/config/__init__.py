"""
Configuration module.
"""

from .config import (
    Config,
    EngineConfig,
    PriceIndexConfig,
    ExecutionConfig,
    MarginConfig,
    LiquidationConfig,
    BorrowConfig,
    FundingConfig,
    LedgerConfig,
    PoolConfig,
    LogConfig,
    get_config,
    reset_config,
)
from .markets import MarketSpec, load_market_specs, list_market_files, parse_market_spec

__all__ = [
    "Config",
    "EngineConfig",
    "PriceIndexConfig",
    "ExecutionConfig",
    "MarginConfig",
    "LiquidationConfig",
    "BorrowConfig",
    "FundingConfig",
    "LedgerConfig",
    "PoolConfig",
    "LogConfig",
    "get_config",
    "reset_config",
    "MarketSpec",
    "load_market_specs",
    "list_market_files",
    "parse_market_spec",
]
