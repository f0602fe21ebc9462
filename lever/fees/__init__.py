"""
Fee engines: borrow (pool risk pricing) and funding (OI rebalancing).
"""

from .accrual import accrue_indices
from .borrow import (
    BorrowFeeEngine,
    utilization_multiplier,
    imbalance_multiplier,
    volatility_multiplier,
    time_to_resolution_multiplier,
    concentration_multiplier,
    smooth_rate,
)
from .funding import FundingEngine, funding_rate

__all__ = [
    "accrue_indices",
    "BorrowFeeEngine",
    "utilization_multiplier",
    "imbalance_multiplier",
    "volatility_multiplier",
    "time_to_resolution_multiplier",
    "concentration_multiplier",
    "smooth_rate",
    "FundingEngine",
    "funding_rate",
]
