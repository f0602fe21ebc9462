"""
LP capital pool (counterparty to all traders).
"""

from .capital_pool import CapitalPool, LiquidityPool, payout_liability

__all__ = [
    "CapitalPool",
    "LiquidityPool",
    "payout_liability",
]
