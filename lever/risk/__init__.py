"""
Margin, liquidation and bad-debt absorption.

Usage:
    from lever.risk import MarginEngine

    health = margin.health("alice", market_id=0)
    if health.liquidatable:
        liquidation.liquidate("keeper", "alice", 0)
"""

from .insurance import InsuranceFund
from .liquidation import LiquidationEngine
from .margin import MarginEngine

__all__ = [
    "InsuranceFund",
    "LiquidationEngine",
    "MarginEngine",
]
