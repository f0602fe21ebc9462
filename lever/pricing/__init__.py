"""
Pricing: the Probability Index (mark price) and the virtual execution market.
"""

from .price_index import ProbabilityIndexEngine
from .vamm import VirtualExecutionMarket

__all__ = [
    "ProbabilityIndexEngine",
    "VirtualExecutionMarket",
]
