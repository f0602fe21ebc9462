"""
Centralized constants for the risk engine.

IMPORTANT: Market identifiers and caller identities should ALWAYS be
passed as explicit parameters. No engine function has a default market.
"""

from decimal import Decimal


# ==================== Caller Roles ====================

# Allow-set names. Each component owns one capability table per role.
ROLE_OWNER = "owner"
ROLE_ENGINE = "engine"          # may mutate the ledger
ROLE_KEEPER = "keeper"          # may ingest prices / recenter / accrue
ROLE_LIQUIDATOR = "liquidator"  # may call liquidate
ROLE_ALLOCATOR = "allocator"    # may allocate pool capital


# ==================== Price Bounds ====================

PROBABILITY_MIN = Decimal(0)
PROBABILITY_MAX = Decimal(1)

# Outcomes a market may resolve to
RESOLUTION_OUTCOMES = (Decimal(0), Decimal(1))


# ==================== Utilization ====================

UTILIZATION_FULL = Decimal(1)


# ==================== Rejection Codes ====================

REJECT_INVALID_PRICE = "INVALID_PRICE"
REJECT_SPREAD_TOO_WIDE = "SPREAD_TOO_WIDE"
REJECT_TICK_TOO_LARGE = "TICK_TOO_LARGE"
REJECT_DEPTH_TOO_LOW = "DEPTH_TOO_LOW"
REJECT_MARKET_INACTIVE = "MARKET_INACTIVE"
REJECT_MARKET_RESOLVED = "MARKET_RESOLVED"
REJECT_MARKET_NOT_FOUND = "MARKET_NOT_FOUND"
