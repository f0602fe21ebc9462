"""
Shared fixtures for the risk engine tests.

Every engine runs on a ManualClock so accrual, staleness and time to
resolution are deterministic. File logging is off.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from lever.config.config import EngineConfig, LiquidationConfig, LogConfig, PriceIndexConfig
from lever.config.markets import MarketSpec
from lever.engine import RiskEngine
from lever.pool.capital_pool import payout_liability
from lever.utils.clock import ManualClock
from lever.utils.logger import setup_logger

OWNER = "admin"
KEEPER = "keeper"
LIQUIDATOR = "liquidator"
LP = "lp"

START = datetime(2026, 1, 1, tzinfo=timezone.utc)

# Effectively disables staleness unless a test opts in
NEVER_STALE = 10 ** 9


@pytest.fixture(autouse=True, scope="session")
def quiet_logger():
    """Console-only logger for the whole session."""
    return setup_logger(log_level="WARNING", log_to_file=False)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


def make_config(max_price_age: int = NEVER_STALE, liquidation: LiquidationConfig | None = None) -> EngineConfig:
    return EngineConfig(
        price=PriceIndexConfig(max_price_age_seconds=max_price_age),
        liquidation=liquidation or LiquidationConfig(),
        log=LogConfig(log_to_file=False),
    )


def make_engine(
    clock: ManualClock,
    config: EngineConfig | None = None,
    insurance: Decimal = Decimal("0"),
    liquidity: Decimal = Decimal("1000000"),
    price: str = "0.5",
    max_oi: str = "1000000",
) -> RiskEngine:
    """Engine with a funded pool and market 0 created at `price`."""
    engine = RiskEngine(
        OWNER,
        config or make_config(),
        clock,
        keepers=[KEEPER],
        liquidators=[LIQUIDATOR],
        insurance_balance=insurance,
    )
    engine.pool.deposit(LP, liquidity)
    engine.create_market(OWNER, MarketSpec(0, "Test market", Decimal(price), Decimal(max_oi)))
    return engine


@pytest.fixture
def engine(clock) -> RiskEngine:
    return make_engine(clock)


def open_at_mark(engine: RiskEngine, trader: str, market_id: int, size, collateral):
    """
    Open a position directly on the ledger at the current PI.

    Skips the vAMM so entry equals PI exactly; the pool reserves the same
    liability the router would.
    """
    size = Decimal(str(size))
    entry = engine.get_mark_price(market_id)
    indices = engine.accrue(engine.identity, market_id)
    engine.pool.allocate(engine.identity, market_id, payout_liability(size, entry))
    position, _ = engine.ledger.open(
        engine.identity, trader, market_id, size, Decimal(str(collateral)), entry, indices,
    )
    return position
