"""
Tests for the borrow fee engine.

Validates that:
1. Each multiplier follows its piecewise curve
2. The applied rate is smoothed, growth-capped and clamped
3. The index compounds monotonically and pending fees match settlement
4. Utilization 50% -> 80% raises the rate by at most +25% per hour
5. Accrual and pending-fee reads on a stale PI are rejected with state untouched
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from lever.config.config import BorrowConfig, PriceIndexConfig
from lever.core.errors import AuthorizationError, StalePriceError
from lever.core.ledger import PositionLedger
from lever.core.types import IndexSnapshot
from lever.fees.borrow import (
    BorrowFeeEngine,
    concentration_multiplier,
    imbalance_multiplier,
    smooth_rate,
    time_to_resolution_multiplier,
    utilization_multiplier,
    volatility_multiplier,
)
from lever.pricing.price_index import ProbabilityIndexEngine
from lever.utils.fixed_point import quantize_up, wexp

from conftest import KEEPER, NEVER_STALE, OWNER, START

ENGINE = "engine"
CONFIG = BorrowConfig()
ZERO = Decimal(0)


class FixedUtilizationPool:
    """Capital pool stand-in reporting a settable utilization."""

    def __init__(self, utilization: str = "0"):
        self.value = Decimal(utilization)

    def utilization(self) -> Decimal:
        return self.value


class BorrowSetup:
    def __init__(self, clock, max_age=NEVER_STALE, resolution_time=None):
        self.clock = clock
        self.pool = FixedUtilizationPool()
        self.ledger = PositionLedger(OWNER, clock=clock, engines=[ENGINE])
        self.price_index = ProbabilityIndexEngine(OWNER, PriceIndexConfig(), clock, keepers=[KEEPER])
        self.borrow = BorrowFeeEngine(
            OWNER, self.ledger, self.price_index, self.pool, CONFIG, clock,
            keepers=[KEEPER], engines=[ENGINE], max_price_age_seconds=max_age,
        )
        for market_id in (0, 1):
            self.ledger.create_market(OWNER, market_id, f"M{market_id}", Decimal("1000000"),
                                      resolution_time=resolution_time)
            self.price_index.create_market(OWNER, market_id, Decimal("0.5"), resolution_time=resolution_time)
            self.borrow.create_market(OWNER, market_id)

    def open(self, trader, size, market_id=0):
        index = self.borrow.accrue(ENGINE, market_id).index
        position, _ = self.ledger.open(
            ENGINE, trader, market_id, Decimal(size), Decimal("1000"), Decimal("0.5"),
            IndexSnapshot(index, ZERO, ZERO),
        )
        return position


@pytest.fixture
def setup(clock) -> BorrowSetup:
    return BorrowSetup(clock)


class TestMultipliers:
    """Piecewise multiplier curves at default parameters."""

    @pytest.mark.parametrize("utilization,expected", [
        ("0.5", "1"),
        ("0.6", "1"),
        ("0.8", "1.75"),
        ("1.0", "4"),
        ("1.2", "6"),
    ])
    def test_utilization(self, utilization, expected):
        assert utilization_multiplier(Decimal(utilization), CONFIG) == Decimal(expected)

    def test_imbalance(self):
        assert imbalance_multiplier(Decimal("500"), Decimal("500"), CONFIG) == Decimal(1)
        assert imbalance_multiplier(Decimal("100"), ZERO, CONFIG) == Decimal(2)
        assert imbalance_multiplier(ZERO, ZERO, CONFIG) == Decimal(1)

    def test_volatility(self):
        assert volatility_multiplier(Decimal("0.01"), CONFIG) == Decimal(1)
        assert volatility_multiplier(Decimal("0.04"), CONFIG) == Decimal("1.5")

    @pytest.mark.parametrize("hours,expected", [
        (None, "1"),
        (72.0, "1"),
        (48.0, "1"),
        (30.0, "1.25"),
        (12.0, "2"),
        (6.0, "3"),
        (0.0, "4"),
    ])
    def test_time_to_resolution(self, hours, expected):
        assert time_to_resolution_multiplier(hours, CONFIG) == Decimal(expected)

    def test_concentration(self):
        assert concentration_multiplier(Decimal("250"), Decimal("1000"), CONFIG) == Decimal(1)
        assert concentration_multiplier(Decimal("1000"), Decimal("1000"), CONFIG) == Decimal("2.5")
        assert concentration_multiplier(ZERO, ZERO, CONFIG) == Decimal(1)

    def test_engine_reads_ledger_and_price_index(self, clock):
        setup = BorrowSetup(clock, resolution_time=START + timedelta(hours=6))
        setup.open("alice", "1000")

        multipliers = setup.borrow.compute_multipliers(0)

        assert multipliers.imbalance == Decimal(2)
        assert multipliers.concentration == Decimal("2.5")
        assert multipliers.time_to_resolution == Decimal(3)
        assert multipliers.utilization == Decimal(1)
        assert multipliers.volatility == Decimal(1)


class TestRateSmoothing:
    def test_growth_capped_per_hour(self):
        previous = Decimal("0.0001")
        rate = smooth_rate(Decimal("0.005"), previous, Decimal(1), CONFIG)
        assert rate == Decimal("0.000125")

    def test_no_elapsed_time_means_no_increase(self):
        previous = Decimal("0.0001")
        assert smooth_rate(Decimal("0.005"), previous, ZERO, CONFIG) == previous

    def test_clamped_to_min(self):
        assert smooth_rate(ZERO, CONFIG.min_rate, Decimal(1), CONFIG) == CONFIG.min_rate

    def test_utilization_jump_raises_rate_within_cap(self, setup, clock):
        """50% -> 80% utilization with every other multiplier at 1."""
        setup.pool.value = Decimal("0.5")
        clock.advance(hours=1)
        rate_at_50 = setup.borrow.accrue(KEEPER, 0).smoothed_rate

        setup.pool.value = Decimal("0.8")
        clock.advance(hours=1)
        state = setup.borrow.accrue(KEEPER, 0)
        rate_at_80 = state.smoothed_rate

        assert state.multipliers.product == Decimal("1.75")
        assert rate_at_80 > rate_at_50
        assert rate_at_80 <= rate_at_50 * Decimal("1.25")
        assert rate_at_80 == Decimal("0.00011125")


class TestIndex:
    """Continuously compounding borrow index."""

    def test_index_compounds_at_applied_rate(self, setup, clock):
        clock.advance(hours=10)
        state = setup.borrow.accrue(KEEPER, 0)
        assert state.index == quantize_up(wexp(CONFIG.base_rate * Decimal("10")))

    def test_index_is_monotonic(self, setup, clock):
        setup.open("alice", "1000")
        previous = setup.borrow.get_state(0).index
        for utilization in ("0.9", "0.2", "1.1", "0"):
            setup.pool.value = Decimal(utilization)
            clock.advance(hours=3)
            index = setup.borrow.accrue(KEEPER, 0).index
            assert index >= previous
            previous = index
        assert previous > Decimal(1)

    def test_pending_fee_matches_settlement(self, setup, clock):
        position = setup.open("alice", "1000")
        clock.advance(hours=24)

        pending = setup.borrow.pending_fee(position)
        index = setup.borrow.accrue(ENGINE, 0).index
        settlement = setup.ledger.settle_fees(ENGINE, "alice", 0, IndexSnapshot(index, ZERO, ZERO))

        assert pending > 0
        assert settlement.borrow_fee == pending

    def test_hourly_settlement_telescopes(self, setup, clock):
        position = setup.open("alice", "1000")
        opened_at = position.borrow_index_at_open

        for _ in range(6):
            clock.advance(hours=1)
            index = setup.borrow.accrue(ENGINE, 0).index
            setup.ledger.settle_fees(ENGINE, "alice", 0, IndexSnapshot(index, ZERO, ZERO))

        paid = setup.ledger.get_position("alice", 0).borrow_fees_paid
        expected = quantize_up(Decimal("1000") * (index - opened_at) / opened_at)
        assert paid > 0
        # One unit of rounding per settlement at most
        assert abs(paid - expected) <= Decimal("6e-18")

    def test_pending_fee_rejects_stale_price(self, clock):
        setup = BorrowSetup(clock, max_age=300)
        position = setup.open("alice", "1000")
        clock.advance(seconds=301)

        with pytest.raises(StalePriceError):
            setup.borrow.pending_fee(position)

    def test_view_does_not_mutate(self, setup, clock):
        clock.advance(hours=5)
        before = setup.borrow.get_state(0)
        assert setup.borrow.current_index(0) > before.index
        assert setup.borrow.get_state(0).to_dict() == before.to_dict()

    def test_stale_price_rejects_accrual(self, clock):
        setup = BorrowSetup(clock, max_age=300)
        before = setup.borrow.get_state(0)
        clock.advance(seconds=301)

        with pytest.raises(StalePriceError):
            setup.borrow.accrue(KEEPER, 0)
        assert setup.borrow.get_state(0).to_dict() == before.to_dict()

    def test_unauthorized_accrual(self, setup):
        with pytest.raises(AuthorizationError):
            setup.borrow.accrue("mallory", 0)

    def test_annualized_rate(self, setup):
        assert setup.borrow.annualized_rate(0) == Decimal("0.876")
