"""
Tests for the margin engine.

Validates that:
1. Equity is evaluated against PI, net of pending fees
2. A 5x long at PI 0.50 is healthy with 1,500 of equity above maintenance
3. The same long at PI 0.30 has zero equity and is liquidatable
4. Initial margin scales with volatility; stale PI is rejected
"""

from decimal import Decimal

import pytest

from lever.core.errors import InsufficientMarginError, PositionNotFoundError, StalePriceError

from conftest import OWNER, make_config, make_engine, open_at_mark

ZERO = Decimal(0)


class TestScenarios:
    """Reference scenarios at PI 0.50, size 10,000, collateral 2,000."""

    def test_healthy_after_open(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")

        health = engine.get_position_health("alice", 0)

        assert health.equity == Decimal("2000")
        assert health.maintenance_margin == Decimal("500")
        assert health.margin_surplus == Decimal("1500")
        assert health.unrealized_pnl == ZERO
        assert health.pending_borrow_fee == ZERO
        assert not health.liquidatable
        assert engine.is_liquidatable("alice", 0) == (False, ZERO)

    def test_price_drop_to_030_is_liquidatable(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")

        engine.force_set_price(OWNER, 0, Decimal("0.30"))

        health = engine.get_position_health("alice", 0)
        assert health.unrealized_pnl == Decimal("-2000")
        assert health.equity == ZERO
        liquidatable, shortfall = engine.is_liquidatable("alice", 0)
        assert liquidatable
        assert shortfall >= Decimal("500")


class TestRequirements:
    def test_initial_margin_scales_with_volatility(self, engine):
        assert engine.margin.initial_margin(Decimal("1000")) == Decimal("100")
        assert engine.margin.initial_margin(Decimal("1000"), Decimal("0.05")) == Decimal("110")

    def test_liquidation_threshold_applies_buffer(self, engine):
        assert engine.margin.liquidation_threshold(Decimal("10000")) == Decimal("490")

    def test_check_initial_margin(self, engine):
        engine.margin.check_initial_margin(0, Decimal("10000"), Decimal("1000"))
        with pytest.raises(InsufficientMarginError):
            engine.margin.check_initial_margin(0, Decimal("10000"), Decimal("999.99"))


class TestEquity:
    def test_pending_fees_reduce_equity(self, engine, clock):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        clock.advance(hours=24)

        health = engine.get_position_health("alice", 0)

        assert health.pending_borrow_fee > 0
        assert health.equity == Decimal("2000") - health.pending_borrow_fee
        assert engine.get_pending_borrow_fee("alice", 0) == health.pending_borrow_fee

    def test_stale_price_rejected(self, clock):
        engine = make_engine(clock, make_config(max_price_age=300))
        open_at_mark(engine, "alice", 0, "10000", "2000")
        clock.advance(seconds=301)

        with pytest.raises(StalePriceError):
            engine.get_position_health("alice", 0)

    def test_unknown_position(self, engine):
        with pytest.raises(PositionNotFoundError):
            engine.get_position_health("nobody", 0)


class TestLiquidationPrice:
    def test_long(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        # 0.5 + (490 - 2000) / 10000
        assert engine.get_liquidation_price("alice", 0) == Decimal("0.349")

    def test_short(self, engine):
        open_at_mark(engine, "bob", 0, "-10000", "2000")
        assert engine.get_liquidation_price("bob", 0) == Decimal("0.651")

    def test_overcollateralized_long_has_none(self, engine):
        open_at_mark(engine, "carol", 0, "1000", "600")
        assert engine.get_liquidation_price("carol", 0) is None

    def test_liquidation_price_is_the_trigger(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")

        engine.force_set_price(OWNER, 0, Decimal("0.3491"))
        assert not engine.is_liquidatable("alice", 0)[0]

        engine.force_set_price(OWNER, 0, Decimal("0.349"))
        assert engine.is_liquidatable("alice", 0)[0]
