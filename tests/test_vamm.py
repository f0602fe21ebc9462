"""
Tests for the virtual execution market.

Validates that:
1. Fills pay slippage and spread against the trader
2. Fills move the curve but never PI (execution/mark decoupling)
3. Recentering restores quote/base = PI while keeping k
4. The spread guard widens the spread when raw strays from PI
"""

from decimal import Decimal

import pytest

from lever.config.config import ExecutionConfig
from lever.core.errors import AuthorizationError, InsufficientLiquidityError, InvalidSizeError
from lever.core.types import Side
from lever.pricing.vamm import VirtualExecutionMarket

from conftest import KEEPER, OWNER, open_at_mark


class TestQuotes:
    """Pricing without committing."""

    def test_pool_starts_at_initial_price(self, engine):
        pool = engine.vamm.get_pool(0)
        assert engine.vamm.get_spot_price(0) == Decimal("0.5")
        assert pool.k == pool.quote_reserve * pool.base_reserve

    def test_long_pays_above_spot_short_receives_below(self, engine):
        long_quote = engine.vamm.quote(0, Side.LONG, Decimal("1000"))
        short_quote = engine.vamm.quote(0, Side.SHORT, Decimal("1000"))

        assert long_quote.execution_price > Decimal("0.5")
        assert short_quote.execution_price < Decimal("0.5")
        assert long_quote.price_impact_bps > 0
        assert long_quote.spread_bps == engine.config.execution.base_spread_bps

    def test_quote_does_not_move_reserves(self, engine):
        before = engine.vamm.get_pool(0)
        engine.vamm.quote(0, Side.LONG, Decimal("5000"))
        assert engine.vamm.get_pool(0).to_dict() == before.to_dict()

    def test_larger_fills_pay_more(self, engine):
        small = engine.vamm.quote(0, Side.LONG, Decimal("100"))
        large = engine.vamm.quote(0, Side.LONG, Decimal("100000"))
        assert large.execution_price > small.execution_price

    def test_long_cannot_drain_base_reserve(self, engine):
        with pytest.raises(InsufficientLiquidityError):
            engine.vamm.quote(0, Side.LONG, Decimal("1000000"))

    def test_non_positive_size_rejected(self, engine):
        with pytest.raises(InvalidSizeError):
            engine.vamm.quote(0, Side.SHORT, Decimal("0"))

    def test_execution_price_capped_at_one(self, clock):
        vamm = VirtualExecutionMarket(OWNER, ExecutionConfig(), clock)
        vamm.create_pool(OWNER, 0, Decimal("0.99"), virtual_depth=Decimal("100"))

        quote = vamm.quote(0, Side.LONG, Decimal("99"))

        assert quote.execution_price == Decimal(1)


class TestDecoupling:
    """Fills move the curve, never the mark."""

    def test_fill_moves_spot_not_pi(self, engine):
        engine.vamm.execute(engine.identity, 0, Side.LONG, Decimal("200000"))

        assert engine.vamm.get_spot_price(0) > Decimal("0.6")
        assert engine.get_mark_price(0) == Decimal("0.5")

    def test_fill_does_not_change_liquidation_state(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "800")
        liquidatable_before = engine.is_liquidatable("alice", 0)
        health_before = engine.get_position_health("alice", 0)

        # Large enough to drag spot far below PI
        engine.vamm.execute(engine.identity, 0, Side.SHORT, Decimal("300000"))

        assert engine.vamm.get_spot_price(0) < Decimal("0.4")
        assert engine.is_liquidatable("alice", 0) == liquidatable_before
        health = engine.get_position_health("alice", 0)
        assert health.mark_price == health_before.mark_price == Decimal("0.5")
        assert health.equity == health_before.equity
        assert health.liquidatable == health_before.liquidatable

    def test_recenter_restores_pi_and_keeps_k(self, engine):
        k = engine.vamm.get_pool(0).k
        engine.vamm.execute(engine.identity, 0, Side.SHORT, Decimal("150000"))

        engine.recenter(KEEPER, 0)

        pool = engine.vamm.get_pool(0)
        assert abs(engine.vamm.get_spot_price(0) - Decimal("0.5")) < Decimal("1e-12")
        assert pool.k == k
        assert abs(pool.quote_reserve * pool.base_reserve - k) / k < Decimal("1e-12")

    def test_only_engine_executes(self, engine):
        with pytest.raises(AuthorizationError):
            engine.vamm.execute(KEEPER, 0, Side.LONG, Decimal("10"))

    def test_only_keepers_or_engine_recenter(self, engine):
        with pytest.raises(AuthorizationError):
            engine.vamm.recenter("mallory", 0, Decimal("0.5"))


class TestSpreadGuard:
    def test_spread_widens_when_raw_deviates(self, engine):
        base = engine.vamm.quote(0, Side.LONG, Decimal("1000"))

        engine.ingest(KEEPER, 0, Decimal("0.58"), Decimal("10"), Decimal("5000"))

        deviation = abs(engine.price_index.get_raw_price(0) - engine.get_mark_price(0))
        assert deviation > engine.config.execution.spread_guard_threshold
        widened = engine.vamm.quote(0, Side.LONG, Decimal("1000"))
        assert widened.spread_bps > base.spread_bps
        assert widened.execution_price > base.execution_price

    def test_spread_is_base_when_raw_tracks_pi(self, engine):
        engine.ingest(KEEPER, 0, Decimal("0.51"), Decimal("10"), Decimal("5000"))
        assert engine.vamm.spread_bps(0) == engine.config.execution.base_spread_bps
