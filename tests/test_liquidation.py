"""
Tests for the liquidation engine and the bad-debt waterfall.

Validates that:
1. Healthy positions cannot be liquidated and nothing changes
2. A partial close that restores health stops at PARTIAL
3. A full close charges the penalty split liquidator / insurance / pool
4. Bad debt is absorbed by insurance, then ADL, then the pool, in order
5. Only authorized liquidators may liquidate
"""

from decimal import Decimal

import pytest

from lever.config.config import LiquidationConfig
from lever.core.errors import AuthorizationError, NotLiquidatableError, StalePriceError
from lever.core.types import LiquidationStage, Side

from conftest import LIQUIDATOR, OWNER, make_config, make_engine, open_at_mark

ZERO = Decimal(0)
LIQUIDITY = Decimal("1000000")


def crash(engine, price):
    engine.force_set_price(OWNER, 0, Decimal(price))


class TestTrigger:
    def test_healthy_position_rejected(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        before = engine.get_position("alice", 0)

        with pytest.raises(NotLiquidatableError):
            engine.liquidate(LIQUIDATOR, "alice", 0)

        assert engine.get_position("alice", 0).to_dict() == before.to_dict()
        assert engine.liquidation.history == []

    def test_unauthorized_liquidator(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        crash(engine, "0.30")

        with pytest.raises(AuthorizationError):
            engine.liquidate("mallory", "alice", 0)
        assert engine.get_position("alice", 0) is not None

    def test_stale_price_rejected(self, clock):
        engine = make_engine(clock, make_config(max_price_age=300))
        open_at_mark(engine, "alice", 0, "10000", "2000")
        crash(engine, "0.30")
        clock.advance(seconds=301)

        with pytest.raises(StalePriceError):
            engine.liquidate(LIQUIDATOR, "alice", 0)

    def test_liquidatable_positions(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        open_at_mark(engine, "bob", 0, "1000", "500")
        crash(engine, "0.30")

        assert [p.trader for p in engine.liquidation.liquidatable_positions(0)] == ["alice"]


class TestStages:
    """Partial then full close at PI."""

    def test_partial_restores_health(self, clock):
        config = make_config(liquidation=LiquidationConfig(penalty_rate=Decimal("0.01")))
        engine = make_engine(clock, config)
        open_at_mark(engine, "alice", 0, "10000", "2000")
        crash(engine, "0.345")

        result = engine.liquidate(LIQUIDATOR, "alice", 0)

        assert result.stage == LiquidationStage.PARTIAL
        assert result.size_closed == Decimal("5000")
        assert result.realized_pnl == Decimal("-775")
        assert result.penalty == Decimal("50")
        assert result.equity_after == Decimal("400")

        position = engine.get_position("alice", 0)
        assert position.size == Decimal("5000")
        assert position.collateral == Decimal("1175")
        assert not engine.get_position_health("alice", 0).liquidatable
        assert engine.ledger.get_market(0).total_long_oi == Decimal("5000")

    def test_full_close_and_penalty_split(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        crash(engine, "0.345")

        result = engine.liquidate(LIQUIDATOR, "alice", 0)

        assert result.stage == LiquidationStage.FULL
        assert result.fully_closed
        assert result.size_closed == Decimal("10000")
        assert result.equity_after == ZERO
        assert result.bad_debt == ZERO
        # 250 on the partial close, 200 (all that was left) on the final close
        assert result.penalty == Decimal("450")
        assert result.liquidator_reward == Decimal("225")
        assert result.protocol_fee == Decimal("45")
        assert result.pool_recovery == Decimal("180")
        assert result.penalty == result.liquidator_reward + result.protocol_fee + result.pool_recovery

        assert engine.get_position("alice", 0) is None
        assert engine.ledger.get_market(0).total_oi == ZERO
        assert engine.liquidation.rewards_of(LIQUIDATOR) == Decimal("225")
        assert engine.insurance.balance == Decimal("45")
        assert engine.pool.total_assets() == LIQUIDITY + Decimal("1550") + Decimal("180")
        assert engine.pool.allocated(0) == ZERO
        assert engine.liquidation.history == [result]


class TestBadDebt:
    """Insurance -> ADL -> socialized loss."""

    def test_socialized_when_nothing_else_covers(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        crash(engine, "0.30")

        result = engine.liquidate(LIQUIDATOR, "alice", 0)

        assert result.bad_debt == Decimal("250")
        # The partial close's protocol fee is the only insurance money
        assert result.insurance_covered == Decimal("25")
        assert result.adl_covered == ZERO
        assert result.socialized_loss == Decimal("225")
        assert result.bad_debt == result.insurance_covered + result.adl_covered + result.socialized_loss
        assert engine.pool.bad_debt_absorbed == Decimal("225")
        assert engine.insurance.balance == ZERO

    def test_insurance_covers_first(self, clock):
        engine = make_engine(clock, insurance=Decimal("1000"))
        open_at_mark(engine, "alice", 0, "10000", "2000")
        crash(engine, "0.30")

        result = engine.liquidate(LIQUIDATOR, "alice", 0)

        assert result.insurance_covered == Decimal("250")
        assert result.socialized_loss == ZERO
        assert engine.insurance.balance == Decimal("775")
        assert engine.pool.bad_debt_absorbed == ZERO

    def test_adl_haircuts_profitable_counterparty(self, engine):
        open_at_mark(engine, "alice", 0, "10000", "2000")
        open_at_mark(engine, "bob", 0, "-4000", "2000")
        crash(engine, "0.30")

        result = engine.liquidate(LIQUIDATOR, "alice", 0)

        assert result.insurance_covered == Decimal("25")
        assert result.adl_covered == Decimal("225")
        assert result.socialized_loss == ZERO
        assert len(result.adl_events) == 1

        event = result.adl_events[0]
        assert event.trader == "bob"
        assert event.size_reduced == Decimal("1125")
        assert event.realized_pnl == Decimal("225")
        assert event.haircut == Decimal("225")

        bob = engine.get_position("bob", 0)
        assert bob.size == Decimal("-2875")
        assert bob.collateral == Decimal("1437.5")
        assert engine.liquidation.payouts_of("bob") == Decimal("562.5")
        assert engine.ledger.check_invariants() == []

    def test_adl_ranks_by_pnl_and_leverage(self, engine):
        open_at_mark(engine, "bob", 0, "-1000", "1000")
        open_at_mark(engine, "carol", 0, "-1000", "100")
        crash(engine, "0.30")

        ranked = engine.liquidation.adl_candidates(0, Side.SHORT, Decimal("0.30"))

        assert [p.trader for _, p in ranked] == ["carol", "bob"]
        assert ranked[0][0] > ranked[1][0]

    def test_losing_positions_are_not_adl_candidates(self, engine):
        open_at_mark(engine, "alice", 0, "1000", "500")
        crash(engine, "0.30")

        assert engine.liquidation.adl_candidates(0, Side.LONG, Decimal("0.30")) == []
