"""
Tests for the keeper cycle.

Validates that:
1. A cycle ingests feed updates, recenters drifted pools and accrues indices
2. Resolved markets are skipped
3. With liquidation enabled, underwater positions are liquidated
4. A failure on one market does not stop the others
"""

from decimal import Decimal

from lever.config.constants import ROLE_LIQUIDATOR
from lever.config.markets import MarketSpec
from lever.core.types import LiquidationStage, Side
from lever.keeper import Keeper

from conftest import KEEPER, OWNER, make_config, make_engine, open_at_mark


class TestCycle:
    def test_ingest_and_accrue(self, engine, clock):
        keeper = Keeper(engine, KEEPER)
        clock.advance(hours=1)

        report = keeper.run_cycle([
            (0, Decimal("0.52"), Decimal("10"), Decimal("5000")),
            (0, Decimal("0.99"), Decimal("10"), Decimal("5000")),
        ])

        assert report.accepted == 1
        assert report.rejected == 1
        assert report.accrued == [0]
        assert report.errors == {}
        assert engine.borrow.get_state(0).last_update == clock()

    def test_recenters_drifted_pool(self, engine, clock):
        clock.advance(hours=1)
        engine.vamm.execute(engine.identity, 0, Side.LONG, Decimal("100000"))
        keeper = Keeper(engine, KEEPER)

        assert keeper.needs_recenter(0)
        report = keeper.run_cycle()

        assert report.recentered == [0]
        assert engine.vamm.last_recentered(0) == clock()
        assert not keeper.needs_recenter(0)

    def test_skips_resolved_markets(self, engine):
        engine.resolve_market(OWNER, 0, Decimal(0))
        report = Keeper(engine, KEEPER).run_cycle()
        assert report.accrued == []

    def test_liquidates_underwater_positions(self, engine):
        engine.grant(OWNER, ROLE_LIQUIDATOR, KEEPER)
        open_at_mark(engine, "alice", 0, "10000", "2000")
        engine.force_set_price(OWNER, 0, Decimal("0.30"))

        report = Keeper(engine, KEEPER, liquidate=True).run_cycle()

        assert len(report.liquidations) == 1
        assert report.liquidations[0].stage == LiquidationStage.FULL
        assert engine.get_position("alice", 0) is None

    def test_failure_is_isolated_per_market(self, clock):
        engine = make_engine(clock, make_config(max_price_age=300))
        engine.create_market(OWNER, MarketSpec(1, "Second", Decimal("0.4"), Decimal("1000000")))
        clock.advance(seconds=301)

        report = Keeper(engine, KEEPER).run_cycle([(1, Decimal("0.41"), None, None)])

        assert report.accrued == [1]
        assert report.errors[0].startswith("STALE_PRICE")
