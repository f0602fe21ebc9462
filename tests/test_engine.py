"""
Tests for the risk engine facade.

Validates that:
1. Concurrent writers on one market are serialized (OI and pool stay consistent)
2. Read APIs return PI-based values without mutating state
3. Grants propagate to every component holding the role
4. Markets load from YAML specs with their overrides
5. Environment configuration is read through the config singleton
"""

import threading
from decimal import Decimal

import pytest

from lever.config.config import get_config, reset_config
from lever.config.constants import ROLE_KEEPER
from lever.config.markets import MarketSpec, list_market_files, load_market_specs
from lever.core.errors import AuthorizationError, PositionNotFoundError, StalePriceError
from lever.core.types import Side
from lever.engine import RiskEngine
from lever.pool.capital_pool import payout_liability

from conftest import KEEPER, LP, OWNER, make_config, make_engine, open_at_mark

ZERO = Decimal(0)


class TestConcurrency:
    def test_parallel_opens_on_one_market(self, engine):
        """Twenty threads trade one market; aggregates match the positions."""
        errors = []

        def trade(i):
            side = Side.LONG if i % 2 == 0 else Side.SHORT
            try:
                engine.open_position(f"trader-{i}", 0, side, Decimal("1000"), Decimal("300"))
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=trade, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        market = engine.get_market(0)
        assert market.total_long_oi == Decimal("10000")
        assert market.total_short_oi == Decimal("10000")
        assert engine.ledger.check_invariants() == []

        expected = sum(
            (payout_liability(p.size, p.entry_price) for p in engine.ledger.positions_for_market(0)), ZERO,
        )
        assert engine.pool.allocated(0) == expected


class TestReads:
    def test_execution_price_is_a_quote(self, engine):
        pool_before = engine.vamm.get_pool(0)

        long_price = engine.get_execution_price(0, Side.LONG, Decimal("1000"))
        short_price = engine.get_execution_price(0, Side.SHORT, Decimal("1000"))

        assert short_price < engine.get_mark_price(0) < long_price
        assert engine.vamm.get_pool(0) == pool_before

    def test_unrealized_pnl_uses_pi(self, engine):
        open_at_mark(engine, "alice", 0, "1000", "200")
        engine.force_set_price(OWNER, 0, Decimal("0.6"))

        assert engine.get_unrealized_pnl("alice", 0) == Decimal("100")
        assert engine.get_unrealized_pnl("nobody", 0) == ZERO

    def test_pending_funding_nets_to_zero(self, engine, clock):
        open_at_mark(engine, "alice", 0, "200000", "30000")
        open_at_mark(engine, "bob", 0, "-100000", "15000")
        clock.advance(hours=3)

        assert engine.get_pending_funding("alice", 0) > 0
        assert engine.get_pending_funding("bob", 0) < 0
        assert engine.total_pending_funding(0) == ZERO

    def test_rate_reads(self, engine, clock):
        open_at_mark(engine, "alice", 0, "200000", "30000")
        clock.advance(hours=1)
        engine.accrue(KEEPER, 0)

        assert engine.get_current_borrow_rate(0) == engine.borrow.get_state(0).smoothed_rate
        assert engine.borrow.get_multipliers(0).imbalance == Decimal(2)
        assert engine.get_current_funding_rate(0) == Decimal("0.0005")

    def test_liquidation_price_requires_position(self, engine):
        with pytest.raises(PositionNotFoundError):
            engine.get_liquidation_price("nobody", 0)

    def test_resolved_market_is_never_stale(self, clock):
        engine = make_engine(clock, make_config(max_price_age=300))
        engine.resolve_market(OWNER, 0, Decimal(1))
        clock.advance(hours=24)

        assert not engine.is_price_stale(0)
        assert engine.get_mark_price(0) == Decimal(1)

    def test_pending_fee_reads_reject_stale_price(self, clock):
        engine = make_engine(clock, make_config(max_price_age=60))
        open_at_mark(engine, "alice", 0, "1000", "200")
        clock.advance(hours=5)

        assert engine.is_price_stale(0)
        with pytest.raises(StalePriceError):
            engine.get_pending_borrow_fee("alice", 0)
        with pytest.raises(StalePriceError):
            engine.get_pending_funding("alice", 0)
        with pytest.raises(StalePriceError):
            engine.total_pending_funding(0)

        engine.ingest(KEEPER, 0, Decimal("0.5"), Decimal("10"), Decimal("5000"))
        assert engine.get_pending_borrow_fee("alice", 0) > 0


class TestAccess:
    def test_grant_keeper_everywhere(self, engine):
        with pytest.raises(AuthorizationError):
            engine.ingest("keeper-2", 0, Decimal("0.51"), Decimal("10"), Decimal("5000"))

        engine.grant(OWNER, ROLE_KEEPER, "keeper-2")

        assert engine.ingest("keeper-2", 0, Decimal("0.51"), Decimal("10"), Decimal("5000")).accepted
        engine.accrue("keeper-2", 0)
        engine.recenter("keeper-2", 0)

    def test_only_owner_grants(self, engine):
        with pytest.raises(AuthorizationError):
            engine.grant(KEEPER, ROLE_KEEPER, "keeper-2")

    def test_unknown_role(self, engine):
        with pytest.raises(AuthorizationError):
            engine.grant(OWNER, "superuser", "keeper-2")

    def test_revoke(self, engine):
        engine.price_index.access.revoke(OWNER, ROLE_KEEPER, KEEPER)
        with pytest.raises(AuthorizationError):
            engine.ingest(KEEPER, 0, Decimal("0.51"), Decimal("10"), Decimal("5000"))

    def test_non_owner_cannot_create_markets(self, engine):
        with pytest.raises(AuthorizationError):
            engine.create_market(KEEPER, MarketSpec(5, "X", Decimal("0.5"), Decimal("100")))


class TestMarketSpecs:
    def test_example_file_is_listed(self):
        assert "example" in list_market_files()

    def test_load_example(self):
        specs = load_market_specs("example")

        assert [s.market_id for s in specs] == [0, 1, 2]
        assert specs[0].max_trader_oi == Decimal("50000")
        assert specs[1].overrides == {
            "max_tick_movement": Decimal("0.05"),
            "virtual_depth": Decimal("500000"),
        }
        assert specs[2].resolution_time.year == 2026

    def test_engine_loads_markets(self, clock):
        engine = RiskEngine(OWNER, make_config(), clock, keepers=[KEEPER])
        engine.pool.deposit(LP, Decimal("1000000"))

        markets = engine.load_markets(OWNER, "example")

        assert len(markets) == 3
        assert engine.get_mark_price(1) == Decimal("0.18")
        assert engine.price_index.get_price_config(1).max_tick_movement == Decimal("0.05")
        assert engine.funding.get_state(2).max_rate == Decimal("0.001")
        assert engine.get_market(0).max_side_oi == Decimal("350000")

    @pytest.mark.parametrize("body, message", [
        ("markets:\n  - market_id: 0\n    name: A\n    max_oi: 10\n", "missing required key"),
        ("markets:\n  - market_id: 0\n    name: A\n    initial_price: 1.5\n    max_oi: 10\n", "initial_price"),
        (
            "markets:\n"
            "  - {market_id: 0, name: A, initial_price: 0.5, max_oi: 10}\n"
            "  - {market_id: 0, name: B, initial_price: 0.5, max_oi: 10}\n",
            "Duplicate market_id",
        ),
        ("other: []\n", "expected a 'markets' list"),
    ])
    def test_invalid_files(self, tmp_path, body, message):
        path = tmp_path / "markets.yml"
        path.write_text(body)
        with pytest.raises(ValueError, match=message):
            load_market_specs(path)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_market_specs("does-not-exist")


class TestEnvironmentConfig:
    @pytest.fixture(autouse=True)
    def fresh_config(self):
        reset_config()
        yield
        reset_config()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("PI_ALPHA", "0.2")
        monkeypatch.setenv("MAX_LEVERAGE", "5")
        monkeypatch.setenv("POOL_MAX_UTILIZATION", "0.9")
        monkeypatch.delenv("MAX_GLOBAL_OI", raising=False)

        config = get_config().engine

        assert config.price.alpha == Decimal("0.2")
        assert config.margin.max_leverage == Decimal("5")
        assert config.pool.max_utilization == Decimal("0.9")
        assert config.ledger.max_global_oi is None

    def test_invalid_penalty_split(self, monkeypatch):
        monkeypatch.setenv("LIQUIDATOR_SHARE", "0.9")
        with pytest.raises(ValueError, match="sum to 1"):
            get_config()
