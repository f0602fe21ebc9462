"""
Tests for the capital pool.

Validates that:
1. LP shares mint and burn at the current share price
2. Allocated capital cannot be withdrawn
3. Trader PnL, fees and bad-debt write-offs move total assets
4. Only allocators drive custody operations
"""

from decimal import Decimal

import pytest

from lever.config.config import PoolConfig
from lever.core.errors import AuthorizationError, InsufficientLiquidityError, InvalidSizeError
from lever.pool.capital_pool import CapitalPool, LiquidityPool, payout_liability

from conftest import OWNER

ENGINE = "engine"
ZERO = Decimal(0)


@pytest.fixture
def pool() -> LiquidityPool:
    pool = LiquidityPool(OWNER, PoolConfig(max_utilization=Decimal("0.8")), allocators=[ENGINE])
    pool.deposit("lp1", Decimal("1000"))
    return pool


class TestShares:
    def test_first_deposit_mints_one_to_one(self, pool):
        assert pool.shares_of("lp1") == Decimal("1000")
        assert pool.share_price() == Decimal(1)

    def test_share_price_moves_with_pnl(self, pool):
        pool.credit_fees(ENGINE, 0, Decimal("100"))
        assert pool.share_price() == Decimal("1.1")

        minted = pool.deposit("lp2", Decimal("110"))
        assert minted == Decimal("100")

    def test_withdraw_returns_assets(self, pool):
        pool.realize_trader_pnl(ENGINE, 0, Decimal("-200"))
        assert pool.withdraw("lp1", Decimal("500")) == Decimal("600")
        assert pool.total_assets() == Decimal("600")

    def test_withdraw_limited_to_free_capital(self, pool):
        pool.allocate(ENGINE, 0, Decimal("700"))
        with pytest.raises(InsufficientLiquidityError):
            pool.withdraw("lp1", Decimal("400"))
        assert pool.withdraw("lp1", Decimal("300")) == Decimal("300")

    def test_cannot_withdraw_more_shares_than_held(self, pool):
        with pytest.raises(InvalidSizeError):
            pool.withdraw("lp1", Decimal("1001"))


class TestCustody:
    """Engine-facing operations."""

    def test_utilization(self, pool):
        pool.allocate(ENGINE, 0, Decimal("300"))
        pool.allocate(ENGINE, 1, Decimal("200"))

        assert pool.utilization() == Decimal("0.5")
        assert pool.allocated(0) == Decimal("300")

        pool.deallocate(ENGINE, 0, Decimal("1000"))
        assert pool.allocated(0) == ZERO
        assert pool.utilization() == Decimal("0.2")

    def test_allocation_respects_cap(self, pool):
        with pytest.raises(InsufficientLiquidityError):
            pool.allocate(ENGINE, 0, Decimal("801"))
        assert pool.allocated() == ZERO

    def test_trader_profit_and_loss(self, pool):
        pool.realize_trader_pnl(ENGINE, 0, Decimal("150"))
        pool.realize_trader_pnl(ENGINE, 0, Decimal("-50"))
        assert pool.total_assets() == Decimal("900")
        assert pool.trader_pnl_paid == Decimal("100")

    def test_bad_debt_bounded_by_assets(self, pool):
        assert pool.cover_bad_debt(ENGINE, 0, Decimal("400")) == Decimal("400")
        assert pool.cover_bad_debt(ENGINE, 0, Decimal("5000")) == Decimal("600")
        assert pool.total_assets() == ZERO
        assert pool.bad_debt_absorbed == Decimal("1000")

    def test_only_allocators(self, pool):
        with pytest.raises(AuthorizationError):
            pool.allocate("mallory", 0, Decimal("1"))
        with pytest.raises(AuthorizationError):
            pool.cover_bad_debt("mallory", 0, Decimal("1"))

    def test_implements_custody_protocol(self, pool):
        assert isinstance(pool, CapitalPool)


class TestPayoutLiability:
    def test_long_and_short(self):
        assert payout_liability(Decimal("1000"), Decimal("0.3")) == Decimal("700")
        assert payout_liability(Decimal("-1000"), Decimal("0.3")) == Decimal("300")
