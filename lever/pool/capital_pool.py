"""
Capital pool.

The pool is the counterparty to every trader. LPs deposit collateral for
shares; the engine allocates pool capital against open positions, pays
trader profits from it and credits trader losses, fees and liquidation
recoveries to it. When bad debt survives insurance and ADL, the pool
writes it off (loss socialization across LPs).

Accounting:
- total_assets moves with deposits, withdrawals, fees, trader PnL and
  bad debt write-offs
- trader losses and fees are booked when realized; a shortfall the trader
  cannot pay stays booked as a receivable until insurance or ADL fills it
  or cover_bad_debt writes it off
- allocated is the worst-case payout reserved for open positions; it
  never moves assets
- utilization = allocated / total_assets
"""

import threading
from decimal import Decimal
from typing import Iterable, Optional, Protocol, runtime_checkable

from ..config.config import PoolConfig
from ..config.constants import ROLE_ALLOCATOR, UTILIZATION_FULL
from ..core.access import AccessControl
from ..core.errors import InsufficientLiquidityError, InvalidSizeError
from ..utils.fixed_point import ONE, ZERO, fp, quantize, wdiv
from ..utils.logger import get_logger


def payout_liability(size: Decimal, entry_price: Decimal) -> Decimal:
    """
    Worst-case pool payout for a position of signed `size` entered at
    `entry_price`: a long can gain at most (1 - entry) per share, a short
    at most entry per share.
    """
    if size > 0:
        return fp(size * (ONE - entry_price))
    return fp(-size * entry_price)


@runtime_checkable
class CapitalPool(Protocol):
    """Custody interface the engine drives."""

    def allocate(self, caller: str, market_id: int, amount: Decimal) -> None: ...

    def deallocate(self, caller: str, market_id: int, amount: Decimal) -> None: ...

    def credit_fees(self, caller: str, market_id: int, amount: Decimal) -> None: ...

    def cover_bad_debt(self, caller: str, market_id: int, amount: Decimal) -> Decimal: ...

    def realize_trader_pnl(self, caller: str, market_id: int, pnl: Decimal) -> Decimal: ...

    def utilization(self) -> Decimal: ...

    def total_assets(self) -> Decimal: ...


class LiquidityPool:
    """
    In-memory LP pool with share accounting.

    Share price starts at 1.0 and moves with pool PnL.
    """

    def __init__(self, owner: str, config: PoolConfig | None = None, allocators: Iterable[str] = ()):
        self.config = config or PoolConfig()
        self.logger = get_logger()
        self.access = AccessControl("pool", owner, {ROLE_ALLOCATOR: allocators})

        self._lock = threading.RLock()
        self._assets = ZERO
        self._shares: dict[str, Decimal] = {}
        self._total_shares = ZERO
        self._allocated: dict[int, Decimal] = {}
        self.fees_earned = ZERO
        self.bad_debt_absorbed = ZERO
        self.trader_pnl_paid = ZERO

    # ─────────────────────────────────────────────────────────────────────
    # LP operations
    # ─────────────────────────────────────────────────────────────────────

    def deposit(self, lp: str, amount: Decimal) -> Decimal:
        """
        Deposit collateral and mint shares at the current share price.

        Returns:
            Shares minted
        """
        amount = fp(amount)
        if amount <= 0:
            raise InvalidSizeError(f"deposit must be positive, got {amount}")
        with self._lock:
            if self._total_shares == 0 or self._assets <= 0:
                minted = amount
            else:
                minted = quantize(amount * self._total_shares / self._assets)
            self._assets += amount
            self._total_shares += minted
            self._shares[lp] = self._shares.get(lp, ZERO) + minted
        self.logger.info(f"Pool deposit: lp={lp} amount={amount} shares={minted}")
        return minted

    def withdraw(self, lp: str, shares: Decimal) -> Decimal:
        """
        Burn shares for collateral.

        Only unallocated capital can leave the pool.

        Raises:
            InvalidSizeError: If the LP holds fewer shares
            InsufficientLiquidityError: If free capital is insufficient
        """
        shares = fp(shares)
        with self._lock:
            held = self._shares.get(lp, ZERO)
            if shares <= 0 or shares > held:
                raise InvalidSizeError(f"cannot withdraw {shares} shares, {lp} holds {held}")
            amount = quantize(shares * self._assets / self._total_shares)
            free = self._assets - self.allocated()
            if amount > free:
                raise InsufficientLiquidityError(
                    f"withdrawal {amount} exceeds free liquidity {free}", lp=lp,
                )
            self._assets -= amount
            self._total_shares -= shares
            self._shares[lp] = held - shares
        self.logger.info(f"Pool withdraw: lp={lp} shares={shares} amount={amount}")
        return amount

    def shares_of(self, lp: str) -> Decimal:
        with self._lock:
            return self._shares.get(lp, ZERO)

    def share_price(self) -> Decimal:
        with self._lock:
            if self._total_shares == 0:
                return ONE
            return wdiv(self._assets, self._total_shares)

    # ─────────────────────────────────────────────────────────────────────
    # Engine custody interface
    # ─────────────────────────────────────────────────────────────────────

    def allocate(self, caller: str, market_id: int, amount: Decimal) -> None:
        """
        Reserve capital against new exposure.

        Raises:
            InsufficientLiquidityError: If the utilization cap would be breached
        """
        self.access.require(caller, ROLE_ALLOCATOR, "allocate")
        amount = fp(amount)
        if amount <= 0:
            return
        with self._lock:
            allocated = self.allocated() + amount
            cap = self.config.max_utilization
            if cap is not None and (self._assets <= 0 or allocated / self._assets > cap):
                raise InsufficientLiquidityError(
                    f"allocation of {amount} would exceed max utilization {cap}",
                    market_id=market_id, allocated=allocated, assets=self._assets,
                )
            self._allocated[market_id] = self._allocated.get(market_id, ZERO) + amount

    def deallocate(self, caller: str, market_id: int, amount: Decimal) -> None:
        """Release reserved capital (bounded by what the market holds)."""
        self.access.require(caller, ROLE_ALLOCATOR, "deallocate")
        amount = fp(amount)
        if amount <= 0:
            return
        with self._lock:
            held = self._allocated.get(market_id, ZERO)
            self._allocated[market_id] = held - min(amount, held)

    def credit_fees(self, caller: str, market_id: int, amount: Decimal) -> None:
        """Add borrow fees or the pool's share of a liquidation penalty."""
        self.access.require(caller, ROLE_ALLOCATOR, "credit_fees")
        amount = fp(amount)
        if amount <= 0:
            return
        with self._lock:
            self._assets += amount
            self.fees_earned += amount

    def cover_bad_debt(self, caller: str, market_id: int, amount: Decimal) -> Decimal:
        """
        Write off unrecoverable trader debt against pool assets.

        Returns:
            Amount covered (bounded by total assets)
        """
        self.access.require(caller, ROLE_ALLOCATOR, "cover_bad_debt")
        amount = fp(amount)
        if amount <= 0:
            return ZERO
        with self._lock:
            covered = min(amount, max(self._assets, ZERO))
            self._assets -= covered
            self.bad_debt_absorbed += covered
        self.logger.solvency("SOCIALIZED", market_id, covered, requested=amount,
                             share_price=self.share_price())
        if covered < amount:
            self.logger.panic(f"Pool cannot absorb bad debt on market {market_id}: "
                              f"requested={amount} covered={covered}")
        return covered

    def realize_trader_pnl(self, caller: str, market_id: int, pnl: Decimal) -> Decimal:
        """
        Settle a trader's realized PnL against the pool.

        Args:
            pnl: Trader-signed amount (positive = pool pays the trader,
                negative = trader loss received by the pool)

        Returns:
            The amount applied
        """
        self.access.require(caller, ROLE_ALLOCATOR, "realize_trader_pnl")
        pnl = fp(pnl)
        with self._lock:
            self._assets -= pnl
            self.trader_pnl_paid += pnl
            insolvent = self._assets < 0
        if insolvent:
            self.logger.panic(f"Pool assets negative after paying {pnl} on market {market_id}")
        return pnl

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def total_assets(self) -> Decimal:
        with self._lock:
            return self._assets

    def allocated(self, market_id: Optional[int] = None) -> Decimal:
        with self._lock:
            if market_id is not None:
                return self._allocated.get(market_id, ZERO)
            return sum(self._allocated.values(), ZERO)

    def utilization(self) -> Decimal:
        """allocated / total_assets; full when the pool has no assets but holds allocations."""
        with self._lock:
            allocated = self.allocated()
            if allocated == 0:
                return ZERO
            if self._assets <= 0:
                return UTILIZATION_FULL
            return wdiv(allocated, self._assets)

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "total_assets": str(self._assets),
                "total_shares": str(self._total_shares),
                "share_price": str(self.share_price()),
                "allocated": str(self.allocated()),
                "utilization": str(self.utilization()),
                "fees_earned": str(self.fees_earned),
                "bad_debt_absorbed": str(self.bad_debt_absorbed),
            }
