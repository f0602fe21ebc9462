"""
Liquidation engine.

State machine per call, all at PI:

    HEALTHY   -> NotLiquidatableError, nothing changes
    PARTIAL   -> close partial_fraction of the position, charge the penalty,
                 re-check; stop here if healthy again
    FULL      -> close the remainder, charge the penalty

Penalty = penalty_rate x closed notional, taken from remaining capital and
split liquidator / protocol (insurance fund) / pool.

Bad debt (a full close whose losses exceed capital) is absorbed in order:
    1. insurance fund
    2. ADL: most profitable opposing positions, ranked by pnl_pct x
       leverage, reduced at PI with their realized profit haircut
    3. capital pool write-off (socialized across LPs)
Each stage is logged distinctly.
"""

import threading
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable

from ..config.config import LiquidationConfig
from ..config.constants import ROLE_LIQUIDATOR
from ..core.access import AccessControl
from ..core.errors import NotLiquidatableError, PositionNotFoundError
from ..core.types import (
    ADLEvent,
    IndexSnapshot,
    LiquidationResult,
    LiquidationStage,
    Position,
    PositionChange,
    Side,
)
from ..fees.accrual import accrue_indices
from ..pool.capital_pool import payout_liability
from ..utils.clock import Clock, system_clock
from ..utils.fixed_point import ONE, ZERO, fp, quantize, quantize_up
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..core.ledger import PositionLedger
    from ..fees.borrow import BorrowFeeEngine
    from ..fees.funding import FundingEngine
    from ..pool.capital_pool import CapitalPool
    from .insurance import InsuranceFund
    from .margin import MarginEngine


class LiquidationEngine:
    """
    Executes liquidations and the bad-debt waterfall.

    `identity` is the caller this engine presents to the ledger, fee
    engines and pool; only members of the liquidator allow-set may call
    liquidate().
    """

    def __init__(
        self,
        owner: str,
        identity: str,
        ledger: "PositionLedger",
        margin: "MarginEngine",
        borrow: "BorrowFeeEngine",
        funding: "FundingEngine",
        pool: "CapitalPool",
        insurance: "InsuranceFund",
        config: LiquidationConfig | None = None,
        clock: Clock = system_clock,
        liquidators: Iterable[str] = (),
    ):
        self.config = config or LiquidationConfig()
        self.identity = identity
        self._ledger = ledger
        self._margin = margin
        self._borrow = borrow
        self._funding = funding
        self._pool = pool
        self._insurance = insurance
        self._clock = clock
        self.logger = get_logger()
        self.access = AccessControl("liquidation", owner, {ROLE_LIQUIDATOR: liquidators})

        self._lock = threading.Lock()
        self._rewards: dict[str, Decimal] = {}
        self._payouts: dict[str, Decimal] = {}
        self.history: list[LiquidationResult] = []

    # ─────────────────────────────────────────────────────────────────────
    # Liquidation
    # ─────────────────────────────────────────────────────────────────────

    def liquidate(self, caller: str, trader: str, market_id: int) -> LiquidationResult:
        """
        Liquidate a trader's position if it is below maintenance.

        Args:
            caller: Authorized liquidator (receives the liquidator reward)
            trader: Position owner
            market_id: Market identifier

        Returns:
            LiquidationResult describing what was closed and how losses
            were absorbed

        Raises:
            AuthorizationError: If caller is not an authorized liquidator
            StalePriceError: If PI is stale
            PositionNotFoundError: If the trader has no position
            NotLiquidatableError: If the position is healthy
        """
        self.access.require(caller, ROLE_LIQUIDATOR, "liquidate")

        position = self._ledger.get_position(trader, market_id)
        if position is None:
            raise PositionNotFoundError(
                f"No open position for {trader} on market {market_id}",
                trader=trader, market_id=market_id,
            )

        # Staleness is checked before any index moves
        mark = self._margin.mark_price(market_id)
        health = self._margin.evaluate(position, mark)
        if not health.liquidatable:
            raise NotLiquidatableError(
                f"Position {position.position_id} is healthy (equity {health.equity} "
                f"> threshold {health.liquidation_threshold})",
                trader=trader, market_id=market_id, equity=health.equity,
            )

        indices = accrue_indices(self.identity, market_id, self._borrow, self._funding)

        result = LiquidationResult(
            trader=trader,
            market_id=market_id,
            liquidator=caller,
            timestamp=self._clock(),
            mark_price=mark,
            collateral_before=position.collateral,
            equity_before=health.equity,
        )
        self.logger.risk("WARNING", "liquidation triggered", trader=trader, market=market_id,
                         equity=health.equity, threshold=health.liquidation_threshold, mark=mark)

        if self.config.partial_fraction < ONE:
            closed = quantize(position.notional * self.config.partial_fraction)
            if 0 < closed < position.notional:
                change = self._close(caller, position, closed, mark, indices, result)
                result.stage = LiquidationStage.PARTIAL
                position = change.position
                after = self._margin.evaluate(position, mark)
                if not after.liquidatable:
                    result.equity_after = after.equity
                    return self._finish(result)

        change = self._close(caller, position, position.notional, mark, indices, result)
        result.stage = LiquidationStage.FULL
        result.equity_after = ZERO
        if change.deficit > 0:
            self.absorb_bad_debt(market_id, position.side, change.deficit, indices, mark, result)
        return self._finish(result)

    def _close(
        self,
        liquidator: str,
        position: Position,
        size: Decimal,
        mark: Decimal,
        indices: IndexSnapshot,
        result: LiquidationResult,
    ) -> PositionChange:
        """Close `size` of the position at PI and distribute the penalty."""
        penalty = quantize(size * self.config.penalty_rate)
        change = self._ledger.liquidate(
            self.identity, position.trader, position.market_id, size, mark, penalty, indices,
        )
        self._book(position, size, change)

        taken = change.deduction
        reward = quantize(taken * self.config.liquidator_share)
        protocol = quantize(taken * self.config.protocol_share)
        pool_share = taken - reward - protocol
        if protocol > 0:
            self._insurance.deposit(protocol)
        self._pool.credit_fees(self.identity, position.market_id, pool_share)
        with self._lock:
            self._rewards[liquidator] = self._rewards.get(liquidator, ZERO) + reward

        result.size_closed += size
        result.realized_pnl += change.realized_pnl
        result.penalty += taken
        result.liquidator_reward += reward
        result.protocol_fee += protocol
        result.pool_recovery += pool_share

        self.logger.position(change.action.value, position.trader, position.market_id,
                             change.size_delta, price=mark, pnl=change.realized_pnl,
                             penalty=taken, deficit=change.deficit)
        return change

    def _book(self, position: Position, size: Decimal, change: PositionChange) -> None:
        """Move PnL, fees, allocation and payouts for a forced reduction."""
        market_id = position.market_id
        self._pool.realize_trader_pnl(self.identity, market_id, change.realized_pnl)
        self._pool.credit_fees(self.identity, market_id, change.settlement.borrow_fee)
        self._pool.deallocate(
            self.identity, market_id, payout_liability(size * position.side.sign, position.entry_price),
        )
        if change.collateral_released > 0:
            with self._lock:
                self._payouts[position.trader] = (
                    self._payouts.get(position.trader, ZERO) + change.collateral_released
                )

    # ─────────────────────────────────────────────────────────────────────
    # Bad debt waterfall
    # ─────────────────────────────────────────────────────────────────────

    def absorb_bad_debt(
        self,
        market_id: int,
        side: Side,
        amount: Decimal,
        indices: IndexSnapshot,
        mark: Decimal,
        result: LiquidationResult,
    ) -> LiquidationResult:
        """
        Run the waterfall for `amount` of bad debt left by a `side` position.

        Fills the bad-debt fields of `result` and returns it.
        """
        result.bad_debt = amount
        self.logger.risk("WARNING", "bad debt", market=market_id, amount=amount)

        remaining = amount - self._insurance.cover(market_id, amount)
        result.insurance_covered = amount - remaining

        if remaining > 0:
            recovered = self._auto_deleverage(market_id, side.opposite(), remaining, indices, mark, result)
            result.adl_covered = recovered
            remaining -= recovered

        if remaining > 0:
            result.socialized_loss = self._pool.cover_bad_debt(self.identity, market_id, remaining)
        return result

    def adl_candidates(self, market_id: int, side: Side, mark: Decimal) -> list[tuple[Decimal, Position]]:
        """
        Profitable positions on `side`, best first by pnl_pct x leverage.

        pnl_pct is unrealized PnL over the position's cost basis; leverage
        is position value at PI over collateral.
        """
        ranked = []
        for position in self._ledger.positions_for_market(market_id):
            if position.side != side:
                continue
            pnl = position.unrealized_pnl(mark)
            if pnl <= 0:
                continue
            cost_per_share = position.entry_price if side == Side.LONG else ONE - position.entry_price
            cost = position.notional * cost_per_share
            value_per_share = mark if side == Side.LONG else ONE - mark
            if cost <= 0 or position.collateral <= 0:
                score = pnl
            else:
                leverage = position.notional * value_per_share / position.collateral
                score = pnl / cost * leverage
            ranked.append((fp(score), position))
        ranked.sort(key=lambda item: (-item[0], item[1].position_id))
        return ranked[: self.config.adl_max_positions]

    def _auto_deleverage(
        self,
        market_id: int,
        side: Side,
        amount: Decimal,
        indices: IndexSnapshot,
        mark: Decimal,
        result: LiquidationResult,
    ) -> Decimal:
        """Reduce profitable opposing positions until `amount` is recovered."""
        remaining = amount
        for score, position in self.adl_candidates(market_id, side, mark):
            if remaining <= 0:
                break
            per_share = (mark - position.entry_price) * side.sign
            size = min(position.notional, quantize_up(remaining / per_share))
            haircut = min(remaining, quantize(per_share * size))

            change = self._ledger.deleverage(
                self.identity, position.trader, market_id, size, mark, haircut, indices,
            )
            self._book(position, size, change)
            taken = change.deduction
            remaining -= taken

            event = ADLEvent(
                trader=position.trader,
                position_id=position.position_id,
                size_reduced=size,
                realized_pnl=change.realized_pnl,
                haircut=taken,
                score=score,
            )
            result.adl_events.append(event)
            self.logger.solvency("ADL", market_id, taken, trader=position.trader,
                                 size=size, score=score, remaining=remaining)
        return amount - remaining

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def _finish(self, result: LiquidationResult) -> LiquidationResult:
        with self._lock:
            self.history.append(result)
        self.logger.risk(
            "ALLOWED", f"liquidation {result.stage.value}",
            trader=result.trader, market=result.market_id, closed=result.size_closed,
            penalty=result.penalty, bad_debt=result.bad_debt,
        )
        return result

    def liquidatable_positions(self, market_id: int) -> list[Position]:
        """Open positions on a market currently below maintenance."""
        mark = self._margin.mark_price(market_id)
        return [
            p for p in self._ledger.positions_for_market(market_id)
            if self._margin.evaluate(p, mark).liquidatable
        ]

    def rewards_of(self, liquidator: str) -> Decimal:
        with self._lock:
            return self._rewards.get(liquidator, ZERO)

    def payouts_of(self, trader: str) -> Decimal:
        """Collateral released to a trader by forced reductions."""
        with self._lock:
            return self._payouts.get(trader, ZERO)
