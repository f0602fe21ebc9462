"""
Trading router.

The caller-facing entry point for position changes. Every call follows the
same flow:

    1. validate market state and require a fresh PI
    2. quote the fill on the virtual execution market and enforce the
       caller's slippage bound
    3. accrue fee indices (before OI moves)
    4. check initial margin against PI
    5. reserve pool capital, mutate the ledger, commit the vAMM fill
    6. settle PnL and fees with the capital pool

Anything that fails before step 5 leaves all state untouched apart from
fee accrual, which is time-driven.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from .core.errors import (
    InvalidSizeError,
    LeverError,
    MarketInactiveError,
    PositionNotFoundError,
    SlippageExceededError,
)
from .core.types import (
    LiquidationResult,
    LiquidationStage,
    Position,
    PositionAction,
    PositionChange,
    Quote,
    Side,
    TradeResult,
)
from .fees.accrual import accrue_indices
from .pool.capital_pool import payout_liability
from .utils.clock import Clock, system_clock
from .utils.fixed_point import ZERO, fp, quantize
from .utils.logger import get_logger

if TYPE_CHECKING:
    from .core.ledger import PositionLedger
    from .fees.borrow import BorrowFeeEngine
    from .fees.funding import FundingEngine
    from .pool.capital_pool import CapitalPool
    from .pricing.price_index import ProbabilityIndexEngine
    from .pricing.vamm import VirtualExecutionMarket
    from .risk.liquidation import LiquidationEngine
    from .risk.margin import MarginEngine


class TradingRouter:
    """
    Opens, increases, decreases and closes positions for traders.

    `identity` is the caller presented to the ledger, vAMM, fee engines and
    pool; the trader is identified per call.
    """

    def __init__(
        self,
        identity: str,
        ledger: "PositionLedger",
        price_index: "ProbabilityIndexEngine",
        vamm: "VirtualExecutionMarket",
        borrow: "BorrowFeeEngine",
        funding: "FundingEngine",
        margin: "MarginEngine",
        pool: "CapitalPool",
        liquidation: "LiquidationEngine",
        clock: Clock = system_clock,
    ):
        self.identity = identity
        self._ledger = ledger
        self._price_index = price_index
        self._vamm = vamm
        self._borrow = borrow
        self._funding = funding
        self._margin = margin
        self._pool = pool
        self._liquidation = liquidation
        self._clock = clock
        self.logger = get_logger()

    # ─────────────────────────────────────────────────────────────────────
    # Open / increase
    # ─────────────────────────────────────────────────────────────────────

    def open_position(
        self,
        trader: str,
        market_id: int,
        side: Side,
        size: Decimal,
        collateral: Decimal,
        max_price: Optional[Decimal] = None,
        min_price: Optional[Decimal] = None,
    ) -> TradeResult:
        """
        Open a position, or add to an existing same-side one.

        Args:
            trader: Trader identity
            market_id: Market identifier
            side: LONG or SHORT
            size: Shares to add (> 0)
            collateral: Collateral posted with this trade (>= 0)
            max_price: Worst acceptable execution price for a long
            min_price: Worst acceptable execution price for a short

        Returns:
            TradeResult with the updated position

        Raises:
            InvalidSizeError, MarketInactiveError, StalePriceError,
            SlippageExceededError, InsufficientMarginError,
            OICapExceededError, InsufficientLiquidityError
        """
        size = fp(size)
        collateral = fp(collateral)
        if size <= 0:
            raise InvalidSizeError(f"size must be positive, got {size}", market_id=market_id)
        if collateral < 0:
            raise InvalidSizeError(f"collateral must be >= 0, got {collateral}", market_id=market_id)

        self._require_tradable(market_id)
        mark = self._margin.mark_price(market_id)

        quote = self._vamm.quote(market_id, side, size)
        self._check_slippage(quote, max_price if side == Side.LONG else None,
                             min_price if side == Side.SHORT else None)

        indices = accrue_indices(self.identity, market_id, self._borrow, self._funding)

        existing = self._ledger.get_position(trader, market_id)
        if existing is not None and existing.side != side:
            raise InvalidSizeError(
                f"{trader} holds a {existing.side.value} on market {market_id}; "
                f"reduce it before opening {side.value}",
                market_id=market_id,
            )

        # Equity after the fill, marked at PI
        fill_pnl = (mark - quote.execution_price) * size * side.sign
        equity_after = collateral + fill_pnl
        notional_after = size
        if existing is not None:
            equity_after += self._margin.equity(existing, mark)
            notional_after += existing.notional
        self._margin.check_initial_margin(market_id, notional_after, quantize(equity_after))

        liability = payout_liability(size * side.sign, quote.execution_price)
        self._pool.allocate(self.identity, market_id, liability)
        try:
            position, settlement = self._ledger.open(
                self.identity, trader, market_id, size * side.sign, collateral,
                quote.execution_price, indices,
            )
        except LeverError:
            self._pool.deallocate(self.identity, market_id, liability)
            raise

        self._vamm.execute(self.identity, market_id, side, size)
        self._pool.credit_fees(self.identity, market_id, settlement.borrow_fee)

        action = PositionAction.INCREASED if existing is not None else PositionAction.OPENED
        return TradeResult(
            action=action,
            position=position,
            execution_price=quote.execution_price,
            mark_price=mark,
            quote=quote,
            settlement=settlement,
        )

    def increase_position(
        self,
        trader: str,
        market_id: int,
        size: Decimal,
        collateral: Decimal = ZERO,
        max_price: Optional[Decimal] = None,
        min_price: Optional[Decimal] = None,
    ) -> TradeResult:
        """Add size (and optionally collateral) to an existing position."""
        existing = self._require_position(trader, market_id)
        return self.open_position(trader, market_id, existing.side, size, collateral,
                                  max_price=max_price, min_price=min_price)

    # ─────────────────────────────────────────────────────────────────────
    # Decrease / close
    # ─────────────────────────────────────────────────────────────────────

    def decrease_position(
        self,
        trader: str,
        market_id: int,
        size: Decimal,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
    ) -> TradeResult:
        """
        Reduce a position by `size` shares at the vAMM execution price.

        Args:
            min_price: Worst acceptable exit price when selling a long
            max_price: Worst acceptable exit price when buying back a short

        Returns:
            TradeResult; payout is the collateral released to the trader
        """
        size = fp(size)
        position = self._require_position(trader, market_id)
        if size <= 0 or size > position.notional:
            raise InvalidSizeError(
                f"size must be in (0, {position.notional}], got {size}", market_id=market_id,
            )

        mark = self._margin.mark_price(market_id)
        resolved = self._price_index.is_resolved(market_id)
        if resolved:
            # Resolved markets settle at the outcome
            quote = None
            exit_price = mark
        else:
            quote = self._vamm.quote(market_id, position.side.opposite(), size)
            self._check_slippage(quote, max_price if position.side == Side.SHORT else None,
                                 min_price if position.side == Side.LONG else None)
            exit_price = quote.execution_price

        indices = accrue_indices(self.identity, market_id, self._borrow, self._funding)
        change = self._ledger.decrease(self.identity, trader, market_id, size, exit_price, indices)
        if quote is not None:
            self._vamm.execute(self.identity, market_id, position.side.opposite(), size)

        self._settle_reduction(position, size, change)
        if change.deficit > 0:
            self._absorb_deficit(position, change, indices, mark)

        return TradeResult(
            action=change.action,
            position=change.position,
            execution_price=exit_price,
            mark_price=mark,
            quote=quote,
            realized_pnl=change.realized_pnl,
            payout=change.collateral_released,
            settlement=change.settlement,
        )

    def close_position(
        self,
        trader: str,
        market_id: int,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
    ) -> TradeResult:
        """Close the whole position."""
        position = self._require_position(trader, market_id)
        return self.decrease_position(trader, market_id, position.notional,
                                      min_price=min_price, max_price=max_price)

    # ─────────────────────────────────────────────────────────────────────
    # Collateral
    # ─────────────────────────────────────────────────────────────────────

    def add_collateral(self, trader: str, market_id: int, amount: Decimal) -> Position:
        before = self._require_position(trader, market_id)
        self._margin.mark_price(market_id)
        indices = accrue_indices(self.identity, market_id, self._borrow, self._funding)
        position = self._ledger.add_collateral(self.identity, trader, market_id, amount, indices)
        self._credit_settled_borrow(before, position)
        return position

    def withdraw_collateral(self, trader: str, market_id: int, amount: Decimal) -> Position:
        """
        Withdraw collateral if the position still meets initial margin.

        Raises:
            InsufficientMarginError: If equity after withdrawal < IM
        """
        position = self._require_position(trader, market_id)
        mark = self._margin.mark_price(market_id)
        indices = accrue_indices(self.identity, market_id, self._borrow, self._funding)
        equity_after = self._margin.equity(position, mark) - fp(amount)
        self._margin.check_initial_margin(market_id, position.notional, equity_after)
        updated = self._ledger.withdraw_collateral(self.identity, trader, market_id, amount, indices)
        self._credit_settled_borrow(position, updated)
        return updated

    # ─────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────

    def _require_tradable(self, market_id: int) -> None:
        market = self._ledger.get_market(market_id)
        if market.resolved or self._price_index.is_resolved(market_id):
            raise MarketInactiveError(f"Market {market_id} is resolved", market_id=market_id)
        if not market.active:
            raise MarketInactiveError(f"Market {market_id} is paused", market_id=market_id)
        if self._price_index.is_expired(market_id):
            raise MarketInactiveError(f"Market {market_id} has passed its resolution time", market_id=market_id)

    def _require_position(self, trader: str, market_id: int) -> Position:
        position = self._ledger.get_position(trader, market_id)
        if position is None:
            raise PositionNotFoundError(
                f"No open position for {trader} on market {market_id}",
                trader=trader, market_id=market_id,
            )
        return position

    def _check_slippage(self, quote: Quote, max_price: Optional[Decimal], min_price: Optional[Decimal]) -> None:
        if max_price is not None and quote.execution_price > fp(max_price):
            self.logger.risk("REJECTED", "slippage bound exceeded", market=quote.market_id,
                             price=quote.execution_price, max_price=max_price)
            raise SlippageExceededError(
                f"execution price {quote.execution_price} above max_price {max_price}",
                market_id=quote.market_id, execution_price=quote.execution_price,
            )
        if min_price is not None and quote.execution_price < fp(min_price):
            self.logger.risk("REJECTED", "slippage bound exceeded", market=quote.market_id,
                             price=quote.execution_price, min_price=min_price)
            raise SlippageExceededError(
                f"execution price {quote.execution_price} below min_price {min_price}",
                market_id=quote.market_id, execution_price=quote.execution_price,
            )

    def _settle_reduction(self, position: Position, size: Decimal, change: PositionChange) -> None:
        market_id = position.market_id
        self._pool.realize_trader_pnl(self.identity, market_id, change.realized_pnl)
        self._pool.credit_fees(self.identity, market_id, change.settlement.borrow_fee)
        self._pool.deallocate(
            self.identity, market_id, payout_liability(size * position.side.sign, position.entry_price),
        )

    def _credit_settled_borrow(self, before: Position, after: Position) -> None:
        fee = after.borrow_fees_paid - before.borrow_fees_paid
        self._pool.credit_fees(self.identity, after.market_id, fee)

    def _absorb_deficit(self, position: Position, change: PositionChange, indices, mark: Decimal) -> None:
        result = LiquidationResult(
            trader=position.trader,
            market_id=position.market_id,
            liquidator=self.identity,
            timestamp=self._clock(),
            mark_price=mark,
            stage=LiquidationStage.FULL,
            size_closed=-change.size_delta * position.side.sign,
            collateral_before=position.collateral,
            realized_pnl=change.realized_pnl,
        )
        self._liquidation.absorb_bad_debt(position.market_id, position.side, change.deficit,
                                          indices, mark, result)
