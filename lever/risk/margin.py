"""
Margin engine.

Read-only solvency math, always evaluated against PI (never the execution
price):

    equity = collateral - fee_debt + (PI - entry) x size
             - pending_borrow - pending_funding
    IM     = notional / max_leverage x (1 + alpha_vol x sigma)
    MM     = maintenance_margin_ratio x notional

A position is liquidatable when equity <= MM x (1 - buffer). Any
computation on a stale PI is rejected.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from ..config.config import MarginConfig
from ..core.errors import InsufficientMarginError, PositionNotFoundError
from ..core.types import Position, PositionHealth
from ..utils.fixed_point import ONE, ZERO, clamp_probability, quantize, quantize_up, wdiv
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..core.ledger import PositionLedger
    from ..fees.borrow import BorrowFeeEngine
    from ..fees.funding import FundingEngine
    from ..pricing.price_index import ProbabilityIndexEngine


class MarginEngine:
    """Equity, margin requirements and liquidation checks."""

    def __init__(
        self,
        ledger: "PositionLedger",
        price_index: "ProbabilityIndexEngine",
        borrow: "BorrowFeeEngine",
        funding: "FundingEngine",
        config: MarginConfig | None = None,
        max_price_age_seconds: Optional[int] = None,
    ):
        self.config = config or MarginConfig()
        self._ledger = ledger
        self._price_index = price_index
        self._borrow = borrow
        self._funding = funding
        self._max_price_age = max_price_age_seconds
        self.logger = get_logger()

    # ─────────────────────────────────────────────────────────────────────
    # Requirements
    # ─────────────────────────────────────────────────────────────────────

    def initial_margin(self, notional: Decimal, volatility: Decimal = ZERO) -> Decimal:
        """Collateral required to open `notional` shares at volatility sigma."""
        base = abs(notional) / self.config.max_leverage
        return quantize_up(base * (ONE + self.config.volatility_margin_factor * volatility))

    def maintenance_margin(self, notional: Decimal) -> Decimal:
        return quantize_up(self.config.maintenance_margin_ratio * abs(notional))

    def liquidation_threshold(self, notional: Decimal) -> Decimal:
        """MM x (1 - buffer)."""
        return quantize(self.maintenance_margin(notional) * (ONE - self.config.liquidation_buffer))

    # ─────────────────────────────────────────────────────────────────────
    # Position evaluation
    # ─────────────────────────────────────────────────────────────────────

    def mark_price(self, market_id: int) -> Decimal:
        """PI, rejecting stale prices."""
        return self._price_index.require_fresh(market_id, self._max_price_age)

    def equity(self, position: Position, mark_price: Optional[Decimal] = None) -> Decimal:
        """
        Position equity against PI, net of fee debt and pending fees.

        Args:
            position: Position snapshot
            mark_price: PI to evaluate at (defaults to current, fresh PI)
        """
        return self.evaluate(position, mark_price).equity

    def evaluate(self, position: Position, mark_price: Optional[Decimal] = None) -> PositionHealth:
        """Full margin snapshot of a position."""
        price = self.mark_price(position.market_id) if mark_price is None else mark_price
        pending_borrow = self._borrow.pending_fee(position)
        pending_funding = self._funding.pending_funding(position)
        pnl = quantize(position.unrealized_pnl(price))
        equity = quantize(position.collateral - position.fee_debt + pnl - pending_borrow - pending_funding)

        volatility = self._price_index.get_volatility(position.market_id)
        mm = self.maintenance_margin(position.notional)
        threshold = self.liquidation_threshold(position.notional)
        liquidatable = equity <= threshold
        return PositionHealth(
            trader=position.trader,
            market_id=position.market_id,
            mark_price=price,
            equity=equity,
            initial_margin=self.initial_margin(position.notional, volatility),
            maintenance_margin=mm,
            liquidation_threshold=threshold,
            unrealized_pnl=pnl,
            pending_borrow_fee=pending_borrow,
            pending_funding=pending_funding,
            liquidatable=liquidatable,
            shortfall=max(ZERO, mm - equity),
        )

    def health(self, trader: str, market_id: int) -> PositionHealth:
        """
        Margin snapshot of a trader's position.

        Raises:
            PositionNotFoundError: If the trader has no position
            StalePriceError: If PI is stale
        """
        return self.evaluate(self._require_position(trader, market_id))

    def is_liquidatable(self, trader: str, market_id: int) -> tuple[bool, Decimal]:
        """
        Returns:
            Tuple of (liquidatable, shortfall) where shortfall = max(0, MM - equity)
        """
        health = self.health(trader, market_id)
        return health.liquidatable, health.shortfall

    def check_initial_margin(self, market_id: int, notional: Decimal, equity: Decimal) -> Decimal:
        """
        Require equity to cover IM for the resulting notional.

        Returns:
            The initial margin requirement

        Raises:
            InsufficientMarginError: If equity < IM
        """
        required = self.initial_margin(notional, self._price_index.get_volatility(market_id))
        if equity < required:
            self.logger.risk("BLOCKED", "insufficient initial margin",
                             market=market_id, notional=notional, equity=equity, required=required)
            raise InsufficientMarginError(
                f"equity {equity} below initial margin {required} for notional {notional}",
                market_id=market_id, required=required, equity=equity,
            )
        return required

    def liquidation_price(self, position: Position) -> Optional[Decimal]:
        """
        Estimated PI at which the position becomes liquidatable, holding
        pending fees constant.

        Returns:
            Price in [0, 1], or None if no price in range triggers liquidation
        """
        pending = self._borrow.pending_fee(position) + self._funding.pending_funding(position)
        base = position.collateral - position.fee_debt - pending
        threshold = self.liquidation_threshold(position.notional)
        # base + (P - entry) x size = threshold
        price = position.entry_price + wdiv(threshold - base, position.size)
        if position.size > 0 and price < 0:
            return None
        if position.size < 0 and price > 1:
            return None
        return clamp_probability(price)

    def _require_position(self, trader: str, market_id: int) -> Position:
        position = self._ledger.get_position(trader, market_id)
        if position is None:
            raise PositionNotFoundError(
                f"No open position for {trader} on market {market_id}",
                trader=trader, market_id=market_id,
            )
        return position
