"""
Core types for the risk engine.

Provides all shared types, enums, state records and results:
- Position, Market: Ledger-owned records
- PriceConfig, PriceState: Probability Index state (PI engine owned)
- ExecutionPool, Quote: Virtual execution market
- BorrowState, FundingState: Fee engine state
- IndexSnapshot, Settlement: Lazy fee settlement contract
- PositionHealth, LiquidationResult: Margin and liquidation results

Type design principles:
- Mutable records are owned by exactly one component; everyone else gets
  copies via snapshot()
- All monetary and probability values are 18-decimal fixed-point Decimals
- Serializable (to_dict methods, Decimals rendered as strings)
"""

import copy
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

ZERO = Decimal(0)
ONE = Decimal(1)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class Side(str, Enum):
    """Position side / trade direction."""
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_size(cls, size: Decimal) -> "Side":
        return cls.LONG if size > 0 else cls.SHORT

    @property
    def sign(self) -> int:
        return 1 if self == Side.LONG else -1

    def opposite(self) -> "Side":
        return Side.SHORT if self == Side.LONG else Side.LONG


class LiquidationStage(str, Enum):
    """
    Liquidation state machine stages.

    HEALTHY -> PARTIAL -> (healthy again) or FULL (position closed)
    """
    HEALTHY = "healthy"
    PARTIAL = "partial"
    FULL = "full"


class PositionAction(str, Enum):
    """Ledger mutation kinds (used for logging and results)."""
    OPENED = "OPENED"
    INCREASED = "INCREASED"
    DECREASED = "DECREASED"
    CLOSED = "CLOSED"
    LIQUIDATED = "LIQUIDATED"
    DELEVERAGED = "DELEVERAGED"
    COLLATERAL_ADDED = "COLLATERAL_ADDED"
    COLLATERAL_WITHDRAWN = "COLLATERAL_WITHDRAWN"


# ─────────────────────────────────────────────────────────────────────────────
# Position & Market
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Position:
    """
    A trader's exposure on one market.

    size is signed (positive = long). Notional is |size| in outcome shares;
    each share settles to at most 1 unit of collateral.

    fee_debt holds fees settled beyond available collateral so that
    collateral never goes negative; equity subtracts it.

    borrow_index_at_open is the entry index B_entry, reset only when size
    is added. borrow_index_settled is the index fees have been charged up
    to; each settlement charges |size| x (B_now - B_settled) / B_entry so
    settlements telescope to |size| x (B_now / B_entry - 1).
    """
    position_id: str
    trader: str
    market_id: int
    size: Decimal
    collateral: Decimal
    entry_price: Decimal
    open_time: datetime
    last_update: datetime
    borrow_index_at_open: Decimal
    borrow_index_settled: Decimal
    funding_index_at_open: Decimal
    fee_debt: Decimal = ZERO
    borrow_fees_paid: Decimal = ZERO
    funding_paid: Decimal = ZERO

    @property
    def side(self) -> Side:
        return Side.from_size(self.size)

    @property
    def notional(self) -> Decimal:
        return abs(self.size)

    @property
    def is_open(self) -> bool:
        return self.size != 0

    def unrealized_pnl(self, mark_price: Decimal) -> Decimal:
        """(mark - entry) x signed size."""
        return (mark_price - self.entry_price) * self.size

    def snapshot(self) -> "Position":
        """Detached copy for read-only consumers."""
        return copy.copy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "trader": self.trader,
            "market_id": self.market_id,
            "side": self.side.value if self.is_open else None,
            "size": str(self.size),
            "collateral": str(self.collateral),
            "entry_price": str(self.entry_price),
            "open_time": _iso(self.open_time),
            "last_update": _iso(self.last_update),
            "borrow_index_at_open": str(self.borrow_index_at_open),
            "borrow_index_settled": str(self.borrow_index_settled),
            "funding_index_at_open": str(self.funding_index_at_open),
            "fee_debt": str(self.fee_debt),
            "borrow_fees_paid": str(self.borrow_fees_paid),
            "funding_paid": str(self.funding_paid),
        }


@dataclass
class Market:
    """
    Per-market aggregates and caps. Ledger owned.

    total_long_oi / total_short_oi move only in lockstep with position
    size deltas.
    """
    market_id: int
    name: str
    max_oi: Decimal
    max_side_oi: Optional[Decimal] = None
    max_trader_oi: Optional[Decimal] = None
    total_long_oi: Decimal = ZERO
    total_short_oi: Decimal = ZERO
    active: bool = True
    resolution_time: Optional[datetime] = None
    resolved: bool = False
    outcome: Optional[Decimal] = None

    @property
    def total_oi(self) -> Decimal:
        return self.total_long_oi + self.total_short_oi

    @property
    def imbalance(self) -> Decimal:
        """Signed OI imbalance (long - short)."""
        return self.total_long_oi - self.total_short_oi

    def side_oi(self, side: Side) -> Decimal:
        return self.total_long_oi if side == Side.LONG else self.total_short_oi

    def snapshot(self) -> "Market":
        return copy.copy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "name": self.name,
            "max_oi": str(self.max_oi),
            "max_side_oi": _str(self.max_side_oi),
            "max_trader_oi": _str(self.max_trader_oi),
            "total_long_oi": str(self.total_long_oi),
            "total_short_oi": str(self.total_short_oi),
            "active": self.active,
            "resolution_time": _iso(self.resolution_time),
            "resolved": self.resolved,
            "outcome": _str(self.outcome),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Probability Index
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class PriceConfig:
    """Per-market feed validation gates and smoothing parameters."""
    alpha: Decimal
    max_spread_bps: Decimal
    max_tick_movement: Decimal
    min_liquidity_depth: Decimal
    max_horizon_seconds: int
    volatility_window: int
    resolution_time: Optional[datetime] = None
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alpha": str(self.alpha),
            "max_spread_bps": str(self.max_spread_bps),
            "max_tick_movement": str(self.max_tick_movement),
            "min_liquidity_depth": str(self.min_liquidity_depth),
            "max_horizon_seconds": self.max_horizon_seconds,
            "volatility_window": self.volatility_window,
            "resolution_time": _iso(self.resolution_time),
            "active": self.active,
        }


@dataclass
class PriceState:
    """
    Raw and smoothed price for one market. PI engine owned.

    history holds the most recent accepted raw price changes used for
    the rolling volatility estimate.
    """
    raw_price: Decimal
    smoothed_price: Decimal
    volatility: Decimal
    last_update: datetime
    history: deque = field(default_factory=deque)
    resolved: bool = False
    update_count: int = 0

    def snapshot(self) -> "PriceState":
        clone = copy.copy(self)
        clone.history = deque(self.history, maxlen=self.history.maxlen)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_price": str(self.raw_price),
            "smoothed_price": str(self.smoothed_price),
            "volatility": str(self.volatility),
            "last_update": _iso(self.last_update),
            "resolved": self.resolved,
            "update_count": self.update_count,
        }


@dataclass(frozen=True)
class Rejection:
    """Rejected feed update record."""
    market_id: int
    code: str
    reason: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "code": self.code,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class IngestResult:
    """Result of a feed update: accepted with new state, or rejected."""
    market_id: int
    accepted: bool
    state: Optional[PriceState] = None
    rejection: Optional[Rejection] = None

    @property
    def mark_price(self) -> Optional[Decimal]:
        return self.state.smoothed_price if self.state else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "accepted": self.accepted,
            "state": self.state.to_dict() if self.state else None,
            "rejection": self.rejection.to_dict() if self.rejection else None,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Virtual Execution Market
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ExecutionPool:
    """Virtual constant-product reserves. Holds no real capital."""
    quote_reserve: Decimal
    base_reserve: Decimal
    k: Decimal
    last_recenter_price: Decimal
    last_recenter_time: datetime

    @property
    def spot_price(self) -> Decimal:
        return self.quote_reserve / self.base_reserve

    def snapshot(self) -> "ExecutionPool":
        return copy.copy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quote_reserve": str(self.quote_reserve),
            "base_reserve": str(self.base_reserve),
            "k": str(self.k),
            "last_recenter_price": str(self.last_recenter_price),
            "last_recenter_time": _iso(self.last_recenter_time),
        }


@dataclass(frozen=True)
class Quote:
    """
    Execution quote for a trade of `size` shares.

    Long: amount_in is quote paid, amount_out is shares received.
    Short: amount_in is shares sold, amount_out is quote received.
    """
    market_id: int
    direction: Side
    size: Decimal
    amount_in: Decimal
    amount_out: Decimal
    execution_price: Decimal
    spot_price: Decimal
    price_impact_bps: Decimal
    spread_bps: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "direction": self.direction.value,
            "size": str(self.size),
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out),
            "execution_price": str(self.execution_price),
            "spot_price": str(self.spot_price),
            "price_impact_bps": str(self.price_impact_bps),
            "spread_bps": str(self.spread_bps),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Fee State
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BorrowMultipliers:
    """The five borrow-rate risk multipliers."""
    utilization: Decimal = ONE
    imbalance: Decimal = ONE
    volatility: Decimal = ONE
    time_to_resolution: Decimal = ONE
    concentration: Decimal = ONE

    @property
    def product(self) -> Decimal:
        return (
            self.utilization * self.imbalance * self.volatility
            * self.time_to_resolution * self.concentration
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "utilization": str(self.utilization),
            "imbalance": str(self.imbalance),
            "volatility": str(self.volatility),
            "time_to_resolution": str(self.time_to_resolution),
            "concentration": str(self.concentration),
        }


@dataclass
class BorrowState:
    """Per-market continuously compounding borrow index. Starts at 1.0."""
    index: Decimal
    last_update: datetime
    smoothed_rate: Decimal
    last_raw_rate: Decimal
    multipliers: BorrowMultipliers = field(default_factory=BorrowMultipliers)

    def snapshot(self) -> "BorrowState":
        return copy.copy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": str(self.index),
            "last_update": _iso(self.last_update),
            "smoothed_rate": str(self.smoothed_rate),
            "last_raw_rate": str(self.last_raw_rate),
            "multipliers": self.multipliers.to_dict(),
        }


@dataclass
class FundingState:
    """
    Per-market cumulative funding indices, one per side.

    Index units are collateral per share; a position owes
    |size| x (index_now - index_at_open) for its side (negative = receives).
    """
    long_index: Decimal
    short_index: Decimal
    last_update: datetime
    max_rate: Decimal
    period_seconds: int
    imbalance_threshold: Decimal
    last_rate: Decimal = ZERO

    def snapshot(self) -> "FundingState":
        return copy.copy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "long_index": str(self.long_index),
            "short_index": str(self.short_index),
            "last_update": _iso(self.last_update),
            "max_rate": str(self.max_rate),
            "period_seconds": self.period_seconds,
            "imbalance_threshold": str(self.imbalance_threshold),
            "last_rate": str(self.last_rate),
        }


@dataclass(frozen=True)
class IndexSnapshot:
    """
    Current fee indices for one market, handed to the ledger.

    The ledger never reads fee engines directly; callers accrue the
    engines first and pass the resulting indices in.
    """
    borrow_index: Decimal
    long_funding_index: Decimal
    short_funding_index: Decimal

    def funding_index_for(self, side: Side) -> Decimal:
        return self.long_funding_index if side == Side.LONG else self.short_funding_index


@dataclass(frozen=True)
class Settlement:
    """Fees applied to a position by one settle_fees call."""
    borrow_fee: Decimal = ZERO
    funding_payment: Decimal = ZERO  # positive = paid, negative = received
    fee_debt_added: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.borrow_fee + self.funding_payment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "borrow_fee": str(self.borrow_fee),
            "funding_payment": str(self.funding_payment),
            "fee_debt_added": str(self.fee_debt_added),
        }


@dataclass(frozen=True)
class PositionChange:
    """
    Result of a ledger mutation that reduces or closes size.

    deficit > 0 means the closed portion lost more than the position's
    collateral could cover (bad debt).
    """
    action: PositionAction
    position: Position
    size_delta: Decimal
    price: Decimal
    realized_pnl: Decimal = ZERO
    deduction: Decimal = ZERO  # liquidation penalty or ADL haircut actually taken
    collateral_released: Decimal = ZERO
    deficit: Decimal = ZERO
    settlement: Settlement = field(default_factory=Settlement)

    @property
    def closed(self) -> bool:
        return not self.position.is_open

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "position": self.position.to_dict(),
            "size_delta": str(self.size_delta),
            "price": str(self.price),
            "realized_pnl": str(self.realized_pnl),
            "deduction": str(self.deduction),
            "collateral_released": str(self.collateral_released),
            "deficit": str(self.deficit),
            "settlement": self.settlement.to_dict(),
            "closed": self.closed,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Margin & Liquidation
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PositionHealth:
    """Margin snapshot of one position, evaluated against PI."""
    trader: str
    market_id: int
    mark_price: Decimal
    equity: Decimal
    initial_margin: Decimal
    maintenance_margin: Decimal
    liquidation_threshold: Decimal
    unrealized_pnl: Decimal
    pending_borrow_fee: Decimal
    pending_funding: Decimal
    liquidatable: bool
    shortfall: Decimal

    @property
    def margin_surplus(self) -> Decimal:
        """Equity in excess of maintenance margin."""
        return self.equity - self.maintenance_margin

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trader": self.trader,
            "market_id": self.market_id,
            "mark_price": str(self.mark_price),
            "equity": str(self.equity),
            "initial_margin": str(self.initial_margin),
            "maintenance_margin": str(self.maintenance_margin),
            "liquidation_threshold": str(self.liquidation_threshold),
            "unrealized_pnl": str(self.unrealized_pnl),
            "pending_borrow_fee": str(self.pending_borrow_fee),
            "pending_funding": str(self.pending_funding),
            "liquidatable": self.liquidatable,
            "shortfall": str(self.shortfall),
            "margin_surplus": str(self.margin_surplus),
        }


@dataclass(frozen=True)
class ADLEvent:
    """One auto-deleveraged counterparty reduction."""
    trader: str
    position_id: str
    size_reduced: Decimal
    realized_pnl: Decimal
    haircut: Decimal
    score: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trader": self.trader,
            "position_id": self.position_id,
            "size_reduced": str(self.size_reduced),
            "realized_pnl": str(self.realized_pnl),
            "haircut": str(self.haircut),
            "score": str(self.score),
        }


@dataclass
class LiquidationResult:
    """
    Computed record of one liquidation call.

    penalty = liquidator_reward + protocol_fee + pool_recovery.
    bad_debt = insurance_covered + adl_covered + socialized_loss.
    """
    trader: str
    market_id: int
    liquidator: str
    timestamp: datetime
    mark_price: Decimal
    stage: LiquidationStage = LiquidationStage.HEALTHY
    size_closed: Decimal = ZERO
    collateral_before: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    penalty: Decimal = ZERO
    liquidator_reward: Decimal = ZERO
    protocol_fee: Decimal = ZERO
    pool_recovery: Decimal = ZERO
    bad_debt: Decimal = ZERO
    insurance_covered: Decimal = ZERO
    adl_covered: Decimal = ZERO
    socialized_loss: Decimal = ZERO
    adl_events: List[ADLEvent] = field(default_factory=list)
    equity_before: Decimal = ZERO
    equity_after: Optional[Decimal] = None

    @property
    def fully_closed(self) -> bool:
        return self.stage == LiquidationStage.FULL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trader": self.trader,
            "market_id": self.market_id,
            "liquidator": self.liquidator,
            "timestamp": _iso(self.timestamp),
            "mark_price": str(self.mark_price),
            "stage": self.stage.value,
            "size_closed": str(self.size_closed),
            "collateral_before": str(self.collateral_before),
            "realized_pnl": str(self.realized_pnl),
            "penalty": str(self.penalty),
            "liquidator_reward": str(self.liquidator_reward),
            "protocol_fee": str(self.protocol_fee),
            "pool_recovery": str(self.pool_recovery),
            "bad_debt": str(self.bad_debt),
            "insurance_covered": str(self.insurance_covered),
            "adl_covered": str(self.adl_covered),
            "socialized_loss": str(self.socialized_loss),
            "adl_events": [e.to_dict() for e in self.adl_events],
            "equity_before": str(self.equity_before),
            "equity_after": _str(self.equity_after),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Router Results
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TradeResult:
    """Outcome of a router open/increase/decrease/close."""
    action: PositionAction
    position: Position
    execution_price: Decimal
    mark_price: Decimal
    quote: Optional[Quote] = None
    realized_pnl: Decimal = ZERO
    payout: Decimal = ZERO
    settlement: Settlement = field(default_factory=Settlement)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "position": self.position.to_dict(),
            "execution_price": str(self.execution_price),
            "mark_price": str(self.mark_price),
            "quote": self.quote.to_dict() if self.quote else None,
            "realized_pnl": str(self.realized_pnl),
            "payout": str(self.payout),
            "settlement": self.settlement.to_dict(),
        }
