"""
Funding engine.

Pushes the book toward balance by charging the heavier side and paying
the lighter one:

    rate = clamp(max_rate x (L - S) / threshold, -max_rate, max_rate)

per period. Positive rate means longs pay shorts.

Two cumulative indices per market, one per side, keep funding zero-sum
even when OI is lopsided: over an interval the paying side's index rises
by |rate| x dt / period, and the receiving side's index falls by
total_paid / receiving_OI. Debits therefore equal credits. Nothing accrues
while either side is empty.
"""

import threading
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from ..config.config import FundingConfig
from ..config.constants import ROLE_ENGINE, ROLE_KEEPER, ROLE_OWNER
from ..core.access import AccessControl
from ..core.errors import MarketNotFoundError, ValidationError
from ..core.types import FundingState, Position
from ..utils.clock import Clock, seconds_between, system_clock
from ..utils.fixed_point import ZERO, clamp, fp, quantize, quantize_up, to_decimal
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..core.ledger import PositionLedger


def funding_rate(long_oi: Decimal, short_oi: Decimal, max_rate: Decimal, threshold: Decimal) -> Decimal:
    """Signed per-period rate from OI imbalance."""
    if threshold <= 0:
        return ZERO
    raw = max_rate * (long_oi - short_oi) / threshold
    return fp(clamp(raw, -max_rate, max_rate))


class FundingEngine:
    """Per-market per-side cumulative funding indices."""

    def __init__(
        self,
        owner: str,
        ledger: "PositionLedger",
        config: FundingConfig | None = None,
        clock: Clock = system_clock,
        keepers: Iterable[str] = (),
        engines: Iterable[str] = (),
    ):
        self.config = config or FundingConfig()
        self._ledger = ledger
        self._clock = clock
        self.logger = get_logger()
        self.access = AccessControl(
            "funding", owner, {ROLE_KEEPER: keepers, ROLE_ENGINE: engines},
        )

        self._lock = threading.RLock()
        self._states: dict[int, FundingState] = {}

    def create_market(
        self,
        caller: str,
        market_id: int,
        max_rate: Optional[Decimal] = None,
        period_seconds: Optional[int] = None,
        imbalance_threshold: Optional[Decimal] = None,
    ) -> FundingState:
        """Start both indices at zero, with optional per-market parameters."""
        self.access.require(caller, ROLE_OWNER, "create_market")
        state = FundingState(
            long_index=ZERO,
            short_index=ZERO,
            last_update=self._clock(),
            max_rate=to_decimal(max_rate if max_rate is not None else self.config.max_rate),
            period_seconds=period_seconds or self.config.period_seconds,
            imbalance_threshold=to_decimal(
                imbalance_threshold if imbalance_threshold is not None else self.config.imbalance_threshold
            ),
        )
        if state.period_seconds <= 0 or state.imbalance_threshold <= 0:
            raise ValidationError(
                "funding period and imbalance threshold must be positive", market_id=market_id,
            )
        with self._lock:
            if market_id in self._states:
                raise ValidationError(f"Funding state for market {market_id} already exists", market_id=market_id)
            self._states[market_id] = state
            return state.snapshot()

    def get_current_rate(self, market_id: int) -> Decimal:
        """Rate implied by the ledger's OI right now."""
        market = self._ledger.get_market(market_id)
        with self._lock:
            state = self._require_state(market_id)
            return funding_rate(market.total_long_oi, market.total_short_oi,
                                state.max_rate, state.imbalance_threshold)

    def accrue(self, caller: str, market_id: int) -> FundingState:
        """Advance both indices to now using current OI."""
        if not self.access.is_allowed(caller, ROLE_ENGINE):
            self.access.require(caller, ROLE_KEEPER, "accrue")
        market = self._ledger.get_market(market_id)
        with self._lock:
            state = self._require_state(market_id)
            now = self._clock()
            long_delta, short_delta, rate = self._deltas(
                state, market.total_long_oi, market.total_short_oi, now,
            )
            state.long_index += long_delta
            state.short_index += short_delta
            state.last_rate = rate
            state.last_update = now
            return state.snapshot()

    def _deltas(self, state: FundingState, long_oi: Decimal, short_oi: Decimal, now) -> tuple:
        """Index increments (long, short) and the rate for the interval ending now."""
        rate = funding_rate(long_oi, short_oi, state.max_rate, state.imbalance_threshold)
        elapsed = to_decimal(max(0.0, seconds_between(state.last_update, now)))
        if elapsed <= 0 or rate == 0 or long_oi <= 0 or short_oi <= 0:
            return ZERO, ZERO, rate

        per_share = abs(rate) * elapsed / Decimal(state.period_seconds)
        if rate > 0:
            paid = quantize_up(per_share)
            credit = quantize(paid * long_oi / short_oi)
            return paid, -credit, rate
        paid = quantize_up(per_share)
        credit = quantize(paid * short_oi / long_oi)
        return -credit, paid, rate

    def current_indices(self, market_id: int) -> tuple[Decimal, Decimal]:
        """(long_index, short_index) projected to now (no mutation)."""
        market = self._ledger.get_market(market_id)
        with self._lock:
            state = self._require_state(market_id)
            long_delta, short_delta, _ = self._deltas(
                state, market.total_long_oi, market.total_short_oi, self._clock(),
            )
            return state.long_index + long_delta, state.short_index + short_delta

    def pending_funding(self, position: Position) -> Decimal:
        """Funding owed (positive) or receivable (negative) since last settlement."""
        long_index, short_index = self.current_indices(position.market_id)
        index = long_index if position.size > 0 else short_index
        raw = position.notional * (index - position.funding_index_at_open)
        return quantize_up(raw) if raw > 0 else quantize(raw)

    def get_state(self, market_id: int) -> FundingState:
        with self._lock:
            return self._require_state(market_id).snapshot()

    def _require_state(self, market_id: int) -> FundingState:
        state = self._states.get(market_id)
        if state is None:
            raise MarketNotFoundError(f"No funding state for market {market_id}", market_id=market_id)
        return state
