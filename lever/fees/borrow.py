"""
Borrow fee engine.

Prices leverage by how risky it is for the capital pool, using five
multipliers on a base hourly rate:

    r_raw = min(r_max, r_base x M_util x M_imb x M_vol x M_ttR x M_conc)

The applied rate is smoothed and rate-limited:

    r_h = beta x r_raw + (1 - beta) x r_prev
    r_h <= r_prev x (1 + max_hourly_increase x elapsed_hours)
    r_h in [r_min, r_max]

Accrual uses a continuously compounding per-market index so no position
is ever iterated:

    B(t) = B(t0) x exp(r x (t - t0))
    owed = |size| x (B(t) / B_entry - 1)

accrue() first grows the index with the last-applied rate over the elapsed
interval, then recomputes the rate for the next interval.
"""

import threading
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from ..config.config import BorrowConfig
from ..config.constants import ROLE_ENGINE, ROLE_KEEPER, ROLE_OWNER, UTILIZATION_FULL
from ..core.access import AccessControl
from ..core.errors import MarketNotFoundError, ValidationError
from ..core.types import BorrowMultipliers, BorrowState, Position
from ..utils.clock import Clock, hours_between, system_clock
from ..utils.fixed_point import ONE, ZERO, clamp, fp, quantize, quantize_up, to_decimal, wexp
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..core.ledger import PositionLedger
    from ..pool.capital_pool import CapitalPool
    from ..pricing.price_index import ProbabilityIndexEngine


# ─────────────────────────────────────────────────────────────────────────────
# Multipliers
# ─────────────────────────────────────────────────────────────────────────────

def utilization_multiplier(utilization: Decimal, config: BorrowConfig) -> Decimal:
    """
    M_util: flat below the kink, quadratic up to 100%, linear beyond.
    """
    u = to_decimal(utilization)
    if u <= config.util_kink:
        return ONE
    if u <= UTILIZATION_FULL:
        x = (u - config.util_kink) / (UTILIZATION_FULL - config.util_kink)
        return ONE + config.util_quadratic * x * x
    return ONE + config.util_quadratic + config.util_linear * (u - UTILIZATION_FULL)


def imbalance_multiplier(long_oi: Decimal, short_oi: Decimal, config: BorrowConfig) -> Decimal:
    """M_imb = 1 + c x S^2 with S = |L - S| / (L + S)."""
    total = long_oi + short_oi
    if total <= 0:
        return ONE
    skew = abs(long_oi - short_oi) / total
    return ONE + config.imbalance_coefficient * skew * skew


def volatility_multiplier(volatility: Decimal, config: BorrowConfig) -> Decimal:
    """M_vol = 1 + d x max(0, (sigma - sigma_ref) / sigma_ref)."""
    if config.volatility_reference <= 0:
        return ONE
    excess = max(ZERO, (to_decimal(volatility) - config.volatility_reference) / config.volatility_reference)
    return ONE + config.volatility_coefficient * excess


def time_to_resolution_multiplier(hours: Optional[float], config: BorrowConfig) -> Decimal:
    """
    M_ttR: flat beyond 48h, quadratic from 48h to 12h, linear under 12h.

    Open-ended markets (hours is None) are flat.
    """
    if hours is None:
        return ONE
    h = to_decimal(hours)
    if h >= config.ttr_flat_hours:
        return ONE
    if h >= config.ttr_kink_hours:
        x = (config.ttr_flat_hours - h) / (config.ttr_flat_hours - config.ttr_kink_hours)
        return ONE + config.ttr_quadratic * x * x
    h = max(h, ZERO)
    return ONE + config.ttr_quadratic + config.ttr_linear * (config.ttr_kink_hours - h) / config.ttr_kink_hours


def concentration_multiplier(market_oi: Decimal, global_oi: Decimal, config: BorrowConfig) -> Decimal:
    """M_conc = 1 + g x max(0, market_oi / global_oi - threshold)."""
    if global_oi <= 0:
        return ONE
    excess = max(ZERO, market_oi / global_oi - config.concentration_threshold)
    return ONE + config.concentration_coefficient * excess


def smooth_rate(raw_rate: Decimal, previous: Decimal, elapsed_hours: Decimal, config: BorrowConfig) -> Decimal:
    """
    EMA toward the raw rate, capped in growth per elapsed hour, clamped
    to [min_rate, max_rate].
    """
    smoothed = config.smoothing_beta * raw_rate + (ONE - config.smoothing_beta) * previous
    ceiling = previous * (ONE + config.max_hourly_increase * max(elapsed_hours, ZERO))
    smoothed = min(smoothed, ceiling)
    return fp(clamp(smoothed, config.min_rate, config.max_rate))


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────

class BorrowFeeEngine:
    """
    Per-market borrow index and rate.

    Reads OI from the ledger, volatility and time to resolution from the
    PI engine, and utilization from the capital pool.
    """

    def __init__(
        self,
        owner: str,
        ledger: "PositionLedger",
        price_index: "ProbabilityIndexEngine",
        pool: Optional["CapitalPool"] = None,
        config: BorrowConfig | None = None,
        clock: Clock = system_clock,
        keepers: Iterable[str] = (),
        engines: Iterable[str] = (),
        max_price_age_seconds: Optional[int] = None,
    ):
        self.config = config or BorrowConfig()
        self._ledger = ledger
        self._price_index = price_index
        self._pool = pool
        self._clock = clock
        self._max_price_age = max_price_age_seconds
        self.logger = get_logger()
        self.access = AccessControl(
            "borrow", owner, {ROLE_KEEPER: keepers, ROLE_ENGINE: engines},
        )

        self._lock = threading.RLock()
        self._states: dict[int, BorrowState] = {}

    def create_market(self, caller: str, market_id: int) -> BorrowState:
        """Start a market's index at 1.0 with the base rate."""
        self.access.require(caller, ROLE_OWNER, "create_market")
        with self._lock:
            if market_id in self._states:
                raise ValidationError(f"Borrow state for market {market_id} already exists", market_id=market_id)
            self._states[market_id] = BorrowState(
                index=ONE,
                last_update=self._clock(),
                smoothed_rate=self.config.base_rate,
                last_raw_rate=self.config.base_rate,
            )
            return self._states[market_id].snapshot()

    def accrue(self, caller: str, market_id: int) -> BorrowState:
        """
        Grow the index to now, then recompute the rate.

        Raises:
            StalePriceError: If PI is older than the allowed age
        """
        if not self.access.is_allowed(caller, ROLE_ENGINE):
            self.access.require(caller, ROLE_KEEPER, "accrue")

        # Reject before touching state
        self._price_index.require_fresh(market_id, self._max_price_age)

        with self._lock:
            state = self._require_state(market_id)
            now = self._clock()
            elapsed = to_decimal(max(0.0, hours_between(state.last_update, now)))

            if elapsed > 0:
                state.index = quantize_up(state.index * wexp(state.smoothed_rate * elapsed))

            multipliers = self.compute_multipliers(market_id)
            raw_rate = fp(min(self.config.max_rate, self.config.base_rate * multipliers.product))
            previous = state.smoothed_rate
            state.smoothed_rate = smooth_rate(raw_rate, previous, elapsed, self.config)
            state.last_raw_rate = raw_rate
            state.multipliers = multipliers
            state.last_update = now
            snapshot = state.snapshot()

        if snapshot.smoothed_rate != previous:
            self.logger.debug(
                f"Borrow rate: market={market_id} {previous} -> {snapshot.smoothed_rate} "
                f"(raw={raw_rate}, index={snapshot.index})"
            )
        return snapshot

    def compute_multipliers(self, market_id: int) -> BorrowMultipliers:
        """Evaluate the five multipliers from current ledger, PI and pool state."""
        market = self._ledger.get_market(market_id)
        utilization = self._pool.utilization() if self._pool is not None else ZERO
        return BorrowMultipliers(
            utilization=fp(utilization_multiplier(utilization, self.config)),
            imbalance=fp(imbalance_multiplier(market.total_long_oi, market.total_short_oi, self.config)),
            volatility=fp(volatility_multiplier(self._price_index.get_volatility(market_id), self.config)),
            time_to_resolution=fp(time_to_resolution_multiplier(
                self._price_index.time_to_resolution_hours(market_id), self.config,
            )),
            concentration=fp(concentration_multiplier(market.total_oi, self._ledger.global_oi(), self.config)),
        )

    # ─────────────────────────────────────────────────────────────────────
    # Views
    # ─────────────────────────────────────────────────────────────────────

    def current_index(self, market_id: int) -> Decimal:
        """
        Index projected to now with the last-applied rate (no mutation).

        Each accrual rounds the index up, so B(t) depends slightly on how
        often accrue runs, always in the pool's favour. Per-position charges
        still telescope against whatever index is recorded.
        """
        with self._lock:
            state = self._require_state(market_id)
            elapsed = to_decimal(max(0.0, hours_between(state.last_update, self._clock())))
            if elapsed <= 0:
                return state.index
            return quantize_up(state.index * wexp(state.smoothed_rate * elapsed))

    def pending_fee(self, position: Position) -> Decimal:
        """
        Borrow fee owed by a position since its last settlement.

        Raises:
            StalePriceError: If PI is older than the allowed age
        """
        self._price_index.require_fresh(position.market_id, self._max_price_age)
        index = self.current_index(position.market_id)
        growth = (index - position.borrow_index_settled) / position.borrow_index_at_open
        return quantize_up(max(ZERO, position.notional * growth))

    def get_current_rate(self, market_id: int) -> Decimal:
        """Last-applied smoothed hourly rate."""
        with self._lock:
            return self._require_state(market_id).smoothed_rate

    def get_multipliers(self, market_id: int) -> BorrowMultipliers:
        """Multipliers as of the last accrual."""
        with self._lock:
            return self._require_state(market_id).multipliers

    def get_state(self, market_id: int) -> BorrowState:
        with self._lock:
            return self._require_state(market_id).snapshot()

    def annualized_rate(self, market_id: int) -> Decimal:
        """Hourly rate x 8760, for display."""
        return quantize(self.get_current_rate(market_id) * 8760)

    def _require_state(self, market_id: int) -> BorrowState:
        state = self._states.get(market_id)
        if state is None:
            raise MarketNotFoundError(f"No borrow state for market {market_id}", market_id=market_id)
        return state
