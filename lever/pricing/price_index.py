"""
Probability Index engine.

Turns noisy external probability feeds into a manipulation-resistant mark
price (PI). PI is the only price used for margin, PnL, liquidation and
funding.

Per accepted update:
    sigma  = population std-dev of the last N accepted raw changes
    w_vol  = 1 / (1 + sigma)
    w_time = sqrt(clamp(time_to_resolution / max_horizon, 0, 1))
    PI    += alpha * w_vol * w_time * (raw - PI)

Updates failing any gate (bounds, spread, tick, depth, market state) are
returned as rejections and leave the price state untouched.
"""

import math
import threading
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

import numpy as np

from ..config.config import PriceIndexConfig
from ..config.constants import (
    PROBABILITY_MAX,
    PROBABILITY_MIN,
    REJECT_DEPTH_TOO_LOW,
    REJECT_INVALID_PRICE,
    REJECT_MARKET_INACTIVE,
    REJECT_MARKET_NOT_FOUND,
    REJECT_MARKET_RESOLVED,
    REJECT_SPREAD_TOO_WIDE,
    REJECT_TICK_TOO_LARGE,
    RESOLUTION_OUTCOMES,
    ROLE_KEEPER,
    ROLE_OWNER,
)
from ..core.access import AccessControl
from ..core.errors import InvalidPriceError, MarketNotFoundError, StalePriceError, ValidationError
from ..core.types import IngestResult, PriceConfig, PriceState, Rejection
from ..utils.clock import Clock, seconds_between, system_clock
from ..utils.fixed_point import ONE, ZERO, clamp, clamp_probability, fp, quantize, to_decimal, wsqrt
from ..utils.logger import get_logger

# Recent rejections kept per market for inspection
REJECTION_HISTORY = 100


class ProbabilityIndexEngine:
    """
    Owns PriceConfig and PriceState for every market.

    Keepers ingest prices; the owner creates, pauses, overrides and
    resolves markets.
    """

    def __init__(
        self,
        owner: str,
        config: PriceIndexConfig | None = None,
        clock: Clock = system_clock,
        keepers: Iterable[str] = (),
    ):
        self.config = config or PriceIndexConfig()
        self._clock = clock
        self.logger = get_logger()
        self.access = AccessControl("price_index", owner, {ROLE_KEEPER: keepers})

        self._lock = threading.RLock()
        self._configs: dict[int, PriceConfig] = {}
        self._states: dict[int, PriceState] = {}
        self._rejected_counts: dict[int, int] = {}
        self._rejections: dict[int, deque] = {}

    # ─────────────────────────────────────────────────────────────────────
    # Administration
    # ─────────────────────────────────────────────────────────────────────

    def create_market(
        self,
        caller: str,
        market_id: int,
        initial_price: Decimal,
        resolution_time: Optional[datetime] = None,
        overrides: dict[str, Decimal] | None = None,
    ) -> PriceState:
        """
        Register a market and seed PI with its initial price.

        Args:
            caller: Must be the owner
            market_id: Market identifier
            initial_price: Starting PI (probability)
            resolution_time: When the market resolves (None = open-ended)
            overrides: Per-market feed gate overrides (alpha, max_spread_bps,
                max_tick_movement, min_liquidity_depth)

        Returns:
            Initial price state snapshot
        """
        self.access.require(caller, ROLE_OWNER, "create_market")
        initial_price = fp(initial_price)
        if not PROBABILITY_MIN <= initial_price <= PROBABILITY_MAX:
            raise InvalidPriceError(f"initial price {initial_price} outside [0, 1]", market_id=market_id)

        overrides = overrides or {}
        price_config = PriceConfig(
            alpha=to_decimal(overrides.get("alpha", self.config.alpha)),
            max_spread_bps=to_decimal(overrides.get("max_spread_bps", self.config.max_spread_bps)),
            max_tick_movement=to_decimal(overrides.get("max_tick_movement", self.config.max_tick_movement)),
            min_liquidity_depth=to_decimal(overrides.get("min_liquidity_depth", self.config.min_liquidity_depth)),
            max_horizon_seconds=self.config.max_horizon_seconds,
            volatility_window=self.config.volatility_window,
            resolution_time=resolution_time,
        )
        if not ZERO < price_config.alpha <= ONE:
            raise ValidationError(f"alpha must be in (0, 1], got {price_config.alpha}", market_id=market_id)

        with self._lock:
            if market_id in self._states:
                raise ValidationError(f"Market {market_id} already has a price index", market_id=market_id)
            self._configs[market_id] = price_config
            self._states[market_id] = PriceState(
                raw_price=initial_price,
                smoothed_price=initial_price,
                volatility=ZERO,
                last_update=self._clock(),
                history=deque(maxlen=price_config.volatility_window),
            )
            self._rejected_counts[market_id] = 0
            self._rejections[market_id] = deque(maxlen=REJECTION_HISTORY)

        self.logger.info(f"Price index created: market={market_id} PI={initial_price}")
        return self.get_price_state(market_id)

    def set_market_active(self, caller: str, market_id: int, active: bool) -> None:
        """Pause or resume feed ingestion (owner only)."""
        self.access.require(caller, ROLE_OWNER, "set_market_active")
        with self._lock:
            self._require_config(market_id).active = active

    def force_set_price(self, caller: str, market_id: int, price: Decimal) -> PriceState:
        """
        Admin override of raw and smoothed price.

        Bypasses the feed gates and smoothing; volatility history is left
        alone. Intended for emergencies and simulations.
        """
        self.access.require(caller, ROLE_OWNER, "force_set_price")
        price = fp(price)
        if not PROBABILITY_MIN <= price <= PROBABILITY_MAX:
            raise InvalidPriceError(f"price {price} outside [0, 1]", market_id=market_id)
        with self._lock:
            state = self._require_state(market_id)
            if state.resolved:
                raise ValidationError(f"Market {market_id} is resolved", market_id=market_id)
            previous = state.smoothed_price
            state.raw_price = price
            state.smoothed_price = price
            state.last_update = self._clock()
        self.logger.risk("WARNING", "price force-set", market=market_id, previous=previous, price=price)
        return self.get_price_state(market_id)

    def resolve(self, caller: str, market_id: int, outcome: Decimal) -> PriceState:
        """
        Resolve a market: PI is pinned to the outcome and ingestion stops.

        Raises:
            InvalidPriceError: If outcome is not 0 or 1
        """
        self.access.require(caller, ROLE_OWNER, "resolve")
        outcome = fp(outcome)
        if outcome not in RESOLUTION_OUTCOMES:
            raise InvalidPriceError(f"outcome must be 0 or 1, got {outcome}", market_id=market_id)
        with self._lock:
            state = self._require_state(market_id)
            state.raw_price = outcome
            state.smoothed_price = outcome
            state.resolved = True
            state.last_update = self._clock()
            self._configs[market_id].active = False
        self.logger.info(f"Market resolved: market={market_id} outcome={outcome}")
        return self.get_price_state(market_id)

    # ─────────────────────────────────────────────────────────────────────
    # Ingestion
    # ─────────────────────────────────────────────────────────────────────

    def ingest(
        self,
        caller: str,
        market_id: int,
        raw_price: Decimal,
        observed_spread_bps: Decimal,
        observed_depth: Decimal,
    ) -> IngestResult:
        """
        Validate a feed observation and update PI.

        Args:
            caller: Authorized keeper
            market_id: Market identifier
            raw_price: Observed external probability
            observed_spread_bps: Bid/ask spread of the source book
            observed_depth: Liquidity depth of the source book

        Returns:
            IngestResult, accepted with the new state or rejected with a code
        """
        self.access.require(caller, ROLE_KEEPER, "ingest")
        return self._ingest(market_id, raw_price, observed_spread_bps, observed_depth)

    def ingest_simple(self, caller: str, market_id: int, raw_price: Decimal) -> IngestResult:
        """Ingest without spread/depth gates (bounds and tick gates still apply)."""
        self.access.require(caller, ROLE_KEEPER, "ingest_simple")
        return self._ingest(market_id, raw_price, None, None)

    def ingest_batch(self, caller: str, updates: Iterable[tuple]) -> list[IngestResult]:
        """
        Ingest many observations.

        Args:
            caller: Authorized keeper
            updates: (market_id, raw_price, spread_bps, depth) tuples; spread
                and depth may be None to skip those gates

        Returns:
            One IngestResult per update, in order
        """
        self.access.require(caller, ROLE_KEEPER, "ingest_batch")
        return [self._ingest(*update) for update in updates]

    def _ingest(
        self,
        market_id: int,
        raw_price: Decimal,
        spread_bps: Optional[Decimal],
        depth: Optional[Decimal],
    ) -> IngestResult:
        with self._lock:
            now = self._clock()
            state = self._states.get(market_id)
            if state is None:
                return self._reject(market_id, REJECT_MARKET_NOT_FOUND, "unknown market", now)
            config = self._configs[market_id]

            if state.resolved:
                return self._reject(market_id, REJECT_MARKET_RESOLVED, "market resolved", now)
            if not config.active:
                return self._reject(market_id, REJECT_MARKET_INACTIVE, "market inactive", now)

            raw = to_decimal(raw_price)
            if not raw.is_finite() or not PROBABILITY_MIN <= raw <= PROBABILITY_MAX:
                return self._reject(market_id, REJECT_INVALID_PRICE, f"raw price {raw} outside [0, 1]", now)
            raw = fp(raw)

            if spread_bps is not None and to_decimal(spread_bps) > config.max_spread_bps:
                return self._reject(
                    market_id, REJECT_SPREAD_TOO_WIDE,
                    f"spread {spread_bps} bps > {config.max_spread_bps}", now,
                )

            change = raw - state.raw_price
            if abs(change) > config.max_tick_movement:
                return self._reject(
                    market_id, REJECT_TICK_TOO_LARGE,
                    f"tick {abs(change)} > {config.max_tick_movement}", now,
                )

            if depth is not None and to_decimal(depth) < config.min_liquidity_depth:
                return self._reject(
                    market_id, REJECT_DEPTH_TOO_LOW,
                    f"depth {depth} < {config.min_liquidity_depth}", now,
                )

            state.history.append(change)
            state.volatility = self._volatility(state.history)

            w_vol = ONE / (ONE + state.volatility)
            w_time = self._time_weight(config, now)
            step = config.alpha * w_vol * w_time * (raw - state.smoothed_price)

            state.raw_price = raw
            state.smoothed_price = clamp_probability(state.smoothed_price + step)
            state.last_update = now
            state.update_count += 1

            return IngestResult(market_id=market_id, accepted=True, state=state.snapshot())

    def _reject(self, market_id: int, code: str, reason: str, now: datetime) -> IngestResult:
        rejection = Rejection(market_id=market_id, code=code, reason=reason, timestamp=now)
        if market_id in self._rejected_counts:
            self._rejected_counts[market_id] += 1
            self._rejections[market_id].append(rejection)
        self.logger.risk("REJECTED", reason, market=market_id, code=code)
        return IngestResult(market_id=market_id, accepted=False, rejection=rejection)

    @staticmethod
    def _volatility(history: deque) -> Decimal:
        """Population std-dev of recent raw changes."""
        if not history:
            return ZERO
        changes = np.array([float(c) for c in history], dtype=float)
        return quantize(to_decimal(float(np.std(changes))))

    @staticmethod
    def _time_weight(config: PriceConfig, now: datetime) -> Decimal:
        """sqrt(clamp(ttr / max_horizon, 0, 1)); 1 without a resolution time."""
        if config.resolution_time is None or config.max_horizon_seconds <= 0:
            return ONE
        remaining = Decimal(str(seconds_between(now, config.resolution_time)))
        ratio = clamp(remaining / Decimal(config.max_horizon_seconds), ZERO, ONE)
        return wsqrt(ratio)

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def has_market(self, market_id: int) -> bool:
        return market_id in self._states

    def get_mark_price(self, market_id: int) -> Decimal:
        """Current PI."""
        with self._lock:
            return self._require_state(market_id).smoothed_price

    def get_raw_price(self, market_id: int) -> Decimal:
        with self._lock:
            return self._require_state(market_id).raw_price

    def get_volatility(self, market_id: int) -> Decimal:
        with self._lock:
            return self._require_state(market_id).volatility

    def get_price_state(self, market_id: int) -> PriceState:
        with self._lock:
            return self._require_state(market_id).snapshot()

    def get_price_config(self, market_id: int) -> PriceConfig:
        with self._lock:
            config = self._require_config(market_id)
            return PriceConfig(**vars(config))

    def rejected_count(self, market_id: int) -> int:
        with self._lock:
            self._require_state(market_id)
            return self._rejected_counts[market_id]

    def recent_rejections(self, market_id: int) -> list[Rejection]:
        with self._lock:
            self._require_state(market_id)
            return list(self._rejections[market_id])

    def is_resolved(self, market_id: int) -> bool:
        with self._lock:
            return self._require_state(market_id).resolved

    def is_expired(self, market_id: int) -> bool:
        """True once the resolution time has passed."""
        with self._lock:
            resolution_time = self._require_config(market_id).resolution_time
        return resolution_time is not None and self._clock() >= resolution_time

    def time_to_resolution_hours(self, market_id: int) -> Optional[float]:
        """Hours until resolution (floored at 0), or None if open-ended."""
        with self._lock:
            resolution_time = self._require_config(market_id).resolution_time
        if resolution_time is None:
            return None
        return max(0.0, seconds_between(self._clock(), resolution_time) / 3600)

    def price_age_seconds(self, market_id: int) -> float:
        with self._lock:
            last_update = self._require_state(market_id).last_update
        return seconds_between(last_update, self._clock())

    def is_price_stale(self, market_id: int, max_age_seconds: Optional[int] = None) -> bool:
        """
        Check whether PI is older than max_age_seconds.

        Resolved markets are never stale: their price is final.
        """
        max_age = self.config.max_price_age_seconds if max_age_seconds is None else max_age_seconds
        with self._lock:
            state = self._require_state(market_id)
            if state.resolved:
                return False
            last_update = state.last_update
        return seconds_between(last_update, self._clock()) > max_age

    def require_fresh(self, market_id: int, max_age_seconds: Optional[int] = None) -> Decimal:
        """
        Return PI, raising if it is stale.

        Raises:
            StalePriceError: If the last update is older than the allowed age
        """
        if self.is_price_stale(market_id, max_age_seconds):
            age = self.price_age_seconds(market_id)
            raise StalePriceError(
                f"Price for market {market_id} is stale ({math.floor(age)}s old)",
                market_id=market_id, age_seconds=age,
            )
        return self.get_mark_price(market_id)

    def _require_state(self, market_id: int) -> PriceState:
        state = self._states.get(market_id)
        if state is None:
            raise MarketNotFoundError(f"No price index for market {market_id}", market_id=market_id)
        return state

    def _require_config(self, market_id: int) -> PriceConfig:
        config = self._configs.get(market_id)
        if config is None:
            raise MarketNotFoundError(f"No price index for market {market_id}", market_id=market_id)
        return config
