"""
Virtual execution market.

A constant-product curve (quote x base = k) over virtual reserves that
prices entries and exits. It holds no capital: execution prices may drift
from PI, but nothing downstream of a fill reads the curve. Keepers
recenter reserves onto PI periodically, keeping k constant.

Spread guard: every fill pays the base spread; when the raw feed strays
from PI by more than the guard threshold, the spread widens by
widen_multiplier x deviation, always against the trader.
"""

import threading
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from ..config.config import ExecutionConfig
from ..config.constants import ROLE_ENGINE, ROLE_KEEPER, ROLE_OWNER
from ..core.access import AccessControl
from ..core.errors import (
    InsufficientLiquidityError,
    InvalidPriceError,
    InvalidSizeError,
    MarketNotFoundError,
    ValidationError,
)
from ..core.types import ExecutionPool, Quote, Side
from ..utils.clock import Clock, system_clock
from ..utils.fixed_point import BPS, ONE, ZERO, clamp, fp, quantize, quantize_up, wsqrt
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from .price_index import ProbabilityIndexEngine


class VirtualExecutionMarket:
    """Per-market virtual constant-product pools."""

    def __init__(
        self,
        owner: str,
        config: ExecutionConfig | None = None,
        clock: Clock = system_clock,
        price_index: Optional["ProbabilityIndexEngine"] = None,
        keepers: Iterable[str] = (),
        engines: Iterable[str] = (),
    ):
        """
        Args:
            owner: Identity allowed to create pools and grant roles
            config: Execution parameters
            clock: Time source
            price_index: PI engine read for the spread guard (optional)
            keepers: Identities allowed to recenter
            engines: Identities allowed to execute fills
        """
        self.config = config or ExecutionConfig()
        self._clock = clock
        self._price_index = price_index
        self.logger = get_logger()
        self.access = AccessControl(
            "vamm", owner, {ROLE_KEEPER: keepers, ROLE_ENGINE: engines},
        )

        self._lock = threading.RLock()
        self._pools: dict[int, ExecutionPool] = {}

    def _bounded(self, price: Decimal) -> Decimal:
        """Keep the curve price strictly inside (0, 1)."""
        return clamp(fp(price), self.config.min_price, ONE - self.config.min_price)

    def create_pool(
        self,
        caller: str,
        market_id: int,
        initial_price: Decimal,
        virtual_depth: Optional[Decimal] = None,
    ) -> ExecutionPool:
        """
        Create virtual reserves with quote/base equal to the initial price.

        Args:
            caller: Must be the owner
            market_id: Market identifier
            initial_price: Starting price (clamped to [min_price, 1 - min_price])
            virtual_depth: Base reserve size (defaults to config.virtual_depth)
        """
        self.access.require(caller, ROLE_OWNER, "create_pool")
        depth = fp(virtual_depth if virtual_depth is not None else self.config.virtual_depth)
        if depth <= 0:
            raise ValidationError(f"virtual depth must be positive, got {depth}", market_id=market_id)

        price = self._bounded(initial_price)
        base = depth
        quote = fp(depth * price)
        pool = ExecutionPool(
            quote_reserve=quote,
            base_reserve=base,
            k=fp(quote * base),
            last_recenter_price=price,
            last_recenter_time=self._clock(),
        )
        with self._lock:
            if market_id in self._pools:
                raise ValidationError(f"Pool for market {market_id} already exists", market_id=market_id)
            self._pools[market_id] = pool

        self.logger.info(f"vAMM pool created: market={market_id} price={price} depth={depth}")
        return pool.snapshot()

    def get_pool(self, market_id: int) -> ExecutionPool:
        with self._lock:
            return self._require_pool(market_id).snapshot()

    def get_spot_price(self, market_id: int) -> Decimal:
        """quote / base of the current reserves."""
        with self._lock:
            return fp(self._require_pool(market_id).spot_price)

    def spread_bps(self, market_id: int) -> Decimal:
        """
        Effective spread for a fill right now.

        Base spread, widened by widen_multiplier x |raw - PI| when the
        deviation exceeds the guard threshold.
        """
        spread = self.config.base_spread_bps
        if self._price_index is None or not self._price_index.has_market(market_id):
            return spread
        deviation = abs(
            self._price_index.get_raw_price(market_id) - self._price_index.get_mark_price(market_id)
        )
        if deviation > self.config.spread_guard_threshold:
            spread += fp(self.config.widen_multiplier * deviation * BPS)
        return spread

    def quote(self, market_id: int, direction: Side, size: Decimal) -> Quote:
        """
        Price a fill of `size` shares without committing it.

        Raises:
            InvalidSizeError: If size is not positive
            InsufficientLiquidityError: If a long would drain the base reserve
        """
        size = fp(size)
        if size <= 0:
            raise InvalidSizeError(f"size must be positive, got {size}", market_id=market_id)
        with self._lock:
            pool = self._require_pool(market_id)
            quote, _, _ = self._price(market_id, pool, direction, size)
            return quote

    def execute(self, caller: str, market_id: int, direction: Side, size: Decimal) -> Quote:
        """Price a fill and commit it to the reserves."""
        self.access.require(caller, ROLE_ENGINE, "execute")
        size = fp(size)
        if size <= 0:
            raise InvalidSizeError(f"size must be positive, got {size}", market_id=market_id)
        with self._lock:
            pool = self._require_pool(market_id)
            quote, new_quote, new_base = self._price(market_id, pool, direction, size)
            pool.quote_reserve = new_quote
            pool.base_reserve = new_base
        self.logger.debug(
            f"vAMM fill: market={market_id} {direction.value} size={size} "
            f"price={quote.execution_price} impact={quote.price_impact_bps}bps"
        )
        return quote

    def _price(self, market_id: int, pool: ExecutionPool, direction: Side, size: Decimal):
        """Return (Quote, new quote reserve, new base reserve)."""
        spot = pool.spot_price
        spread = self.spread_bps(market_id)
        spread_fraction = spread / BPS

        if direction == Side.LONG:
            if size >= pool.base_reserve:
                raise InsufficientLiquidityError(
                    f"long of {size} exceeds base reserve {pool.base_reserve}",
                    market_id=market_id, size=size,
                )
            new_base = pool.base_reserve - size
            new_quote = quantize_up(pool.k / new_base)
            curve_cost = new_quote - pool.quote_reserve
            amount_in = quantize_up(curve_cost * (ONE + spread_fraction))
            amount_out = size
            avg_curve_price = curve_cost / size
            execution_price = min(quantize_up(amount_in / size), ONE)
        else:
            new_base = pool.base_reserve + size
            new_quote = quantize_up(pool.k / new_base)
            curve_proceeds = pool.quote_reserve - new_quote
            amount_in = size
            amount_out = quantize(max(curve_proceeds * (ONE - spread_fraction), ZERO))
            avg_curve_price = curve_proceeds / size
            execution_price = max(quantize(amount_out / size), ZERO)

        impact_bps = fp(abs(avg_curve_price - spot) / spot * BPS)
        quote = Quote(
            market_id=market_id,
            direction=direction,
            size=size,
            amount_in=amount_in,
            amount_out=amount_out,
            execution_price=execution_price,
            spot_price=fp(spot),
            price_impact_bps=impact_bps,
            spread_bps=spread,
        )
        return quote, new_quote, new_base

    def recenter(self, caller: str, market_id: int, pi: Decimal) -> ExecutionPool:
        """
        Reset reserves so quote/base equals PI, keeping k.

        base = sqrt(k / PI), quote = sqrt(k x PI)
        """
        if not self.access.is_allowed(caller, ROLE_ENGINE):
            self.access.require(caller, ROLE_KEEPER, "recenter")
        pi = fp(pi)
        if not ZERO <= pi <= ONE:
            raise InvalidPriceError(f"PI {pi} outside [0, 1]", market_id=market_id)
        target = self._bounded(pi)
        with self._lock:
            pool = self._require_pool(market_id)
            previous = fp(pool.spot_price)
            pool.base_reserve = wsqrt(pool.k / target)
            pool.quote_reserve = wsqrt(pool.k * target)
            pool.last_recenter_price = target
            pool.last_recenter_time = self._clock()
            snapshot = pool.snapshot()
        self.logger.debug(f"vAMM recentered: market={market_id} {previous} -> {target}")
        return snapshot

    def last_recentered(self, market_id: int) -> datetime:
        with self._lock:
            return self._require_pool(market_id).last_recenter_time

    def _require_pool(self, market_id: int) -> ExecutionPool:
        pool = self._pools.get(market_id)
        if pool is None:
            raise MarketNotFoundError(f"No execution pool for market {market_id}", market_id=market_id)
        return pool
