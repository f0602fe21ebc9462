"""
Risk engine facade.

Wires the components together and exposes the engine's read and write
interfaces. Writers on the same market are serialized by a per-market
re-entrant lock; independent markets proceed in parallel. Reads return
detached snapshots and take no market lock.

Component wiring (arrows = reads):

    router / liquidation -> margin -> price index, borrow, funding, ledger
    borrow -> ledger (OI), price index (sigma, time to resolution), pool (utilization)
    funding -> ledger (OI)
    ledger -> nothing (leaf; callers pass fee indices in)
"""

import threading
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional

from .config.config import EngineConfig, get_config
from .config.markets import MarketSpec, load_market_specs
from .core.errors import AuthorizationError, PositionNotFoundError
from .core.ledger import PositionLedger
from .core.types import (
    IndexSnapshot,
    IngestResult,
    LiquidationResult,
    Market,
    Position,
    PositionHealth,
    Side,
    TradeResult,
)
from .fees.accrual import accrue_indices
from .fees.borrow import BorrowFeeEngine
from .fees.funding import FundingEngine
from .pool.capital_pool import CapitalPool, LiquidityPool
from .pricing.price_index import ProbabilityIndexEngine
from .pricing.vamm import VirtualExecutionMarket
from .risk.insurance import InsuranceFund
from .risk.liquidation import LiquidationEngine
from .risk.margin import MarginEngine
from .router import TradingRouter
from .utils.clock import Clock, system_clock
from .utils.fixed_point import ZERO, quantize
from .utils.logger import get_logger

ENGINE_IDENTITY = "lever-engine"


class RiskEngine:
    """
    The LEVER risk engine.

    Example:
        engine = RiskEngine(owner="admin", keepers=["keeper"], liquidators=["liq"])
        engine.pool.deposit("lp", Decimal("1000000"))
        engine.create_market("admin", MarketSpec(0, "Fed cut", Decimal("0.5"), Decimal("1e6")))
        engine.open_position("alice", 0, Side.LONG, Decimal("1000"), Decimal("200"))
    """

    def __init__(
        self,
        owner: str,
        config: EngineConfig | None = None,
        clock: Clock = system_clock,
        keepers: Iterable[str] = (),
        liquidators: Iterable[str] = (),
        pool: Optional[CapitalPool] = None,
        insurance_balance: Decimal = ZERO,
        identity: str = ENGINE_IDENTITY,
    ):
        """
        Build and wire all components.

        Args:
            owner: Administrator identity (market creation, overrides, grants)
            config: Engine configuration (defaults to the environment config)
            clock: Time source shared by every component
            keepers: Identities allowed to ingest prices, recenter and accrue
            liquidators: Identities allowed to liquidate
            pool: External capital pool (defaults to an in-memory LiquidityPool)
            insurance_balance: Initial insurance fund balance
            identity: Caller identity the engine presents to its components
        """
        self.config = config or get_config().engine
        self.owner = owner
        self.identity = identity
        self._clock = clock
        self.logger = get_logger()

        keepers = list(keepers)
        liquidators = list(liquidators)
        max_age = self.config.price.max_price_age_seconds

        self.ledger = PositionLedger(owner, self.config.ledger, clock, engines=[identity])
        self.price_index = ProbabilityIndexEngine(owner, self.config.price, clock, keepers=keepers)
        self.vamm = VirtualExecutionMarket(
            owner, self.config.execution, clock, price_index=self.price_index,
            keepers=keepers, engines=[identity],
        )
        self.pool = pool if pool is not None else LiquidityPool(owner, self.config.pool, allocators=[identity])
        self.borrow = BorrowFeeEngine(
            owner, self.ledger, self.price_index, self.pool, self.config.borrow, clock,
            keepers=keepers, engines=[identity], max_price_age_seconds=max_age,
        )
        self.funding = FundingEngine(
            owner, self.ledger, self.config.funding, clock, keepers=keepers, engines=[identity],
        )
        self.margin = MarginEngine(
            self.ledger, self.price_index, self.borrow, self.funding, self.config.margin,
            max_price_age_seconds=max_age,
        )
        self.insurance = InsuranceFund(insurance_balance)
        self.liquidation = LiquidationEngine(
            owner, identity, self.ledger, self.margin, self.borrow, self.funding,
            self.pool, self.insurance, self.config.liquidation, clock, liquidators=liquidators,
        )
        self.router = TradingRouter(
            identity, self.ledger, self.price_index, self.vamm, self.borrow, self.funding,
            self.margin, self.pool, self.liquidation, clock,
        )

        self._locks_guard = threading.Lock()
        self._market_locks: dict[int, threading.RLock] = {}

        self.logger.info(
            f"Risk engine ready: owner={owner} keepers={len(keepers)} liquidators={len(liquidators)}"
        )

    def _market_lock(self, market_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._market_locks.get(market_id)
            if lock is None:
                lock = self._market_locks[market_id] = threading.RLock()
            return lock

    # ─────────────────────────────────────────────────────────────────────
    # Market administration
    # ─────────────────────────────────────────────────────────────────────

    def create_market(self, caller: str, spec: MarketSpec) -> Market:
        """
        Create a market in every component from a MarketSpec.

        Raises:
            AuthorizationError: If caller is not the owner
            ValueError: If the spec is invalid
        """
        errors = spec.validate()
        if errors:
            raise ValueError(f"Invalid market spec '{spec.name}': {'; '.join(errors)}")

        overrides = spec.overrides
        with self._market_lock(spec.market_id):
            market = self.ledger.create_market(
                caller, spec.market_id, spec.name, spec.max_oi,
                max_side_oi=spec.max_side_oi, max_trader_oi=spec.max_trader_oi,
                resolution_time=spec.resolution_time,
            )
            self.price_index.create_market(
                caller, spec.market_id, spec.initial_price,
                resolution_time=spec.resolution_time, overrides=overrides,
            )
            self.vamm.create_pool(caller, spec.market_id, spec.initial_price,
                                  virtual_depth=overrides.get("virtual_depth"))
            self.borrow.create_market(caller, spec.market_id)
            self.funding.create_market(
                caller, spec.market_id,
                max_rate=overrides.get("funding_max_rate"),
                imbalance_threshold=overrides.get("funding_imbalance_threshold"),
            )
        self.logger.info(f"Market {spec.market_id} '{spec.name}' created at PI={spec.initial_price}")
        return market

    def load_markets(self, caller: str, source: str | Path) -> list[Market]:
        """Create every market defined in a YAML market file."""
        return [self.create_market(caller, spec) for spec in load_market_specs(source)]

    def set_market_active(self, caller: str, market_id: int, active: bool) -> None:
        """Pause or resume trading and ingestion on a market."""
        with self._market_lock(market_id):
            self.ledger.set_market_active(caller, market_id, active)
            self.price_index.set_market_active(caller, market_id, active)

    def resolve_market(self, caller: str, market_id: int, outcome: Decimal) -> None:
        """
        Resolve a market to 0 or 1. PI is pinned to the outcome; positions
        can then only be reduced, at the outcome price.
        """
        with self._market_lock(market_id):
            self.price_index.resolve(caller, market_id, outcome)
            self.ledger.mark_resolved(self.identity, market_id, outcome)

    def force_set_price(self, caller: str, market_id: int, price: Decimal) -> None:
        with self._market_lock(market_id):
            self.price_index.force_set_price(caller, market_id, price)

    def market_ids(self) -> list[int]:
        return self.ledger.market_ids()

    def get_market(self, market_id: int) -> Market:
        return self.ledger.get_market(market_id)

    def is_market_resolved(self, market_id: int) -> bool:
        return self.price_index.is_resolved(market_id)

    # ─────────────────────────────────────────────────────────────────────
    # Keeper operations
    # ─────────────────────────────────────────────────────────────────────

    def ingest(
        self,
        caller: str,
        market_id: int,
        raw_price: Decimal,
        observed_spread_bps: Decimal,
        observed_depth: Decimal,
    ) -> IngestResult:
        with self._market_lock(market_id):
            return self.price_index.ingest(caller, market_id, raw_price, observed_spread_bps, observed_depth)

    def ingest_batch(self, caller: str, updates: list[tuple]) -> list[IngestResult]:
        results = []
        for update in updates:
            with self._market_lock(update[0]):
                results.extend(self.price_index.ingest_batch(caller, [update]))
        return results

    def accrue(self, caller: str, market_id: int) -> IndexSnapshot:
        """Accrue borrow and funding indices for a market."""
        with self._market_lock(market_id):
            return accrue_indices(caller, market_id, self.borrow, self.funding)

    def recenter(self, caller: str, market_id: int) -> None:
        """Recenter the vAMM onto the current PI."""
        with self._market_lock(market_id):
            self.vamm.recenter(caller, market_id, self.price_index.get_mark_price(market_id))

    # ─────────────────────────────────────────────────────────────────────
    # Trading
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
        with self._market_lock(market_id):
            return self.router.open_position(trader, market_id, side, size, collateral,
                                             max_price=max_price, min_price=min_price)

    def increase_position(self, trader: str, market_id: int, size: Decimal, collateral: Decimal = ZERO,
                          max_price: Optional[Decimal] = None, min_price: Optional[Decimal] = None) -> TradeResult:
        with self._market_lock(market_id):
            return self.router.increase_position(trader, market_id, size, collateral,
                                                 max_price=max_price, min_price=min_price)

    def decrease_position(self, trader: str, market_id: int, size: Decimal,
                          min_price: Optional[Decimal] = None, max_price: Optional[Decimal] = None) -> TradeResult:
        with self._market_lock(market_id):
            return self.router.decrease_position(trader, market_id, size,
                                                 min_price=min_price, max_price=max_price)

    def close_position(self, trader: str, market_id: int, min_price: Optional[Decimal] = None,
                       max_price: Optional[Decimal] = None) -> TradeResult:
        with self._market_lock(market_id):
            return self.router.close_position(trader, market_id, min_price=min_price, max_price=max_price)

    def add_collateral(self, trader: str, market_id: int, amount: Decimal) -> Position:
        with self._market_lock(market_id):
            return self.router.add_collateral(trader, market_id, amount)

    def withdraw_collateral(self, trader: str, market_id: int, amount: Decimal) -> Position:
        with self._market_lock(market_id):
            return self.router.withdraw_collateral(trader, market_id, amount)

    def liquidate(self, caller: str, trader: str, market_id: int) -> LiquidationResult:
        """Liquidate a position (authorized liquidators only)."""
        with self._market_lock(market_id):
            return self.liquidation.liquidate(caller, trader, market_id)

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def get_mark_price(self, market_id: int) -> Decimal:
        """Current PI."""
        return self.price_index.get_mark_price(market_id)

    def get_execution_price(self, market_id: int, side: Side, size: Decimal) -> Decimal:
        """vAMM execution price for a hypothetical fill."""
        return self.vamm.quote(market_id, side, size).execution_price

    def is_price_stale(self, market_id: int) -> bool:
        return self.price_index.is_price_stale(market_id, self.config.price.max_price_age_seconds)

    def get_position(self, trader: str, market_id: int) -> Optional[Position]:
        return self.ledger.get_position(trader, market_id)

    def get_unrealized_pnl(self, trader: str, market_id: int) -> Decimal:
        """(PI - entry) x size; zero without a position."""
        return self.ledger.get_unrealized_pnl(trader, market_id, self.get_mark_price(market_id))

    def get_position_health(self, trader: str, market_id: int) -> PositionHealth:
        return self.margin.health(trader, market_id)

    def is_liquidatable(self, trader: str, market_id: int) -> tuple[bool, Decimal]:
        """(liquidatable, shortfall), evaluated against a fresh PI."""
        return self.margin.is_liquidatable(trader, market_id)

    def get_liquidation_price(self, trader: str, market_id: int) -> Optional[Decimal]:
        position = self.ledger.get_position(trader, market_id)
        if position is None:
            raise PositionNotFoundError(
                f"No open position for {trader} on market {market_id}",
                trader=trader, market_id=market_id,
            )
        return self.margin.liquidation_price(position)

    def get_current_borrow_rate(self, market_id: int) -> Decimal:
        return self.borrow.get_current_rate(market_id)

    def get_pending_borrow_fee(self, trader: str, market_id: int) -> Decimal:
        position = self.ledger.get_position(trader, market_id)
        return self.borrow.pending_fee(position) if position else ZERO

    def get_current_funding_rate(self, market_id: int) -> Decimal:
        return self.funding.get_current_rate(market_id)

    def get_pending_funding(self, trader: str, market_id: int) -> Decimal:
        position = self.ledger.get_position(trader, market_id)
        if position is None:
            return ZERO
        self.price_index.require_fresh(market_id, self.config.price.max_price_age_seconds)
        return self.funding.pending_funding(position)

    def total_pending_funding(self, market_id: int) -> Decimal:
        """Net pending funding across all positions of a market (zero up to rounding)."""
        self.price_index.require_fresh(market_id, self.config.price.max_price_age_seconds)
        return quantize(sum(
            (self.funding.pending_funding(p) for p in self.ledger.positions_for_market(market_id)), ZERO,
        ))

    def grant(self, caller: str, role: str, member: str) -> None:
        """
        Grant `role` to `member` on every component that has that role.

        Raises:
            AuthorizationError: If caller is not the owner
        """
        granted = False
        for component in (self.ledger, self.price_index, self.vamm, self.borrow,
                          self.funding, self.liquidation):
            if role in component.access.roles():
                component.access.grant(caller, role, member)
                granted = True
        if not granted:
            raise AuthorizationError(f"Unknown role {role}", role=role)
