"""
Position ledger with invariants.

The authoritative store of every trader's exposure per market and of the
per-market open-interest aggregates. Every other component reads from it;
only authorized engines mutate it.

Lazy settlement contract:
- Fee engines maintain global indices (borrow, per-side funding)
- Each position carries snapshots of those indices
- Every mutator first calls settle_fees, which charges
  |size| x (B_now - B_settled) / B_entry borrow and
  |size| x (funding_now - funding_snapshot) funding, applies them to
  collateral, and advances the settled snapshots. Borrow charges telescope
  to |size| x (B_now / B_entry - 1) however often a position is settled
- The ledger never calls the fee engines; callers pass an IndexSnapshot

Invariants:
1. collateral >= 0 and fee_debt >= 0 for every position
2. stored positions have size != 0 (closed positions are removed)
3. total_long_oi == sum of long sizes, total_short_oi == sum of |short sizes|
4. borrow snapshots never decrease
5. caps are checked before any aggregate is mutated
"""

import threading
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from ..config.config import LedgerConfig
from ..config.constants import ROLE_ENGINE, ROLE_OWNER
from ..utils.clock import Clock, system_clock
from ..utils.fixed_point import ZERO, fp, quantize, quantize_up, wdiv, wmul
from ..utils.logger import get_logger
from .access import AccessControl
from .errors import (
    InvalidPriceError,
    InvalidSizeError,
    InvariantViolationError,
    MarketInactiveError,
    MarketNotFoundError,
    OICapExceededError,
    PositionNotFoundError,
    ValidationError,
)
from .types import (
    IndexSnapshot,
    Market,
    Position,
    PositionAction,
    PositionChange,
    Settlement,
    Side,
)


class PositionLedger:
    """
    Single-position-per-(trader, market) ledger.

    Positions are keyed by (trader, market_id) and also indexed by a
    stable position_id for O(1) lookup either way.
    """

    def __init__(
        self,
        owner: str,
        config: LedgerConfig | None = None,
        clock: Clock = system_clock,
        engines: Iterable[str] = (),
    ):
        """
        Initialize an empty ledger.

        Args:
            owner: Identity allowed to create markets and grant roles
            config: Optional ledger configuration (global cap, debug checks)
            clock: Time source
            engines: Identities allowed to call mutators
        """
        self._config = config or LedgerConfig()
        self._clock = clock
        self.logger = get_logger()
        self.access = AccessControl("ledger", owner, {ROLE_ENGINE: engines})

        self._lock = threading.RLock()
        self._markets: dict[int, Market] = {}
        self._positions: dict[tuple[str, int], Position] = {}
        self._by_id: dict[str, tuple[str, int]] = {}

    # ─────────────────────────────────────────────────────────────────────
    # Markets
    # ─────────────────────────────────────────────────────────────────────

    def create_market(
        self,
        caller: str,
        market_id: int,
        name: str,
        max_oi: Decimal,
        max_side_oi: Optional[Decimal] = None,
        max_trader_oi: Optional[Decimal] = None,
        resolution_time: Optional[datetime] = None,
    ) -> Market:
        """Register a new market (owner only)."""
        self.access.require(caller, ROLE_OWNER, "create_market")
        with self._lock:
            if market_id in self._markets:
                raise ValidationError(f"Market {market_id} already exists", market_id=market_id)
            if max_oi <= 0:
                raise ValidationError(f"max_oi must be positive, got {max_oi}", market_id=market_id)
            market = Market(
                market_id=market_id,
                name=name,
                max_oi=fp(max_oi),
                max_side_oi=fp(max_side_oi) if max_side_oi is not None else None,
                max_trader_oi=fp(max_trader_oi) if max_trader_oi is not None else None,
                resolution_time=resolution_time,
            )
            self._markets[market_id] = market
        self.logger.info(f"Ledger market created: id={market_id} name='{name}' max_oi={max_oi}")
        return market.snapshot()

    def set_market_active(self, caller: str, market_id: int, active: bool) -> None:
        """Pause or resume new exposure on a market (owner only)."""
        self.access.require(caller, ROLE_OWNER, "set_market_active")
        with self._lock:
            self._require_market(market_id).active = active
        self.logger.risk("ALLOWED" if active else "WARNING", "market active flag changed",
                         market=market_id, active=active)

    def mark_resolved(self, caller: str, market_id: int, outcome: Decimal) -> None:
        """Record the binary outcome; no new exposure afterwards."""
        self.access.require(caller, ROLE_ENGINE, "mark_resolved")
        with self._lock:
            market = self._require_market(market_id)
            market.resolved = True
            market.outcome = fp(outcome)
            market.active = False

    def get_market(self, market_id: int) -> Market:
        """
        Get a market snapshot.

        Raises:
            MarketNotFoundError: If the market does not exist
        """
        with self._lock:
            return self._require_market(market_id).snapshot()

    def has_market(self, market_id: int) -> bool:
        return market_id in self._markets

    def market_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._markets)

    def get_oi_imbalance(self, market_id: int) -> Decimal:
        """Signed long - short open interest."""
        with self._lock:
            return self._require_market(market_id).imbalance

    def global_oi(self) -> Decimal:
        """Total open interest across all markets, both sides."""
        with self._lock:
            return sum((m.total_oi for m in self._markets.values()), ZERO)

    def _require_market(self, market_id: int) -> Market:
        market = self._markets.get(market_id)
        if market is None:
            raise MarketNotFoundError(f"Market {market_id} not found", market_id=market_id)
        return market

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def get_position(self, trader: str, market_id: int) -> Optional[Position]:
        """Snapshot of the trader's open position on a market, or None."""
        with self._lock:
            position = self._positions.get((trader, market_id))
            return position.snapshot() if position else None

    def get_position_by_id(self, position_id: str) -> Optional[Position]:
        with self._lock:
            key = self._by_id.get(position_id)
            if key is None:
                return None
            return self._positions[key].snapshot()

    def positions_for_market(self, market_id: int) -> list[Position]:
        """Snapshots of all open positions on a market."""
        with self._lock:
            return [p.snapshot() for (_, mid), p in self._positions.items() if mid == market_id]

    def positions_for_trader(self, trader: str) -> list[Position]:
        with self._lock:
            return [p.snapshot() for (t, _), p in self._positions.items() if t == trader]

    def get_unrealized_pnl(self, trader: str, market_id: int, price: Decimal) -> Decimal:
        """(price - entry) x size, zero when no position."""
        position = self.get_position(trader, market_id)
        if position is None:
            return ZERO
        return quantize(position.unrealized_pnl(price))

    def check_invariants(self) -> list[str]:
        """
        Check all ledger invariants.

        Returns:
            List of error messages (empty if all invariants hold)
        """
        errors = []
        with self._lock:
            long_sums: dict[int, Decimal] = {mid: ZERO for mid in self._markets}
            short_sums: dict[int, Decimal] = {mid: ZERO for mid in self._markets}

            for (trader, market_id), position in self._positions.items():
                if position.size == 0:
                    errors.append(f"Closed position stored: {trader}@{market_id}")
                if position.collateral < 0:
                    errors.append(f"Negative collateral {position.collateral} for {trader}@{market_id}")
                if position.fee_debt < 0:
                    errors.append(f"Negative fee_debt {position.fee_debt} for {trader}@{market_id}")
                if position.size > 0:
                    long_sums[market_id] += position.size
                else:
                    short_sums[market_id] += -position.size

            for market_id, market in self._markets.items():
                if market.total_long_oi != long_sums[market_id]:
                    errors.append(
                        f"Invariant violated: market {market_id} long OI {market.total_long_oi} "
                        f"!= sum of long sizes {long_sums[market_id]}"
                    )
                if market.total_short_oi != short_sums[market_id]:
                    errors.append(
                        f"Invariant violated: market {market_id} short OI {market.total_short_oi} "
                        f"!= sum of short sizes {short_sums[market_id]}"
                    )
        return errors

    def _after_mutation(self) -> None:
        if self._config.debug_check_invariants:
            errors = self.check_invariants()
            if errors:
                raise InvariantViolationError(f"Ledger invariant violation: {errors}")

    # ─────────────────────────────────────────────────────────────────────
    # Fee settlement
    # ─────────────────────────────────────────────────────────────────────

    def settle_fees(self, caller: str, trader: str, market_id: int, indices: IndexSnapshot) -> Settlement:
        """
        Settle accrued borrow and funding fees into collateral.

        Args:
            caller: Authorized engine identity
            trader: Position owner
            market_id: Market identifier
            indices: Current fee indices for the market

        Returns:
            Settlement with the amounts applied
        """
        self.access.require(caller, ROLE_ENGINE, "settle_fees")
        with self._lock:
            position = self._require_position(trader, market_id)
            settlement = self._settle(position, indices)
            self._after_mutation()
            return settlement

    def _settle(self, position: Position, indices: IndexSnapshot) -> Settlement:
        """Apply owed fees since the last snapshot and advance snapshots."""
        if indices.borrow_index < position.borrow_index_settled:
            raise InvariantViolationError(
                f"Borrow index moved backwards for {position.position_id}: "
                f"{indices.borrow_index} < {position.borrow_index_settled}",
                market_id=position.market_id,
            )

        notional = position.notional
        growth = (indices.borrow_index - position.borrow_index_settled) / position.borrow_index_at_open
        borrow_fee = quantize_up(notional * growth)

        funding_now = indices.funding_index_for(position.side)
        raw_funding = notional * (funding_now - position.funding_index_at_open)
        # Payments round against the trader, receipts toward zero
        funding_payment = quantize_up(raw_funding) if raw_funding > 0 else quantize(raw_funding)

        total = borrow_fee + funding_payment
        debt_added = ZERO
        if total >= 0:
            paid = min(total, position.collateral)
            position.collateral -= paid
            debt_added = total - paid
            position.fee_debt += debt_added
        else:
            credit = -total
            offset = min(credit, position.fee_debt)
            position.fee_debt -= offset
            position.collateral += credit - offset

        position.borrow_index_settled = indices.borrow_index
        position.funding_index_at_open = funding_now
        position.borrow_fees_paid += borrow_fee
        position.funding_paid += funding_payment
        position.last_update = self._clock()

        if debt_added > 0:
            self.logger.risk("WARNING", "fees exceed collateral, recorded as fee debt",
                             trader=position.trader, market=position.market_id, debt=debt_added)

        return Settlement(borrow_fee=borrow_fee, funding_payment=funding_payment, fee_debt_added=debt_added)

    # ─────────────────────────────────────────────────────────────────────
    # Mutators
    # ─────────────────────────────────────────────────────────────────────

    def open(
        self,
        caller: str,
        trader: str,
        market_id: int,
        size_delta: Decimal,
        collateral: Decimal,
        entry_price: Decimal,
        indices: IndexSnapshot,
    ) -> tuple[Position, Settlement]:
        """
        Open a position or increase an existing same-side position.

        Caps are checked before anything is mutated; a rejected open leaves
        the ledger untouched.

        Args:
            caller: Authorized engine identity
            trader: Position owner
            market_id: Market identifier
            size_delta: Signed size to add (positive = long)
            collateral: Collateral added with this change (>= 0)
            entry_price: Execution price of the added size
            indices: Current fee indices for the market

        Returns:
            Tuple of (position snapshot, settlement applied to the existing position)
        """
        self.access.require(caller, ROLE_ENGINE, "open")
        size_delta = fp(size_delta)
        collateral = fp(collateral)
        entry_price = fp(entry_price)

        if size_delta == 0:
            raise InvalidSizeError("size_delta must be non-zero", market_id=market_id)
        if collateral < 0:
            raise InvalidSizeError(f"collateral must be >= 0, got {collateral}", market_id=market_id)
        if not ZERO <= entry_price <= 1:
            raise InvalidPriceError(f"entry price {entry_price} outside [0, 1]", market_id=market_id)

        with self._lock:
            market = self._require_market(market_id)
            if not market.active or market.resolved:
                raise MarketInactiveError(f"Market {market_id} is not accepting new exposure", market_id=market_id)

            key = (trader, market_id)
            existing = self._positions.get(key)
            side = Side.from_size(size_delta)
            if existing is not None and existing.side != side:
                raise InvalidSizeError(
                    f"{trader} holds a {existing.side.value} on market {market_id}; "
                    f"reduce it before opening {side.value}",
                    market_id=market_id,
                )

            added = abs(size_delta)
            self._check_caps(market, side, added, existing)

            now = self._clock()
            settlement = Settlement()
            if existing is None:
                position = Position(
                    position_id=f"pos-{uuid.uuid4().hex[:12]}",
                    trader=trader,
                    market_id=market_id,
                    size=size_delta,
                    collateral=collateral,
                    entry_price=entry_price,
                    open_time=now,
                    last_update=now,
                    borrow_index_at_open=indices.borrow_index,
                    borrow_index_settled=indices.borrow_index,
                    funding_index_at_open=indices.funding_index_for(side),
                )
                self._positions[key] = position
                self._by_id[position.position_id] = key
                action = PositionAction.OPENED
            else:
                position = existing
                settlement = self._settle(position, indices)
                old_notional = position.notional
                position.entry_price = wdiv(
                    old_notional * position.entry_price + added * entry_price,
                    old_notional + added,
                )
                position.size += size_delta
                position.collateral += collateral
                # Settled through now, so the combined size starts a fresh entry index
                position.borrow_index_at_open = indices.borrow_index
                position.last_update = now
                action = PositionAction.INCREASED

            self._apply_oi(market, side, added)
            self._after_mutation()

        self.logger.position(action.value, trader, market_id, size_delta, price=entry_price,
                             collateral=collateral)
        return position.snapshot(), settlement

    def _check_caps(self, market: Market, side: Side, added: Decimal, existing: Optional[Position]) -> None:
        """Raise OICapExceededError if adding `added` on `side` breaches any cap."""
        if market.total_oi + added > market.max_oi:
            raise OICapExceededError(
                f"Market {market.market_id} OI cap {market.max_oi} exceeded",
                market_id=market.market_id, current=market.total_oi, added=added,
            )
        if market.max_side_oi is not None and market.side_oi(side) + added > market.max_side_oi:
            raise OICapExceededError(
                f"Market {market.market_id} {side.value} OI cap {market.max_side_oi} exceeded",
                market_id=market.market_id, current=market.side_oi(side), added=added,
            )
        if market.max_trader_oi is not None:
            current = existing.notional if existing else ZERO
            if current + added > market.max_trader_oi:
                raise OICapExceededError(
                    f"Per-trader cap {market.max_trader_oi} exceeded on market {market.market_id}",
                    market_id=market.market_id, current=current, added=added,
                )
        if self._config.max_global_oi is not None:
            total = sum((m.total_oi for m in self._markets.values()), ZERO)
            if total + added > self._config.max_global_oi:
                raise OICapExceededError(
                    f"Global OI cap {self._config.max_global_oi} exceeded",
                    current=total, added=added,
                )

    @staticmethod
    def _apply_oi(market: Market, side: Side, delta: Decimal) -> None:
        """Move the side aggregate by delta (negative to reduce)."""
        if side == Side.LONG:
            market.total_long_oi += delta
        else:
            market.total_short_oi += delta

    def decrease(
        self,
        caller: str,
        trader: str,
        market_id: int,
        size_reduction: Decimal,
        exit_price: Decimal,
        indices: IndexSnapshot,
    ) -> PositionChange:
        """
        Reduce (or fully close) a position at exit_price.

        Collateral is released pro rata to the closed fraction after the
        realized PnL has been applied.
        """
        self.access.require(caller, ROLE_ENGINE, "decrease")
        return self._reduce(trader, market_id, size_reduction, exit_price, indices,
                            action=PositionAction.DECREASED, release=True)

    def close(self, caller: str, trader: str, market_id: int, exit_price: Decimal,
              indices: IndexSnapshot) -> PositionChange:
        """Fully close a position at exit_price."""
        self.access.require(caller, ROLE_ENGINE, "close")
        with self._lock:
            size = self._require_position(trader, market_id).notional
        return self._reduce(trader, market_id, size, exit_price, indices,
                            action=PositionAction.DECREASED, release=True)

    def liquidate(
        self,
        caller: str,
        trader: str,
        market_id: int,
        size_reduction: Decimal,
        price: Decimal,
        penalty: Decimal,
        indices: IndexSnapshot,
    ) -> PositionChange:
        """
        Forcibly reduce a position at the mark price and charge a penalty.

        Collateral stays with the position on a partial liquidation; on a
        full one the remainder is released and any shortfall is reported
        as the deficit.
        """
        self.access.require(caller, ROLE_ENGINE, "liquidate")
        return self._reduce(trader, market_id, size_reduction, price, indices,
                            action=PositionAction.LIQUIDATED, release=False, deduction=penalty)

    def deleverage(
        self,
        caller: str,
        trader: str,
        market_id: int,
        size_reduction: Decimal,
        price: Decimal,
        haircut: Decimal,
        indices: IndexSnapshot,
    ) -> PositionChange:
        """
        Auto-deleverage a profitable position: reduce it at the mark price
        and withhold `haircut` from its realized profit.
        """
        self.access.require(caller, ROLE_ENGINE, "deleverage")
        return self._reduce(trader, market_id, size_reduction, price, indices,
                            action=PositionAction.DELEVERAGED, release=True, deduction=haircut)

    def _reduce(
        self,
        trader: str,
        market_id: int,
        size_reduction: Decimal,
        price: Decimal,
        indices: IndexSnapshot,
        action: PositionAction,
        release: bool,
        deduction: Decimal = ZERO,
    ) -> PositionChange:
        size_reduction = fp(size_reduction)
        price = fp(price)
        if not ZERO <= price <= 1:
            raise InvalidPriceError(f"price {price} outside [0, 1]", market_id=market_id)

        with self._lock:
            market = self._require_market(market_id)
            position = self._require_position(trader, market_id)
            if size_reduction <= 0 or size_reduction > position.notional:
                raise InvalidSizeError(
                    f"size_reduction must be in (0, {position.notional}], got {size_reduction}",
                    market_id=market_id,
                )

            settlement = self._settle(position, indices)

            side = position.side
            notional_before = position.notional
            closed_signed = size_reduction * side.sign
            realized = quantize((price - position.entry_price) * closed_signed)

            # Realized PnL and any carried fee debt hit collateral first
            capital = position.collateral + realized - position.fee_debt
            position.fee_debt = ZERO

            taken = min(fp(deduction), max(capital, ZERO))
            capital -= taken

            position.size -= closed_signed
            self._apply_oi(market, side, -size_reduction)

            released = ZERO
            deficit = ZERO
            if not position.is_open:
                released = max(capital, ZERO)
                deficit = max(-capital, ZERO)
                position.collateral = ZERO
                del self._positions[(trader, market_id)]
                del self._by_id[position.position_id]
                if action == PositionAction.DECREASED:
                    action = PositionAction.CLOSED
            elif capital < 0:
                # Underwater remainder: carry the hole as debt on the position
                position.collateral = ZERO
                position.fee_debt = -capital
            else:
                if release:
                    released = wmul(capital, wdiv(size_reduction, notional_before))
                position.collateral = capital - released

            position.last_update = self._clock()
            self._after_mutation()

        self.logger.position(action.value, trader, market_id, -closed_signed, price=price, pnl=realized,
                             released=released, deficit=deficit)
        return PositionChange(
            action=action,
            position=position.snapshot(),
            size_delta=-closed_signed,
            price=price,
            realized_pnl=realized,
            deduction=taken,
            collateral_released=released,
            deficit=deficit,
            settlement=settlement,
        )

    def add_collateral(self, caller: str, trader: str, market_id: int, amount: Decimal,
                       indices: IndexSnapshot) -> Position:
        """Top up a position's collateral (repays fee debt first)."""
        self.access.require(caller, ROLE_ENGINE, "add_collateral")
        amount = fp(amount)
        if amount <= 0:
            raise InvalidSizeError(f"amount must be positive, got {amount}", market_id=market_id)
        with self._lock:
            position = self._require_position(trader, market_id)
            self._settle(position, indices)
            repaid = min(amount, position.fee_debt)
            position.fee_debt -= repaid
            position.collateral += amount - repaid
            self._after_mutation()
        self.logger.position(PositionAction.COLLATERAL_ADDED.value, trader, market_id, ZERO, amount=amount)
        return position.snapshot()

    def withdraw_collateral(self, caller: str, trader: str, market_id: int, amount: Decimal,
                            indices: IndexSnapshot) -> Position:
        """
        Remove collateral from a position.

        Margin sufficiency against PI is the caller's responsibility; the
        ledger only enforces collateral >= 0.
        """
        self.access.require(caller, ROLE_ENGINE, "withdraw_collateral")
        amount = fp(amount)
        if amount <= 0:
            raise InvalidSizeError(f"amount must be positive, got {amount}", market_id=market_id)
        with self._lock:
            # Settle on a copy; the stored position changes only if the withdrawal passes
            settled = self._require_position(trader, market_id).snapshot()
            self._settle(settled, indices)
            if amount > settled.collateral:
                raise InvalidSizeError(
                    f"withdrawal {amount} exceeds collateral {settled.collateral} after fees",
                    market_id=market_id,
                )
            settled.collateral -= amount
            self._positions[(trader, market_id)] = settled
            self._after_mutation()
        self.logger.position(PositionAction.COLLATERAL_WITHDRAWN.value, trader, market_id, ZERO, amount=amount)
        return settled.snapshot()

    def _require_position(self, trader: str, market_id: int) -> Position:
        position = self._positions.get((trader, market_id))
        if position is None:
            raise PositionNotFoundError(
                f"No open position for {trader} on market {market_id}",
                trader=trader, market_id=market_id,
            )
        return position
