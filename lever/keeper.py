"""
Keeper cycle.

Scheduled, bounded-latency maintenance off the trade path:
- ingest a batch of feed observations
- recenter vAMM pools that drifted from PI
- accrue borrow and funding indices
- optionally liquidate positions below maintenance

Failures on one market are logged and do not stop the cycle for others.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from .core.errors import LeverError
from .core.types import IngestResult, LiquidationResult
from .utils.fixed_point import BPS
from .utils.logger import get_logger

if TYPE_CHECKING:
    from .engine import RiskEngine


@dataclass
class KeeperReport:
    """Outcome of one keeper cycle."""
    ingested: list[IngestResult] = field(default_factory=list)
    recentered: list[int] = field(default_factory=list)
    accrued: list[int] = field(default_factory=list)
    liquidations: list[LiquidationResult] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def accepted(self) -> int:
        return sum(1 for r in self.ingested if r.accepted)

    @property
    def rejected(self) -> int:
        return sum(1 for r in self.ingested if not r.accepted)

    def summary(self) -> str:
        return (
            f"ingested={self.accepted}/{len(self.ingested)} recentered={len(self.recentered)} "
            f"accrued={len(self.accrued)} liquidations={len(self.liquidations)} errors={len(self.errors)}"
        )


class Keeper:
    """
    Drives an engine's periodic tasks as `caller`.

    The caller must be in the engine's keeper allow-sets, and in the
    liquidator allow-set when liquidate=True.
    """

    def __init__(
        self,
        engine: "RiskEngine",
        caller: str,
        recenter_threshold_bps: Decimal = Decimal("50"),
        liquidate: bool = False,
    ):
        self.engine = engine
        self.caller = caller
        self.recenter_threshold_bps = recenter_threshold_bps
        self.liquidate = liquidate
        self.logger = get_logger()

    def needs_recenter(self, market_id: int) -> bool:
        """True when vAMM spot deviates from PI by more than the threshold."""
        pi = self.engine.get_mark_price(market_id)
        spot = self.engine.vamm.get_spot_price(market_id)
        if pi <= 0:
            return spot > 0
        return abs(spot - pi) / pi * BPS > self.recenter_threshold_bps

    def run_cycle(self, updates: Iterable[tuple] = (), market_ids: Optional[Iterable[int]] = None) -> KeeperReport:
        """
        Run one maintenance cycle.

        Args:
            updates: (market_id, raw_price, spread_bps, depth) feed observations
            market_ids: Markets to maintain (defaults to all)

        Returns:
            KeeperReport
        """
        report = KeeperReport()
        report.ingested = self.engine.ingest_batch(self.caller, list(updates))

        for market_id in (market_ids if market_ids is not None else self.engine.market_ids()):
            try:
                if self.engine.is_market_resolved(market_id):
                    continue
                if self.needs_recenter(market_id):
                    self.engine.recenter(self.caller, market_id)
                    report.recentered.append(market_id)
                self.engine.accrue(self.caller, market_id)
                report.accrued.append(market_id)
                if self.liquidate:
                    report.liquidations.extend(self._liquidate_market(market_id))
            except LeverError as e:
                report.errors[market_id] = f"{e.code}: {e.message}"
                self.logger.warning(f"Keeper cycle failed for market {market_id}: {e.message}")

        self.logger.info(f"Keeper cycle: {report.summary()}")
        return report

    def _liquidate_market(self, market_id: int) -> list[LiquidationResult]:
        results = []
        for position in self.engine.liquidation.liquidatable_positions(market_id):
            results.append(self.engine.liquidate(self.caller, position.trader, market_id))
        return results

