"""
Configuration management for the risk engine.
Loads settings from environment variables with sensible defaults.

Each engine component takes its own config section; EngineConfig bundles
them. Per-market overrides (caps, resolution time, feed gates) live in
YAML market specs, see lever.config.markets.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

from ..utils.fixed_point import to_decimal


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None or value.strip() == "" or value.strip().lower() == "none":
        return None
    return to_decimal(value)


@dataclass
class PriceIndexConfig:
    """
    Probability Index smoothing and feed validation defaults.

    Per-market PriceConfig values are seeded from these.
    """
    alpha: Decimal = Decimal("0.10")
    max_spread_bps: Decimal = Decimal("500")
    max_tick_movement: Decimal = Decimal("0.10")
    min_liquidity_depth: Decimal = Decimal("1000")
    max_horizon_seconds: int = 30 * 24 * 3600
    volatility_window: int = 20
    max_price_age_seconds: int = 300


@dataclass
class ExecutionConfig:
    """Virtual execution market parameters."""
    virtual_depth: Decimal = Decimal("1000000")  # base reserve at creation
    base_spread_bps: Decimal = Decimal("10")
    spread_guard_threshold: Decimal = Decimal("0.02")
    widen_multiplier: Decimal = Decimal("1")
    min_price: Decimal = Decimal("0.001")


@dataclass
class MarginConfig:
    """Margin requirements (evaluated against PI only)."""
    max_leverage: Decimal = Decimal("10")
    maintenance_margin_ratio: Decimal = Decimal("0.05")
    liquidation_buffer: Decimal = Decimal("0.02")
    volatility_margin_factor: Decimal = Decimal("2")  # alpha_vol in IM


@dataclass
class LiquidationConfig:
    """
    Liquidation state machine parameters.

    Penalty split shares must sum to 1.
    """
    partial_fraction: Decimal = Decimal("0.5")
    penalty_rate: Decimal = Decimal("0.05")
    liquidator_share: Decimal = Decimal("0.5")
    protocol_share: Decimal = Decimal("0.1")
    pool_share: Decimal = Decimal("0.4")
    adl_max_positions: int = 50

    def __post_init__(self):
        total = self.liquidator_share + self.protocol_share + self.pool_share
        if total != Decimal(1):
            raise ValueError(f"Liquidation penalty shares must sum to 1, got {total}")
        if not Decimal(0) < self.partial_fraction <= Decimal(1):
            raise ValueError(f"partial_fraction must be in (0, 1], got {self.partial_fraction}")


@dataclass
class BorrowConfig:
    """
    Borrow fee engine parameters. Rates are per hour.
    """
    base_rate: Decimal = Decimal("0.0001")
    min_rate: Decimal = Decimal("0.00001")
    max_rate: Decimal = Decimal("0.005")
    smoothing_beta: Decimal = Decimal("0.15")
    max_hourly_increase: Decimal = Decimal("0.25")
    # M_util
    util_kink: Decimal = Decimal("0.6")
    util_quadratic: Decimal = Decimal("3")
    util_linear: Decimal = Decimal("10")
    # M_imb
    imbalance_coefficient: Decimal = Decimal("1")
    # M_vol
    volatility_reference: Decimal = Decimal("0.02")
    volatility_coefficient: Decimal = Decimal("0.5")
    # M_ttR
    ttr_flat_hours: Decimal = Decimal("48")
    ttr_kink_hours: Decimal = Decimal("12")
    ttr_quadratic: Decimal = Decimal("1")
    ttr_linear: Decimal = Decimal("2")
    # M_conc
    concentration_threshold: Decimal = Decimal("0.25")
    concentration_coefficient: Decimal = Decimal("2")


@dataclass
class FundingConfig:
    """Funding engine defaults (rate is per period)."""
    max_rate: Decimal = Decimal("0.0005")
    period_seconds: int = 3600
    imbalance_threshold: Decimal = Decimal("100000")


@dataclass
class LedgerConfig:
    """Ledger-wide caps and debug checks."""
    max_global_oi: Optional[Decimal] = None
    debug_check_invariants: bool = False


@dataclass
class PoolConfig:
    """Capital pool limits. None = no utilization hard cap."""
    max_utilization: Optional[Decimal] = None


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True


@dataclass
class EngineConfig:
    """All engine sections."""
    price: PriceIndexConfig = field(default_factory=PriceIndexConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    margin: MarginConfig = field(default_factory=MarginConfig)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    borrow: BorrowConfig = field(default_factory=BorrowConfig)
    funding: FundingConfig = field(default_factory=FundingConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    log: LogConfig = field(default_factory=LogConfig)


class Config:
    """
    Main configuration class.
    Singleton pattern to ensure consistent config across the application.
    """

    _instance: Optional['Config'] = None
    _initialized: bool = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, env_file: str = ".env"):
        if Config._initialized:
            return

        load_dotenv(env_file)

        self.engine = EngineConfig(
            price=self._load_price_config(),
            execution=self._load_execution_config(),
            margin=self._load_margin_config(),
            liquidation=self._load_liquidation_config(),
            borrow=self._load_borrow_config(),
            funding=self._load_funding_config(),
            ledger=self._load_ledger_config(),
            pool=self._load_pool_config(),
            log=self._load_log_config(),
        )

        Config._initialized = True

    @property
    def log(self) -> LogConfig:
        return self.engine.log

    def _load_price_config(self) -> PriceIndexConfig:
        """Load Probability Index configuration."""
        return PriceIndexConfig(
            alpha=to_decimal(os.getenv("PI_ALPHA", "0.10")),
            max_spread_bps=to_decimal(os.getenv("PI_MAX_SPREAD_BPS", "500")),
            max_tick_movement=to_decimal(os.getenv("PI_MAX_TICK_MOVEMENT", "0.10")),
            min_liquidity_depth=to_decimal(os.getenv("PI_MIN_LIQUIDITY_DEPTH", "1000")),
            max_horizon_seconds=int(os.getenv("PI_MAX_HORIZON_SECONDS", str(30 * 24 * 3600))),
            volatility_window=int(os.getenv("PI_VOLATILITY_WINDOW", "20")),
            max_price_age_seconds=int(os.getenv("MAX_PRICE_AGE_SECONDS", "300")),
        )

    def _load_execution_config(self) -> ExecutionConfig:
        """Load virtual execution market configuration."""
        return ExecutionConfig(
            virtual_depth=to_decimal(os.getenv("VAMM_VIRTUAL_DEPTH", "1000000")),
            base_spread_bps=to_decimal(os.getenv("VAMM_BASE_SPREAD_BPS", "10")),
            spread_guard_threshold=to_decimal(os.getenv("VAMM_SPREAD_GUARD_THRESHOLD", "0.02")),
            widen_multiplier=to_decimal(os.getenv("VAMM_WIDEN_MULTIPLIER", "1")),
            min_price=to_decimal(os.getenv("VAMM_MIN_PRICE", "0.001")),
        )

    def _load_margin_config(self) -> MarginConfig:
        """Load margin configuration."""
        return MarginConfig(
            max_leverage=to_decimal(os.getenv("MAX_LEVERAGE", "10")),
            maintenance_margin_ratio=to_decimal(os.getenv("MAINTENANCE_MARGIN_RATIO", "0.05")),
            liquidation_buffer=to_decimal(os.getenv("LIQUIDATION_BUFFER", "0.02")),
            volatility_margin_factor=to_decimal(os.getenv("VOLATILITY_MARGIN_FACTOR", "2")),
        )

    def _load_liquidation_config(self) -> LiquidationConfig:
        """Load liquidation configuration."""
        return LiquidationConfig(
            partial_fraction=to_decimal(os.getenv("LIQUIDATION_PARTIAL_FRACTION", "0.5")),
            penalty_rate=to_decimal(os.getenv("LIQUIDATION_PENALTY_RATE", "0.05")),
            liquidator_share=to_decimal(os.getenv("LIQUIDATOR_SHARE", "0.5")),
            protocol_share=to_decimal(os.getenv("PROTOCOL_SHARE", "0.1")),
            pool_share=to_decimal(os.getenv("POOL_SHARE", "0.4")),
            adl_max_positions=int(os.getenv("ADL_MAX_POSITIONS", "50")),
        )

    def _load_borrow_config(self) -> BorrowConfig:
        """Load borrow fee configuration (hourly rates)."""
        return BorrowConfig(
            base_rate=to_decimal(os.getenv("BORROW_BASE_RATE", "0.0001")),
            min_rate=to_decimal(os.getenv("BORROW_MIN_RATE", "0.00001")),
            max_rate=to_decimal(os.getenv("BORROW_MAX_RATE", "0.005")),
            smoothing_beta=to_decimal(os.getenv("BORROW_SMOOTHING_BETA", "0.15")),
            max_hourly_increase=to_decimal(os.getenv("BORROW_MAX_HOURLY_INCREASE", "0.25")),
        )

    def _load_funding_config(self) -> FundingConfig:
        """Load funding configuration."""
        return FundingConfig(
            max_rate=to_decimal(os.getenv("FUNDING_MAX_RATE", "0.0005")),
            period_seconds=int(os.getenv("FUNDING_PERIOD_SECONDS", "3600")),
            imbalance_threshold=to_decimal(os.getenv("FUNDING_IMBALANCE_THRESHOLD", "100000")),
        )

    def _load_ledger_config(self) -> LedgerConfig:
        """Load ledger caps."""
        return LedgerConfig(
            max_global_oi=_optional_decimal(os.getenv("MAX_GLOBAL_OI")),
            debug_check_invariants=os.getenv("LEDGER_DEBUG_INVARIANTS", "false").lower() == "true",
        )

    def _load_pool_config(self) -> PoolConfig:
        """Load capital pool limits."""
        return PoolConfig(
            max_utilization=_optional_decimal(os.getenv("POOL_MAX_UTILIZATION")),
        )

    def _load_log_config(self) -> LogConfig:
        """Load logging configuration."""
        return LogConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=os.getenv("LOG_DIR", "logs"),
            log_to_file=os.getenv("LOG_TO_FILE", "true").lower() == "true",
        )


def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()


def reset_config() -> None:
    """Drop the singleton so the next get_config() re-reads the environment."""
    Config._instance = None
    Config._initialized = False
