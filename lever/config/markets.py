"""
Market spec loader.

Loads YAML market definitions from configs/markets/. A market spec carries
everything needed to create a market in the engine: initial PI, OI caps,
resolution time and optional per-market overrides of the feed gates,
execution depth and funding parameters.

Example (configs/markets/example.yml):

    markets:
      - market_id: 0
        name: "Fed cuts rates in March"
        initial_price: 0.42
        max_oi: 500000
        resolution_time: "2026-03-18T18:00:00+00:00"
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml

from ..utils.clock import ensure_utc
from ..utils.fixed_point import to_decimal


# Path to market configs directory
MARKETS_DIR = Path(__file__).parent.parent.parent / "configs" / "markets"

_OVERRIDE_KEYS = (
    "alpha",
    "max_spread_bps",
    "max_tick_movement",
    "min_liquidity_depth",
    "virtual_depth",
    "funding_max_rate",
    "funding_imbalance_threshold",
)


@dataclass
class MarketSpec:
    """
    Declarative market definition.

    Overrides left as None fall back to the engine config defaults.
    """
    market_id: int
    name: str
    initial_price: Decimal
    max_oi: Decimal
    max_side_oi: Optional[Decimal] = None
    max_trader_oi: Optional[Decimal] = None
    resolution_time: Optional[datetime] = None
    overrides: dict[str, Decimal] = field(default_factory=dict)

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty if valid)."""
        errors = []
        if self.market_id < 0:
            errors.append(f"market_id must be >= 0, got {self.market_id}")
        if not self.name:
            errors.append("name is required")
        if not Decimal(0) <= self.initial_price <= Decimal(1):
            errors.append(f"initial_price must be in [0, 1], got {self.initial_price}")
        if self.max_oi <= 0:
            errors.append(f"max_oi must be > 0, got {self.max_oi}")
        for key in ("max_side_oi", "max_trader_oi"):
            value = getattr(self, key)
            if value is not None and value <= 0:
                errors.append(f"{key} must be > 0 when set, got {value}")
        unknown = set(self.overrides) - set(_OVERRIDE_KEYS)
        if unknown:
            errors.append(f"unknown overrides: {sorted(unknown)}")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "name": self.name,
            "initial_price": str(self.initial_price),
            "max_oi": str(self.max_oi),
            "max_side_oi": str(self.max_side_oi) if self.max_side_oi is not None else None,
            "max_trader_oi": str(self.max_trader_oi) if self.max_trader_oi is not None else None,
            "resolution_time": self.resolution_time.isoformat() if self.resolution_time else None,
            "overrides": {k: str(v) for k, v in self.overrides.items()},
        }


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _parse_optional(raw: dict, key: str) -> Optional[Decimal]:
    value = raw.get(key)
    return to_decimal(str(value)) if value is not None else None


def parse_market_spec(raw: dict[str, Any]) -> MarketSpec:
    """
    Parse a single market mapping into a MarketSpec.

    Raises:
        ValueError: If required keys are missing or values are invalid
    """
    for key in ("market_id", "name", "initial_price", "max_oi"):
        if key not in raw:
            raise ValueError(f"market spec missing required key '{key}': {raw}")

    overrides = {
        key: to_decimal(str(raw[key]))
        for key in _OVERRIDE_KEYS
        if raw.get(key) is not None
    }

    spec = MarketSpec(
        market_id=int(raw["market_id"]),
        name=str(raw["name"]),
        initial_price=to_decimal(str(raw["initial_price"])),
        max_oi=to_decimal(str(raw["max_oi"])),
        max_side_oi=_parse_optional(raw, "max_side_oi"),
        max_trader_oi=_parse_optional(raw, "max_trader_oi"),
        resolution_time=_parse_time(raw.get("resolution_time")),
        overrides=overrides,
    )

    errors = spec.validate()
    if errors:
        raise ValueError(f"Invalid market spec '{spec.name}': {'; '.join(errors)}")
    return spec


def load_market_specs(source: str | Path) -> list[MarketSpec]:
    """
    Load market specs from a YAML file.

    Args:
        source: Path to a YAML file, or a file stem under MARKETS_DIR

    Returns:
        List of MarketSpec

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the YAML is empty, malformed or has duplicate ids
    """
    path = Path(source)
    if not path.exists():
        path = _resolve_stem(str(source))

    with open(path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if not raw or "markets" not in raw:
        raise ValueError(f"Empty or invalid market YAML in {path} (expected a 'markets' list)")

    specs = [parse_market_spec(entry) for entry in raw["markets"]]

    seen: set[int] = set()
    for spec in specs:
        if spec.market_id in seen:
            raise ValueError(f"Duplicate market_id {spec.market_id} in {path}")
        seen.add(spec.market_id)

    return specs


def _resolve_stem(stem: str) -> Path:
    for ext in (".yml", ".yaml"):
        path = MARKETS_DIR / f"{stem}{ext}"
        if path.exists():
            return path
    raise FileNotFoundError(
        f"Market config '{stem}' not found at {MARKETS_DIR}. "
        f"Available: {list_market_files()}"
    )


def list_market_files() -> list[str]:
    """List available market config stems under MARKETS_DIR."""
    if not MARKETS_DIR.exists():
        return []
    stems = {path.stem for path in MARKETS_DIR.glob("*.yml")}
    stems.update(path.stem for path in MARKETS_DIR.glob("*.yaml"))
    return sorted(stems)
