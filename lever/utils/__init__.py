"""
Utility modules.
"""

from .logger import get_logger, setup_logger, EngineLogger
from .clock import Clock, ManualClock, system_clock, hours_between, seconds_between
from .fixed_point import (
    fp,
    quantize,
    quantize_up,
    to_decimal,
    wmul,
    wdiv,
    wexp,
    wsqrt,
    clamp,
    clamp_probability,
)

__all__ = [
    # Logger
    "get_logger",
    "setup_logger",
    "EngineLogger",
    # Time
    "Clock",
    "ManualClock",
    "system_clock",
    "hours_between",
    "seconds_between",
    # Fixed point
    "fp",
    "quantize",
    "quantize_up",
    "to_decimal",
    "wmul",
    "wdiv",
    "wexp",
    "wsqrt",
    "clamp",
    "clamp_probability",
]
