"""
Fixed-point math helpers.

All monetary and probability values in the engine are Decimals quantized
to 18 fractional digits (WAD precision). Intermediate math runs in a
dedicated high-precision context so that large notionals never overflow
the default 28-digit context during quantization.

Rounding:
- quantize() truncates toward zero (ROUND_DOWN)
- quantize_up() rounds away from zero, used for amounts owed by traders
"""

from decimal import Decimal, Context, ROUND_DOWN, ROUND_UP, ROUND_HALF_EVEN
from typing import Union

Number = Union[Decimal, int, float, str]

DECIMALS = 18
WAD_EXP = Decimal(1).scaleb(-DECIMALS)  # 1e-18

# 60 significant digits covers 1e30 notionals at 18 decimals with headroom
FP_CONTEXT = Context(prec=60, rounding=ROUND_HALF_EVEN)

ZERO = Decimal(0)
ONE = Decimal(1)
BPS = Decimal(10000)


def to_decimal(value: Number) -> Decimal:
    """
    Convert a number to Decimal without float artifacts.

    Floats go through repr() so 0.1 becomes Decimal("0.1"), not the binary
    expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def quantize(value: Number) -> Decimal:
    """Quantize to 18 decimals, truncating toward zero."""
    return to_decimal(value).quantize(WAD_EXP, rounding=ROUND_DOWN, context=FP_CONTEXT)


def quantize_up(value: Number) -> Decimal:
    """Quantize to 18 decimals, rounding away from zero."""
    return to_decimal(value).quantize(WAD_EXP, rounding=ROUND_UP, context=FP_CONTEXT)


def fp(value: Number) -> Decimal:
    """Shorthand for quantize(); reads well at call sites building state."""
    return quantize(value)


def wmul(a: Number, b: Number) -> Decimal:
    """Fixed-point multiply."""
    return quantize(FP_CONTEXT.multiply(to_decimal(a), to_decimal(b)))


def wdiv(a: Number, b: Number) -> Decimal:
    """
    Fixed-point divide.

    Raises:
        ZeroDivisionError: If b is zero
    """
    divisor = to_decimal(b)
    if divisor == 0:
        raise ZeroDivisionError("fixed-point division by zero")
    return quantize(FP_CONTEXT.divide(to_decimal(a), divisor))


def wexp(x: Number) -> Decimal:
    """e**x at fixed-point precision."""
    return quantize(FP_CONTEXT.exp(to_decimal(x)))


def wsqrt(x: Number) -> Decimal:
    """Square root at fixed-point precision (x must be >= 0)."""
    value = to_decimal(x)
    if value < 0:
        raise ValueError(f"sqrt of negative value: {value}")
    return quantize(FP_CONTEXT.sqrt(value))


def clamp(value: Number, low: Number, high: Number) -> Decimal:
    """Clamp value into [low, high]."""
    v = to_decimal(value)
    lo = to_decimal(low)
    hi = to_decimal(high)
    if v < lo:
        return lo
    if v > hi:
        return hi
    return v


def clamp_probability(value: Number) -> Decimal:
    """Clamp into the probability range [0, 1] and quantize."""
    return quantize(clamp(value, ZERO, ONE))


def bps_to_fraction(bps: Number) -> Decimal:
    """Convert basis points to a fraction (5 bps -> 0.0005)."""
    return wdiv(bps, BPS)
