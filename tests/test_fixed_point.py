"""
Tests for the fixed-point helpers.

Validates that:
1. quantize truncates and quantize_up rounds away from zero at 18 decimals
2. floats convert without binary artifacts
3. division by zero and negative square roots raise
"""

from decimal import Decimal

import pytest

from lever.utils.fixed_point import (
    clamp,
    clamp_probability,
    fp,
    quantize,
    quantize_up,
    to_decimal,
    wdiv,
    wexp,
    wmul,
    wsqrt,
    bps_to_fraction,
)


class TestRounding:
    """Rounding direction at the 18th decimal."""

    def test_quantize_truncates(self):
        assert quantize(Decimal("0.1234567890123456789")) == Decimal("0.123456789012345678")
        assert quantize(Decimal("-0.1234567890123456789")) == Decimal("-0.123456789012345678")

    def test_quantize_up_rounds_away_from_zero(self):
        assert quantize_up(Decimal("0.1234567890123456781")) == Decimal("0.123456789012345679")
        assert quantize_up(Decimal("-0.1234567890123456781")) == Decimal("-0.123456789012345679")

    def test_exact_values_unchanged(self):
        assert quantize_up(Decimal("0.5")) == Decimal("0.5")
        assert fp(1) == Decimal(1)

    def test_large_notionals_do_not_overflow(self):
        """1e30 at 18 decimals exceeds the default 28-digit context."""
        value = Decimal("1000000000000000000000000000000.000000000000000001")
        assert quantize(value) == value


class TestConversion:
    def test_float_goes_through_repr(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_decimal_passthrough(self):
        d = Decimal("0.42")
        assert to_decimal(d) is d


class TestArithmetic:
    """Multiply, divide, exp and sqrt helpers."""

    def test_wmul_wdiv(self):
        assert wmul("0.5", "0.2") == Decimal("0.1")
        assert wdiv(1, 3) == Decimal("0.333333333333333333")

    def test_wdiv_by_zero_raises(self):
        with pytest.raises(ZeroDivisionError):
            wdiv(1, 0)

    def test_wexp_zero_is_one(self):
        assert wexp(0) == Decimal(1)

    def test_wsqrt(self):
        assert wsqrt("0.25") == Decimal("0.5")
        with pytest.raises(ValueError):
            wsqrt(-1)

    def test_clamp_probability(self):
        assert clamp_probability("1.2") == Decimal(1)
        assert clamp_probability("-0.1") == Decimal(0)
        assert clamp("0.3", 0, 1) == Decimal("0.3")

    def test_bps_to_fraction(self):
        assert bps_to_fraction(25) == Decimal("0.0025")
