"""
Unit tests for token amount calculations.

Tests base-unit conversion, conservative rounding, and error handling.
"""

import pytest
from decimal import Decimal

from depin_storage.core.pricing import (
    DEFAULT_TOKEN_DECIMALS,
    format_units,
    required_tokens,
    to_base_units,
)


class TestBaseUnits:
    """Test conversion of token amounts to base units."""

    def test_whole_amount(self):
        assert to_base_units(Decimal("5"), 18) == 5 * 10**18

    def test_fractional_amount(self):
        assert to_base_units(Decimal("1.5"), 6) == 1_500_000

    def test_sub_unit_remainder_rounds_up(self):
        """Never under-charge: any remainder below one base unit rounds up."""
        assert to_base_units(Decimal("0.0000001"), 6) == 1
        assert to_base_units(Decimal("1.0000001"), 6) == 1_000_001

    def test_zero_decimals(self):
        assert to_base_units(Decimal("2.01"), 0) == 3

    def test_large_amount_keeps_precision(self):
        amount = Decimal("123456789012345678901234.5")
        assert to_base_units(amount, 18) == 123456789012345678901234500000000000000000

    def test_negative_amount_raises_error(self):
        with pytest.raises(ValueError, match="amount must be >= 0"):
            to_base_units(Decimal("-1"), 18)

    def test_unsupported_decimals_raise_error(self):
        with pytest.raises(ValueError, match="Unsupported token decimals"):
            to_base_units(Decimal("1"), -1)
        with pytest.raises(ValueError, match="Unsupported token decimals"):
            to_base_units(Decimal("1"), 78)


class TestRequiredTokens:
    """Test purchase cost calculation."""

    def test_cost_is_price_times_gb(self):
        # 10 GB at 0.5 tokens/GB = 5 tokens
        assert required_tokens(Decimal("0.5"), 10, 18) == 5 * 10**18

    def test_default_decimals(self):
        assert DEFAULT_TOKEN_DECIMALS == 18
        assert required_tokens(Decimal("1.00"), 20, DEFAULT_TOKEN_DECIMALS) == 20 * 10**18

    def test_cost_rounds_up(self):
        # 3 GB at 0.3333333 tokens/GB with 6 decimals = 0.9999999 -> 1000000
        assert required_tokens(Decimal("0.3333333"), 3, 6) == 1_000_000

    @pytest.mark.parametrize("gb", [0, -5, 1.5, True])
    def test_invalid_gb_raises_error(self, gb):
        with pytest.raises(ValueError, match="gb must be a positive integer"):
            required_tokens(Decimal("1"), gb, 18)


class TestFormatUnits:
    """Test display formatting of base units."""

    def test_whole_tokens(self):
        assert format_units(5 * 10**18, 18) == "5"

    def test_fractional_tokens(self):
        assert format_units(1_500_000, 6) == "1.5"

    def test_zero(self):
        assert format_units(0, 18) == "0"

    def test_smallest_unit(self):
        assert format_units(1, 6) == "0.000001"

    def test_zero_decimals(self):
        assert format_units(42, 0) == "42"
