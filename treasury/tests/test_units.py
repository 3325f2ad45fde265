"""
Unit Tests for USDC unit conversion and display helpers
"""

import pytest
from decimal import Decimal

from treasury.units import (
    MAX_MINOR_UNITS,
    InvalidAmountError,
    canonical_identity,
    explorer_url,
    format_display,
    from_minor_units,
    short_hash,
    short_identity,
    to_minor_units,
)


class TestToMinorUnits:
    """Tests for parsing decimal amounts."""

    @pytest.mark.parametrize("text,expected", [
        ("1", 1_000_000),
        ("25.50", 25_500_000),
        ("0.000001", 1),
        (" 12.5 ", 12_500_000),
        ("5.", 5_000_000),
        (".25", 250_000),
        ("1.500000000", 1_500_000),
        ("0", 0),
    ])
    def test_valid_amounts(self, text, expected):
        """Test that valid decimal strings parse to minor units."""
        assert to_minor_units(text) == expected

    @pytest.mark.parametrize("text", [
        "", "abc", "-1", "1e3", "1,000", "0.0000001", "NaN", "Infinity", "+5",
    ])
    def test_invalid_amounts_rejected(self, text):
        """Test that malformed or over-precise amounts are rejected."""
        with pytest.raises(InvalidAmountError):
            to_minor_units(text)

    def test_decimal_and_int_inputs(self):
        """Test that Decimal and int inputs are accepted."""
        assert to_minor_units(Decimal("600")) == 600_000_000
        assert to_minor_units(3) == 3_000_000

    def test_bool_is_not_an_amount(self):
        """Test that booleans are not treated as integers."""
        with pytest.raises(InvalidAmountError):
            to_minor_units(True)

    def test_upper_bound(self):
        """Test that amounts past the 64-bit range are rejected, not wrapped."""
        largest = from_minor_units(MAX_MINOR_UNITS)
        assert to_minor_units(str(largest)) == MAX_MINOR_UNITS
        with pytest.raises(InvalidAmountError):
            to_minor_units("18446744073709.551616")

    def test_many_significant_digits_not_rounded_away(self):
        """Test that a tiny fraction beyond 6 digits is still detected."""
        with pytest.raises(InvalidAmountError):
            to_minor_units("1.0000000000000000000000000000001")


class TestRoundTrip:
    """Tests for conversion stability."""

    @pytest.mark.parametrize("text", ["0", "1", "0.1", "123.456789", "999999.999999", "42.10"])
    def test_round_trip_is_stable(self, text):
        """Test that converting back and forth preserves the minor-unit value."""
        minor = to_minor_units(text)
        assert to_minor_units(from_minor_units(minor)) == minor
        assert to_minor_units(str(from_minor_units(minor))) == minor

    def test_from_minor_units_rejects_negative(self):
        """Test that negative minor units are rejected."""
        with pytest.raises(InvalidAmountError):
            from_minor_units(-1)


class TestDisplayHelpers:
    """Tests for display formatting."""

    def test_format_display(self):
        """Test thousands separators and two fraction digits."""
        assert format_display(1_234_500_000) == "1,234.50"
        assert format_display(0) == "0.00"
        assert format_display(5_000) == "0.01"
        assert format_display(4_999) == "0.00"

    def test_canonical_identity(self):
        """Test that hex addresses are lower-cased and other tokens kept verbatim."""
        address = "0xAbCdEf0123456789aBcDeF0123456789ABCDEF01"
        assert canonical_identity(f"  {address} ") == address.lower()
        assert canonical_identity("Alice") == "Alice"
        assert canonical_identity("Alice") != canonical_identity("alice")
        assert canonical_identity(None) == ""

    def test_short_forms(self):
        """Test abbreviated address and hash rendering."""
        address = "0x" + "ab" * 20
        assert short_identity(address) == "0xabab…abab"
        handle = "0x" + "1" * 64
        assert short_hash(handle) == "0x11111111…111111"
        assert explorer_url("https://sepolia.basescan.org/tx/", handle) == (
            f"https://sepolia.basescan.org/tx/{handle}"
        )
