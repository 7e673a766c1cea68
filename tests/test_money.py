"""Tests for minor-unit parsing and exact split helpers."""

import pytest

from nilgate.money import format_minor_units, parse_minor_units, proportional_splits


class TestParseMinorUnits:
    def test_accepts_ints_and_digit_strings(self):
        assert parse_minor_units(150000) == 150000
        assert parse_minor_units(" 42 ") == 42

    def test_keeps_arbitrary_precision(self):
        big = 10**30 + 7
        assert parse_minor_units(str(big)) == big

    @pytest.mark.parametrize("value", [1.5, True, "1.5", "abc", None])
    def test_rejects_non_integers(self, value):
        with pytest.raises(ValueError):
            parse_minor_units(value)

    def test_rejects_negative(self):
        with pytest.raises(ValueError, match=">= 0"):
            parse_minor_units(-1)

    def test_zero_can_be_refused(self):
        assert parse_minor_units(0) == 0
        with pytest.raises(ValueError, match="> 0"):
            parse_minor_units(0, allow_zero=False)


class TestProportionalSplits:
    def test_basis_points_70_30(self):
        assert proportional_splits(150000, [7000, 3000]) == [105000, 45000]

    def test_remainder_goes_to_earliest_largest(self):
        assert proportional_splits(100, [1, 1, 1]) == [34, 33, 33]

    def test_always_conserves_amount(self):
        amount = 10**24 + 1
        shares = proportional_splits(amount, [3333, 3333, 3334])
        assert sum(shares) == amount

    def test_rejects_bad_weights(self):
        with pytest.raises(ValueError):
            proportional_splits(100, [])
        with pytest.raises(ValueError):
            proportional_splits(100, [0, 0])
        with pytest.raises(ValueError):
            proportional_splits(100, [5, -1])


def test_format_minor_units():
    assert format_minor_units(150000, 2, "USD") == "1500.00 USD"
    assert format_minor_units(5, 2) == "0.05"
