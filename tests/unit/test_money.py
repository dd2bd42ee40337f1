"""
Unit tests for fixed-point money math.

Tests cover:
- Parsing decimal strings into micro-units (truncation, signs, bad input)
- Formatting micro-units for display and storage
- Share, payout and percentage arithmetic with truncating division
"""
import pytest

from parlay.core.retry import ValidationError
from parlay.domain.money import (
    SCALE,
    calculate_payout,
    calculate_percentage,
    calculate_potential_payout,
    calculate_shares,
    compare_micro,
    divide_by_price,
    from_micro,
    is_positive,
    max_micro,
    min_micro,
    multiply_by_price,
    ratio_micro,
    subtract_micro,
    to_micro,
    to_storage,
)


class TestToMicro:
    def test_whole_and_fractional(self):
        assert to_micro("100") == 100 * SCALE
        assert to_micro("100.50") == 100_500_000
        assert to_micro("0.40") == 400_000
        assert to_micro(".5") == 500_000

    def test_truncates_beyond_six_places(self):
        assert to_micro("1.2345678") == 1_234_567
        assert to_micro("0.0000009") == 0

    def test_signs(self):
        assert to_micro("-2.5") == -2_500_000
        assert to_micro("+2.5") == 2_500_000

    def test_empty_is_zero(self):
        assert to_micro("") == 0
        assert to_micro("   ") == 0

    def test_int_is_whole_units(self):
        assert to_micro(3) == 3 * SCALE

    @pytest.mark.parametrize("bad", ["abc", "1.2.3", "1e5", "0x10", "1,000", ".", "-", "+", "-."])
    def test_rejects_non_decimal(self, bad):
        with pytest.raises(ValidationError):
            to_micro(bad)

    def test_rejects_bool(self):
        with pytest.raises(ValidationError):
            to_micro(True)


class TestFromMicro:
    def test_display_truncates_to_two_places(self):
        assert from_micro(1_999_999) == "1.99"
        assert from_micro(250 * SCALE) == "250.00"

    def test_small_and_negative(self):
        assert from_micro(5) == "0.00"
        assert from_micro(5, 6) == "0.000005"
        assert from_micro(-1_500_000) == "-1.50"

    def test_negative_that_truncates_to_zero_has_no_sign(self):
        assert from_micro(-1000) == "0.00"
        assert from_micro(to_micro("-0.001")) == "0.00"
        assert from_micro(-1000, 6) == "-0.001000"

    @pytest.mark.parametrize(
        "amount",
        ["0.00", "0.01", "1.00", "12.34", "100.50", "999999.99", "-2.50", "-0.01"],
    )
    def test_two_place_amounts_survive_conversion(self, amount):
        assert from_micro(to_micro(amount)) == amount

    def test_zero_places(self):
        assert from_micro(1_999_999, 0) == "1"

    def test_storage_keeps_six_places(self):
        assert to_storage(123_456_789) == "123.456789"
        assert to_storage(0) == "0.000000"


class TestPriceMath:
    def test_shares_for_stake(self):
        # 100 at 0.40 buys 250 shares
        assert calculate_shares(to_micro("100"), to_micro("0.40")) == 250 * SCALE

    def test_shares_truncate(self):
        # 10 / 0.30 = 33.333333...
        assert calculate_shares(to_micro("10"), to_micro("0.30")) == 33_333_333

    def test_payout_is_one_per_share(self):
        assert calculate_payout(250 * SCALE) == 250 * SCALE
        assert calculate_potential_payout(to_micro("100"), to_micro("0.50")) == 200 * SCALE

    def test_chained_potential_payout(self):
        first = calculate_potential_payout(to_micro("100"), to_micro("0.50"))
        second = calculate_potential_payout(first, to_micro("0.80"))
        assert from_micro(second) == "250.00"

    def test_multiply_by_price(self):
        assert multiply_by_price(200 * SCALE, to_micro("0.51")) == 102 * SCALE

    def test_divide_by_zero_price(self):
        with pytest.raises(ValidationError):
            divide_by_price(SCALE, 0)

    def test_negative_division_truncates_toward_zero(self):
        assert multiply_by_price(-3, 500_000) == -1


class TestPercentAndRatio:
    def test_two_percent_of_profit(self):
        assert calculate_percentage(100 * SCALE, 2, 100) == 2 * SCALE

    def test_percentage_truncates(self):
        assert calculate_percentage(1, 2, 100) == 0

    def test_percentage_zero_denominator(self):
        with pytest.raises(ValidationError):
            calculate_percentage(SCALE, 1, 0)

    def test_ratio(self):
        assert ratio_micro(50, 100) == 500_000
        assert ratio_micro(1, 0) == 0


class TestComparisons:
    def test_helpers(self):
        assert is_positive(1)
        assert not is_positive(0)
        assert min_micro(1, 2) == 1
        assert max_micro(1, 2) == 2
        assert subtract_micro(5, 7) == -2
        assert compare_micro(1, 2) == -1
        assert compare_micro(2, 2) == 0
        assert compare_micro(3, 2) == 1
