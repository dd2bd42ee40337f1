"""Exact fixed-point money and price math.

Currency amounts and prices travel as decimal strings ("100.00", "0.40") and
are computed as integers scaled by 10^6 ("micro-units"). Nothing in here
touches float. Division truncates toward zero, matching the integer
semantics used for settlement and fees.
"""

from typing import Union

from parlay.core.retry import ValidationError

USDC_DECIMALS = 6
SCALE = 10**USDC_DECIMALS

# Places used when persisting amounts; display defaults to 2
STORAGE_PLACES = 6
DISPLAY_PLACES = 2

AmountLike = Union[str, int]


def _div(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def to_micro(amount: AmountLike) -> int:
    """Convert a decimal string to micro-units.

    Extra decimal places beyond six are truncated. Empty input is zero.
    Integers are taken as whole currency units.

    Raises:
        ValidationError: If the string is not a plain decimal number.
    """
    if isinstance(amount, bool):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if isinstance(amount, int):
        return amount * SCALE

    text = (amount or "").strip()
    if not text:
        return 0

    negative = text.startswith("-")
    if negative or text.startswith("+"):
        text = text[1:]

    whole, _, fraction = text.partition(".")
    if not whole and not fraction:
        raise ValidationError(f"Invalid amount: {amount!r}")
    whole = whole or "0"
    if not whole.isdigit() or (fraction and not fraction.isdigit()):
        raise ValidationError(f"Invalid amount: {amount!r}")

    fraction = fraction.ljust(USDC_DECIMALS, "0")[:USDC_DECIMALS]
    value = int(whole) * SCALE + int(fraction)
    return -value if negative else value


def from_micro(micro: int, decimal_places: int = DISPLAY_PLACES) -> str:
    """Convert micro-units back to a decimal string, truncating extra places.

    A value that truncates to zero is rendered without a sign.
    """
    digits = str(abs(micro)).rjust(USDC_DECIMALS + 1, "0")
    whole = digits[:-USDC_DECIMALS]
    fraction = digits[-USDC_DECIMALS:][:decimal_places].ljust(decimal_places, "0")

    result = f"{whole}.{fraction}" if decimal_places > 0 else whole
    if micro < 0 and result.strip("0."):
        return f"-{result}"
    return result


def to_storage(micro: int) -> str:
    return from_micro(micro, STORAGE_PLACES)


def multiply_by_price(micro: int, price_micro: int) -> int:
    """amount * price, both scaled, result scaled."""
    return _div(micro * price_micro, SCALE)


def divide_by_price(micro: int, price_micro: int) -> int:
    """amount / price, both scaled, result scaled.

    Raises:
        ValidationError: If price is zero.
    """
    if price_micro == 0:
        raise ValidationError("Division by zero: price cannot be 0")
    return _div(micro * SCALE, price_micro)


def calculate_shares(stake_micro: int, price_micro: int) -> int:
    """Shares bought for a stake at a price."""
    return divide_by_price(stake_micro, price_micro)


def calculate_payout(shares_micro: int) -> int:
    """A winning share redeems for exactly one currency unit."""
    return shares_micro


def calculate_potential_payout(stake_micro: int, price_micro: int) -> int:
    return calculate_payout(calculate_shares(stake_micro, price_micro))


def calculate_percentage(micro: int, numerator: int, denominator: int) -> int:
    """micro * numerator / denominator with integer division."""
    if denominator == 0:
        raise ValidationError("Percentage denominator cannot be 0")
    return _div(micro * numerator, denominator)


def add_micro(a: int, b: int) -> int:
    return a + b


def subtract_micro(a: int, b: int) -> int:
    return a - b


def compare_micro(a: int, b: int) -> int:
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def is_positive(micro: int) -> bool:
    return micro > 0


def min_micro(a: int, b: int) -> int:
    return a if a < b else b


def max_micro(a: int, b: int) -> int:
    return a if a > b else b


def ratio_micro(numerator: int, denominator: int) -> int:
    """numerator / denominator as a scaled ratio (1.0 == SCALE).

    Used for fill percentage and price impact. A zero denominator yields 0.
    """
    if denominator == 0:
        return 0
    return _div(numerator * SCALE, denominator)
