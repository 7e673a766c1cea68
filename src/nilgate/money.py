"""Minor-unit money helpers.

Deal amounts are arbitrary-precision integers in the settlement asset's
smallest unit (wei, cents). Floats are never accepted.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Sequence


def parse_minor_units(value: Any, field_name: str = "amount", allow_zero: bool = True) -> int:
    """Parse an integer minor-unit value from an int or a digit string."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer minor-unit value")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        parsed = int(value.strip())
    else:
        raise ValueError(f"{field_name} must be an integer minor-unit value")
    if parsed < 0:
        raise ValueError(f"{field_name} must be >= 0")
    if parsed == 0 and not allow_zero:
        raise ValueError(f"{field_name} must be > 0")
    return parsed


def minor_units_to_text(value: int) -> str:
    """Storage form: SQLite integers are 64-bit, deal amounts are not."""
    return str(int(value))


def format_minor_units(value: int, decimals: int = 2, currency: str = "") -> str:
    """Format minor units for display, e.g. 150000 -> '1500.00 USD'."""
    amount = Decimal(value).scaleb(-decimals)
    text = f"{amount:.{decimals}f}" if decimals > 0 else str(value)
    return f"{text} {currency}".strip()


def proportional_splits(amount: int, weights: Sequence[int]) -> list[int]:
    """Split ``amount`` by integer weights (e.g. basis points) with no loss.

    Uses the largest-remainder method: every share is floored, then the
    leftover units go one each to the largest fractional remainders, ties
    broken by position. The result always sums to ``amount``.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")
    if not weights:
        raise ValueError("weights must not be empty")
    if any(w < 0 for w in weights):
        raise ValueError("weights must be >= 0")
    total_weight = sum(weights)
    if total_weight == 0:
        raise ValueError("weights must not all be zero")

    floors = [amount * w // total_weight for w in weights]
    remainders = [amount * w % total_weight for w in weights]
    leftover = amount - sum(floors)
    order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
    for i in order[:leftover]:
        floors[i] += 1
    return floors
