"""
Numeric helpers shared by pricing and materialization.

All money is integer cents. Rounding is half-up so a price that lands on
half a cent matches what the customer-facing documents show.
"""

from __future__ import annotations

import math
from typing import Any


def round_cents(amount: float) -> int:
    """Round a cent amount half-up to an integer."""
    return int(math.floor(amount + 0.5))


def apply_markup(base_cents: float, markup_percent: float) -> int:
    return round_cents(base_cents * (1 + (markup_percent or 0) / 100))


def format_cents(cents: int | None) -> str:
    return f"${(cents or 0) / 100:.2f}"


def to_number(value: Any) -> float | None:
    """Best-effort numeric coercion for model output; None for anything unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", ""))
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def to_cents(value: Any) -> int | None:
    number = to_number(value)
    if number is None:
        return None
    return round_cents(number)
