"""
Domain: money helpers.

All amounts handled by the checkout pipeline are integers in the smallest
currency unit (pesewas, kobo, cents). Catalog rows that store decimal prices
are converted once, at the persistence boundary.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Union


class Currency(str, Enum):
    GHS = "GHS"
    NGN = "NGN"
    USD = "USD"
    ZAR = "ZAR"


def to_minor_units(amount: Union[Decimal, int, str]) -> int:
    """
    Convert a decimal currency amount to minor units (x100, half-up).

    Example:
        to_minor_units(Decimal("12.345"))  # 1235
    """

    value = Decimal(str(amount))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))
