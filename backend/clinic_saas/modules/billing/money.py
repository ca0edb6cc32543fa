"""Money helpers.

Amounts are persisted as integer minor units (cents for USD). Conversions
round half up to the currency's precision.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

# ISO 4217 minor unit exponents for currencies with non-default precision
MINOR_UNITS = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
}
DEFAULT_MINOR_UNITS = 2

Number = Union[Decimal, int, str]


def minor_units(currency: str) -> int:
    """Number of decimal places used by ``currency``."""
    return MINOR_UNITS.get(currency.upper(), DEFAULT_MINOR_UNITS)


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor(amount: Number, currency: str) -> int:
    """Convert a major-unit amount (e.g. ``Decimal("12.34")``) to minor units."""
    return round_half_up(Decimal(str(amount)).scaleb(minor_units(currency)))


def from_minor(value: int, currency: str) -> Decimal:
    """Convert minor units back to a Decimal at the currency's precision."""
    places = minor_units(currency)
    quantum = Decimal(1).scaleb(-places)
    return Decimal(value).scaleb(-places).quantize(quantum)
