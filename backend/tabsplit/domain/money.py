# backend/tabsplit/domain/money.py
from __future__ import annotations

from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_EVEN,
    ROUND_HALF_UP,
    Context,
    Decimal,
    InvalidOperation,
)
from enum import Enum
from typing import Dict


class MoneyError(ValueError):
    """Raised when currency/money parsing or formatting fails."""


# Arithmetic context for all engine math.
WORKING_CONTEXT = Context(prec=50, rounding=ROUND_HALF_EVEN)

DEFAULT_PRECISION = 2

# ISO 4217 minor units. Anything not listed uses DEFAULT_PRECISION.
_PRECISION_BY_CURRENCY: Dict[str, int] = {
    # zero decimal
    "BIF": 0,
    "CLP": 0,
    "DJF": 0,
    "GNF": 0,
    "ISK": 0,
    "JPY": 0,
    "KMF": 0,
    "KRW": 0,
    "PYG": 0,
    "RWF": 0,
    "UGX": 0,
    "VND": 0,
    "VUV": 0,
    "XAF": 0,
    "XOF": 0,
    "XPF": 0,
    # three decimal
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "TND": 3,
    # two decimal
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "AUD": 2,
    "CAD": 2,
    "CHF": 2,
    "CNY": 2,
    "HKD": 2,
    "INR": 2,
    "MXN": 2,
    "NZD": 2,
    "SEK": 2,
    "SGD": 2,
    "THB": 2,
}


class RoundingMode(str, Enum):
    ROUND_HALF_UP = "roundHalfUp"
    ROUND_HALF_EVEN = "roundHalfEven"
    FLOOR = "floor"
    CEIL = "ceil"


_DECIMAL_ROUNDING = {
    RoundingMode.ROUND_HALF_UP: ROUND_HALF_UP,
    RoundingMode.ROUND_HALF_EVEN: ROUND_HALF_EVEN,
    RoundingMode.FLOOR: ROUND_FLOOR,
    RoundingMode.CEIL: ROUND_CEILING,
}


def precision(currency_code: str) -> int:
    """
    Decimal places (minor units) for a currency code.

      precision("USD") -> 2
      precision("vnd") -> 0
      precision("BHD") -> 3
      precision("XXX") -> 2 (unknown, default)
    """
    if not isinstance(currency_code, str):
        raise MoneyError("currency code must be a string")
    return _PRECISION_BY_CURRENCY.get(currency_code.strip().upper(), DEFAULT_PRECISION)


def supported_currencies() -> list[str]:
    return sorted(_PRECISION_BY_CURRENCY)


def smallest_unit(places: int) -> Decimal:
    """
    Smallest representable amount at the given precision: 2 -> 0.01, 0 -> 1.
    """
    _check_places(places)
    return Decimal(1).scaleb(-places)


def round_to_places(value: Decimal, places: int, mode: RoundingMode) -> Decimal:
    """
    Round an exact decimal to `places` decimal places.

    ROUND_HALF_UP rounds ties away from zero (-1.005 -> -1.01),
    ROUND_HALF_EVEN rounds ties to the even digit (2.345 -> 2.34),
    FLOOR and CEIL round toward -inf and +inf.
    """
    if not isinstance(value, Decimal):
        raise MoneyError("value must be a Decimal")
    _check_places(places)
    try:
        rounding = _DECIMAL_ROUNDING[RoundingMode(mode)]
    except ValueError as e:
        raise MoneyError(f"unknown rounding mode: {mode}") from e
    return value.quantize(smallest_unit(places), rounding=rounding, context=WORKING_CONTEXT)


def round_for_currency(value: Decimal, currency_code: str, mode: RoundingMode) -> Decimal:
    return round_to_places(value, precision(currency_code), mode)


def is_whole_units(value: Decimal, places: int) -> bool:
    """
    True when `value` carries no digits beyond `places` decimal places.
    """
    return value == round_to_places(value, places, RoundingMode.FLOOR)


def equal_within_precision(a: Decimal, b: Decimal, currency_code: str) -> bool:
    """
    True when |a - b| is less than one smallest unit of the currency.
    """
    return abs(a - b) < smallest_unit(precision(currency_code))


def to_decimal(value: object, *, field: str = "value") -> Decimal:
    """
    Convert a str/int/Decimal into a finite Decimal.

    Floats are rejected. Money travels as strings or integers.

      "12.34" -> Decimal("12.34")
      7       -> Decimal("7")
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise MoneyError(f"{field} must be a decimal string or integer, not {type(value).__name__}")
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, int):
        d = Decimal(value)
    elif isinstance(value, str):
        try:
            d = Decimal(value.strip())
        except InvalidOperation as e:
            raise MoneyError(f"invalid decimal value for {field}: {value!r}") from e
    else:
        raise MoneyError(f"{field} must be a decimal string or integer")

    if not d.is_finite():
        raise MoneyError(f"{field} must be finite")
    return d


def format_amount(value: Decimal, currency_code: str) -> str:
    """
    Format with the currency's fixed number of places: ("10.5", USD) -> "10.50".
    """
    places = precision(currency_code)
    rounded = round_to_places(value, places, RoundingMode.ROUND_HALF_UP)
    return f"{rounded:.{places}f}"


def _check_places(places: int) -> None:
    if isinstance(places, bool) or not isinstance(places, int) or not 0 <= places <= 4:
        raise MoneyError("precision must be an int between 0 and 4")
