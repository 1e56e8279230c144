#!/usr/bin/env python3
"""
Currency Minor-Unit Conversion
Converts between human-readable Decimal amounts and integer minor units per
currency, and computes percentage fees on minor-unit amounts.

The decimal-places table is fixed platform policy and is not configurable.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Dict, Union

logger = logging.getLogger(__name__)

# Wide enough for wei-scale arithmetic (18 places on large ETH amounts)
_PRECISION = 60

SUPPORTED_FIAT = ["USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR"]
SUPPORTED_CRYPTO = ["BTC", "ETH"]
SUPPORTED_CURRENCIES = SUPPORTED_FIAT + SUPPORTED_CRYPTO

DECIMAL_PLACES: Dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "CAD": 2,
    "AUD": 2,
    "CHF": 2,
    "CNY": 2,
    "INR": 2,
    "JPY": 0,
    "BTC": 8,
    "ETH": 18,
}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "C$",
    "AUD": "A$",
    "CHF": "CHF ",
    "CNY": "¥",
    "INR": "₹",
    "BTC": "₿",
    "ETH": "Ξ",
}


class UnsupportedCurrencyError(ValueError):
    """Raised when a currency code is not in the decimal-places table"""


def normalize_currency(currency: str) -> str:
    return (currency or "").strip().upper()


def decimal_places(currency: str) -> int:
    code = normalize_currency(currency)
    try:
        return DECIMAL_PLACES[code]
    except KeyError:
        raise UnsupportedCurrencyError(f"Unsupported currency: {currency}") from None


def _as_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first to avoid binary float artifacts
    return Decimal(str(value))


def to_minor_units(amount: Union[str, int, float, Decimal], currency: str) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Rounds to the nearest minor unit with ties away from zero.

    Example:
        >>> to_minor_units(Decimal("12.345"), "USD")
        1235
    """
    places = decimal_places(currency)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = _as_decimal(amount).scaleb(places)
        return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_decimal(minor_units: int, currency: str) -> Decimal:
    """Convert integer minor units to an exact Decimal in major units"""
    places = decimal_places(currency)
    if isinstance(minor_units, bool) or not isinstance(minor_units, int):
        raise TypeError(f"minor_units must be int, got {type(minor_units).__name__}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(minor_units).scaleb(-places)


def split_fee(amount: int, percent: Union[str, int, Decimal]) -> int:
    """
    Percentage fee on a minor-unit amount, rounded to the nearest minor unit
    (ties away from zero).

    Example:
        >>> split_fee(60000, Decimal("3.6"))
        2160
    """
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        fee = Decimal(amount) * _as_decimal(percent) / Decimal(100)
        return int(fee.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_amount(minor_units: int, currency: str) -> str:
    """Human-readable amount for logs and notifications"""
    code = normalize_currency(currency)
    symbol = CURRENCY_SYMBOLS.get(code, "")
    value = to_decimal(minor_units, code)
    places = decimal_places(code)
    text = f"{value:,.{places}f}"
    return f"{symbol}{text}" if symbol else f"{text} {code}"
