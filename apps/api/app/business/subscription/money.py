from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal

from babel.numbers import get_currency_precision, is_currency


def normalize_currency(code: str) -> str:
    return code.strip().upper()


def is_supported_currency(code: str) -> bool:
    normalized = normalize_currency(code)
    return len(normalized) == 3 and normalized.isalpha() and is_currency(normalized)


def minor_unit_precision(currency: str) -> int:
    """Number of fractional digits for a currency (2 for USD, 0 for JPY, 3 for KWD)."""
    return get_currency_precision(normalize_currency(currency))


def quantize_minor(amount: Decimal, currency: str) -> Decimal:
    """Round once to the currency's minor unit using banker's rounding."""
    exponent = Decimal(1).scaleb(-minor_unit_precision(currency))
    return Decimal(amount).quantize(exponent, rounding=ROUND_HALF_EVEN)


def minor_unit(currency: str) -> Decimal:
    return Decimal(1).scaleb(-minor_unit_precision(currency))
