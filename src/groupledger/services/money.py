"""Conversion between decimal amounts and integer minor units.

Every balance calculation runs on integers; ``Decimal`` values only appear
when reading from the store and when rendering results.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from fractions import Fraction
from typing import Union

Amount = Union[Decimal, int, str, float]

DEFAULT_EXPONENT = 2

# ISO 4217 currencies whose minor unit is not the cent
CURRENCY_EXPONENTS: dict[str, int] = {
    "BHD": 3,
    "CLP": 0,
    "IDR": 0,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "TWD": 2,
    "UGX": 0,
    "VND": 0,
    "XAF": 0,
    "XOF": 0,
}


class InvalidAmountError(ValueError):
    pass


def currency_exponent(currency: str | None) -> int:
    if not currency:
        return DEFAULT_EXPONENT
    return CURRENCY_EXPONENTS.get(currency.strip().upper(), DEFAULT_EXPONENT)


def _to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmountError("amount must be a number, not a boolean")
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, int):
        value = Decimal(amount)
    elif isinstance(amount, float):
        value = Decimal(repr(amount))
    elif isinstance(amount, str):
        try:
            value = Decimal(amount.strip())
        except InvalidOperation as exc:
            raise InvalidAmountError(f"malformed amount: {amount!r}") from exc
    else:
        raise InvalidAmountError(f"unsupported amount type: {type(amount).__name__}")

    if not value.is_finite():
        raise InvalidAmountError(f"amount must be finite, got {amount!r}")
    return value


def to_cents(amount: Amount, exponent: int = DEFAULT_EXPONENT) -> int:
    """Convert a decimal amount to integer minor units.

    Rounds to the nearest minor unit with halves going away from zero, so
    ``to_cents("-0.005") == -1``.
    """
    value = _to_decimal(amount).scaleb(exponent)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_cents(cents: int, exponent: int = DEFAULT_EXPONENT) -> Decimal:
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise InvalidAmountError(f"minor units must be an integer, got {cents!r}")
    return Decimal(cents).scaleb(-exponent).quantize(Decimal(1).scaleb(-exponent))


def multiply_cents(cents: int, factor: Amount) -> int:
    """Exact ``cents * factor`` rounded half away from zero."""
    product = Fraction(cents) * Fraction(_to_decimal(factor))
    whole, rest = divmod(abs(product.numerator), product.denominator)
    if 2 * rest >= product.denominator:
        whole += 1
    return whole if product >= 0 else -whole
