from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from fintrack.errors import InvalidAmount, ValidationError

SUPPORTED_CURRENCIES = ("DKK", "VND")

# Number of implied decimal places in the stored integer amount.
MINOR_DIGITS: dict[str, int] = {
    "DKK": 2,
    "VND": 0,
}
MINOR_PER_MAJOR: dict[str, int] = {
    currency: 10**digits for currency, digits in MINOR_DIGITS.items()
}

# Largest amount a signed 64-bit INTEGER column holds.
MAX_MINOR_AMOUNT = 2**63 - 1

_WHITESPACE = re.compile(r"\s+")


def normalize_currency(value: str) -> str:
    if not isinstance(value, str):
        raise ValidationError("Invalid currency.")
    normalized = value.strip().upper()
    if normalized not in MINOR_DIGITS:
        raise ValidationError(f"Unsupported currency: {normalized or value!r}")
    return normalized


def to_minor(amount_major: Decimal | int | str, currency: str) -> int:
    """Scale a major-unit amount to integer minor units, rounding half away from zero."""
    normalized = normalize_currency(currency)
    try:
        scaled = _coerce_amount(amount_major) * MINOR_PER_MAJOR[normalized]
        amount_minor = int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise InvalidAmount("Amount is too large.") from exc
    if abs(amount_minor) > MAX_MINOR_AMOUNT:
        raise InvalidAmount("Amount is too large.")
    return amount_minor


def to_major(amount_minor: int, currency: str) -> Decimal:
    normalized = normalize_currency(currency)
    return Decimal(int(amount_minor)).scaleb(-MINOR_DIGITS[normalized])


def normalize_amount_for_api(raw: str) -> str:
    """Canonicalize a user-typed amount such as ``"1.234,50"`` to ``"1234.50"``.

    ``.`` is a thousands separator and ``,`` the decimal separator. Blank
    input yields ``""``; the result is not validated here.
    """
    cleaned = _WHITESPACE.sub("", raw.strip()).replace(".", "")
    if not cleaned:
        return ""
    int_part, *dec_parts = cleaned.split(",")
    if not dec_parts:
        return int_part
    return f"{int_part or '0'}.{''.join(dec_parts)}"


def parse_amount(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        raise InvalidAmount("Amount is required.")
    if isinstance(value, bool):
        raise InvalidAmount("Amount must be a number.")
    if isinstance(value, str):
        # A comma marks locale input such as "1.234,50".
        value = normalize_amount_for_api(value) if "," in value else value.strip()
        value = value or "0"
    try:
        amount = _coerce_amount(value)
    except InvalidOperation as exc:
        raise InvalidAmount("Amount must be a number.") from exc
    if not amount.is_finite():
        raise InvalidAmount("Amount must be a number.")
    return amount


def parse_positive_amount(value: Decimal | int | float | str | None) -> Decimal:
    amount = parse_amount(value)
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero.")
    return amount


def effective_rate(from_amount_dkk: int, to_amount_vnd: int) -> str:
    """VND received per DKK spent, both legs in major units."""
    from_major = to_major(from_amount_dkk, "DKK")
    to_major_vnd = to_major(to_amount_vnd, "VND")
    if from_major <= 0:
        raise InvalidAmount("fromAmountDkk must be greater than zero.")
    rate = (to_major_vnd / from_major).quantize(
        Decimal("0.0000000001"), rounding=ROUND_HALF_UP
    )
    return format(rate.normalize(), "f")


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
