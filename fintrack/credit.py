from __future__ import annotations

import unicodedata

from fintrack.errors import ValidationError

PAYMENT_METHODS = {"CASH", "CREDIT_CARD"}
CREDIT_CARD_REPAYMENT_CATEGORY = "tin dung"


def normalize_category_key(value: str | None) -> str:
    """Case and diacritic folded form of a category, used for rule matching."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value.strip().lower())
    return "".join(ch for ch in decomposed if not "\u0300" <= ch <= "\u036f")


def normalize_payment_method(value: str | None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Invalid payment method.")
    normalized = value.strip().upper()
    if normalized not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method.")
    return normalized


def expense_affects_wallet(payment_method: str | None) -> bool:
    return payment_method != "CREDIT_CARD"


def is_credit_card_repayment(category: str | None, payment_method: str | None) -> bool:
    # Paying the card bill moves money, it is not new spending.
    return (
        expense_affects_wallet(payment_method)
        and normalize_category_key(category) == CREDIT_CARD_REPAYMENT_CATEGORY
    )
