from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection

from fintrack.balance_engine import (
    NO_EFFECT,
    LedgerEffect,
    exchange_effect,
    exchange_row_effect,
    get_balances,
    transaction_effect,
    transaction_row_effect,
)
from fintrack.credit import normalize_payment_method
from fintrack.db import (
    exchanges,
    from_storage,
    get_wallet_by_currency,
    lock_user_ledger,
    new_id,
    to_storage,
    transactions,
)
from fintrack.errors import InsufficientBalance, InvalidAmount, NotFound, ValidationError
from fintrack.money import (
    SUPPORTED_CURRENCIES,
    effective_rate,
    normalize_currency,
    parse_amount,
    parse_positive_amount,
    to_major,
    to_minor,
)
from fintrack.time_windows import ensure_utc, parse_date_input, utc_now

logger = structlog.get_logger(__name__)

CATEGORY_MAX_LENGTH = 255
NOTE_MAX_LENGTH = 255
PROVIDER_MAX_LENGTH = 255


class TransactionType:
    values = {"INCOME", "EXPENSE"}

    @classmethod
    def validate(cls, value: str) -> str:
        if not isinstance(value, str):
            raise ValidationError("Invalid transaction type.")
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValidationError("Invalid transaction type.")
        return normalized


class HistoryKind:
    values = {"income", "expense", "exchange"}

    @classmethod
    def validate(cls, value: str | None) -> str | None:
        if not value:
            return None
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid type.")
        return normalized


class TransactionRecord(BaseModel):
    id: str
    user_id: str
    wallet_id: str
    type: str
    amount: int
    currency: str
    payment_method: str | None = None
    category: str | None = None
    note: str | None = None
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "TransactionRecord":
        data = dict(row)
        data["created_at"] = from_storage(data["created_at"])
        return cls(**data)

    @property
    def amount_major(self) -> Decimal:
        return to_major(self.amount, self.currency)


class ExchangeRecord(BaseModel):
    id: str
    user_id: str
    from_wallet_id: str
    to_wallet_id: str
    from_amount_dkk: int
    to_amount_vnd: int
    effective_rate: str
    fee_amount: int | None = None
    fee_currency: str | None = None
    provider: str | None = None
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "ExchangeRecord":
        data = dict(row)
        data["created_at"] = from_storage(data["created_at"])
        return cls(**data)


class HistoryItem(BaseModel):
    kind: str
    id: str
    created_at: datetime
    transaction: TransactionRecord | None = None
    exchange: ExchangeRecord | None = None


class TransactionPatch(BaseModel):
    """Fields to change on a transaction; omitted fields keep their stored value."""

    amount: Decimal | str | None = None
    currency: str | None = None
    category: str | None = None
    note: str | None = None
    payment_method: str | None = None
    created_at: datetime | str | None = None


class ExchangePatch(BaseModel):
    from_amount_dkk: Decimal | str | None = None
    to_amount_vnd: Decimal | str | None = None
    fee_amount: Decimal | str | None = None
    fee_currency: str | None = None
    provider: str | None = None
    created_at: datetime | str | None = None


def clean_text(value: object, field_name: str, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Invalid {field_name}.")
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > max_length:
        raise ValidationError(f"{field_name.capitalize()} must be at most {max_length} characters.")
    return cleaned


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValidationError("Invalid createdAt.")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError("Invalid createdAt.") from exc
    return ensure_utc(parsed)


def parse_range_bound(value: str | None, time_zone: str, end_of_day: bool = False) -> datetime | None:
    """Resolve a history filter bound: a local calendar day or an ISO instant."""
    if not value:
        return None
    if len(value) == 10 and value[4:5] == "-":
        resolved = parse_date_input(value, time_zone, end_of_day=end_of_day)
        if resolved is None:
            raise ValidationError("Invalid date range.")
        return resolved
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError("Invalid date range.") from exc
    return ensure_utc(parsed)


def amount_to_minor(amount_major: Decimal, currency: str) -> int:
    amount_minor = to_minor(amount_major, currency)
    if amount_minor <= 0:
        raise InvalidAmount("Amount must be greater than zero.")
    return amount_minor


def check_solvency(
    conn: Connection, user_id: str, old: LedgerEffect, new: LedgerEffect
) -> dict[str, int]:
    """Reject replacing ``old`` by ``new`` when it would leave a balance unfunded.

    ``without`` is the balance with the replaced row taken out. A debit that
    grows must be covered by it, and a net effect that shrinks must not take
    the balance below zero. Unchanged rows always pass.
    """
    balances = get_balances(conn, user_id)
    for currency in SUPPORTED_CURRENCIES:
        without = balances[currency] - old.net[currency]
        new_debit = new.debit[currency]
        if new_debit > old.debit[currency] and without < new_debit:
            _reject(user_id, currency, without, new_debit)
        if new.net[currency] < old.net[currency] and without + new.net[currency] < 0:
            _reject(user_id, currency, without, max(new_debit, -new.net[currency]))
    return balances


def _reject(user_id: str, currency: str, available: int, required: int) -> None:
    logger.warning(
        "mutation_rejected",
        user_id=user_id,
        currency=currency,
        available=available,
        required=required,
    )
    raise InsufficientBalance(currency, available=available, required=required)


def create_transaction(
    conn: Connection,
    user_id: str,
    txn_type: str,
    currency: str,
    amount_major: Decimal | int | str,
    category: str | None = None,
    note: str | None = None,
    payment_method: str | None = None,
    created_at: datetime | str | None = None,
) -> TransactionRecord:
    """Record an income or expense. Run inside ``engine.begin()``."""
    txn_type = TransactionType.validate(txn_type)
    currency = normalize_currency(currency)
    amount = amount_to_minor(parse_positive_amount(amount_major), currency)
    category = clean_text(category, "category", CATEGORY_MAX_LENGTH)
    note = clean_text(note, "note", NOTE_MAX_LENGTH)
    payment_method = _resolve_payment_method(txn_type, payment_method)
    timestamp = parse_timestamp(created_at) or utc_now()

    lock_user_ledger(conn, user_id)
    wallet = get_wallet_by_currency(conn, currency)
    check_solvency(
        conn, user_id, NO_EFFECT, transaction_effect(txn_type, currency, amount, payment_method)
    )

    values = {
        "id": new_id(),
        "user_id": user_id,
        "wallet_id": wallet["id"],
        "type": txn_type,
        "amount": amount,
        "currency": currency,
        "payment_method": payment_method,
        "category": category,
        "note": note,
        "created_at": to_storage(timestamp),
    }
    conn.execute(insert(transactions).values(**values))
    logger.info(
        "transaction_created",
        user_id=user_id,
        transaction_id=values["id"],
        type=txn_type,
        currency=currency,
        amount=amount,
    )
    return TransactionRecord.from_row(values)


def update_transaction(
    conn: Connection, txn_id: str, user_id: str, patch: TransactionPatch
) -> TransactionRecord:
    fields = patch.model_fields_set
    amount_major = parse_positive_amount(patch.amount) if "amount" in fields else None
    next_currency = normalize_currency(patch.currency) if patch.currency is not None else None
    category = clean_text(patch.category, "category", CATEGORY_MAX_LENGTH)
    note = clean_text(patch.note, "note", NOTE_MAX_LENGTH)
    payment_method = (
        normalize_payment_method(patch.payment_method) if "payment_method" in fields else None
    )
    timestamp = parse_timestamp(patch.created_at) if "created_at" in fields else None

    lock_user_ledger(conn, user_id)
    row = _fetch_owned(conn, transactions, txn_id, user_id, "Transaction")

    currency = next_currency or row["currency"]
    if amount_major is not None:
        amount = amount_to_minor(amount_major, currency)
    elif currency != row["currency"]:
        amount = amount_to_minor(to_major(row["amount"], row["currency"]), currency)
    else:
        amount = row["amount"]

    values = {"amount": amount, "currency": currency}
    if currency != row["currency"]:
        values["wallet_id"] = get_wallet_by_currency(conn, currency)["id"]
    if "category" in fields:
        values["category"] = category
    if "note" in fields:
        values["note"] = note
    if "payment_method" in fields:
        values["payment_method"] = _resolve_payment_method(row["type"], payment_method)
    if timestamp is not None:
        values["created_at"] = to_storage(timestamp)

    updated = {**dict(row), **values}
    check_solvency(conn, user_id, transaction_row_effect(row), transaction_row_effect(updated))
    conn.execute(
        update(transactions)
        .where(transactions.c.id == txn_id, transactions.c.user_id == user_id)
        .values(**values)
    )
    logger.info(
        "transaction_updated",
        user_id=user_id,
        transaction_id=txn_id,
        currency=currency,
        amount=amount,
    )
    return TransactionRecord.from_row(updated)


def delete_transaction(conn: Connection, txn_id: str, user_id: str) -> None:
    lock_user_ledger(conn, user_id)
    row = _fetch_owned(conn, transactions, txn_id, user_id, "Transaction")
    check_solvency(conn, user_id, transaction_row_effect(row), NO_EFFECT)
    conn.execute(
        delete(transactions).where(transactions.c.id == txn_id, transactions.c.user_id == user_id)
    )
    logger.info("transaction_deleted", user_id=user_id, transaction_id=txn_id)


def create_exchange(
    conn: Connection,
    user_id: str,
    from_amount_dkk: Decimal | int | str,
    to_amount_vnd: Decimal | int | str,
    fee_amount: Decimal | int | str | None = None,
    fee_currency: str | None = None,
    provider: str | None = None,
    created_at: datetime | str | None = None,
) -> ExchangeRecord:
    """Record a DKK to VND conversion. Run inside ``engine.begin()``."""
    from_minor = amount_to_minor(parse_positive_amount(from_amount_dkk), "DKK")
    to_minor_vnd = amount_to_minor(parse_positive_amount(to_amount_vnd), "VND")
    fee_minor, fee_currency = _resolve_fee(fee_amount, fee_currency)
    provider = clean_text(provider, "provider", PROVIDER_MAX_LENGTH)
    timestamp = parse_timestamp(created_at) or utc_now()

    lock_user_ledger(conn, user_id)
    from_wallet = get_wallet_by_currency(conn, "DKK")
    to_wallet = get_wallet_by_currency(conn, "VND")
    check_solvency(
        conn,
        user_id,
        NO_EFFECT,
        exchange_effect(from_minor, to_minor_vnd, fee_minor, fee_currency),
    )

    values = {
        "id": new_id(),
        "user_id": user_id,
        "from_wallet_id": from_wallet["id"],
        "to_wallet_id": to_wallet["id"],
        "from_amount_dkk": from_minor,
        "to_amount_vnd": to_minor_vnd,
        "effective_rate": effective_rate(from_minor, to_minor_vnd),
        "fee_amount": fee_minor,
        "fee_currency": fee_currency,
        "provider": provider,
        "created_at": to_storage(timestamp),
    }
    conn.execute(insert(exchanges).values(**values))
    logger.info(
        "exchange_created",
        user_id=user_id,
        exchange_id=values["id"],
        from_amount_dkk=from_minor,
        to_amount_vnd=to_minor_vnd,
        fee_amount=fee_minor,
        fee_currency=fee_currency,
    )
    return ExchangeRecord.from_row(values)


def update_exchange(
    conn: Connection, exchange_id: str, user_id: str, patch: ExchangePatch
) -> ExchangeRecord:
    fields = patch.model_fields_set
    from_major = (
        parse_positive_amount(patch.from_amount_dkk) if "from_amount_dkk" in fields else None
    )
    to_major_vnd = (
        parse_positive_amount(patch.to_amount_vnd) if "to_amount_vnd" in fields else None
    )
    fee_major = _parse_fee(patch.fee_amount) if "fee_amount" in fields else None
    fee_currency = normalize_currency(patch.fee_currency) if patch.fee_currency else None
    provider = clean_text(patch.provider, "provider", PROVIDER_MAX_LENGTH)
    timestamp = parse_timestamp(patch.created_at) if "created_at" in fields else None

    lock_user_ledger(conn, user_id)
    row = _fetch_owned(conn, exchanges, exchange_id, user_id, "Exchange")

    values = {
        "from_amount_dkk": (
            amount_to_minor(from_major, "DKK") if from_major is not None else row["from_amount_dkk"]
        ),
        "to_amount_vnd": (
            amount_to_minor(to_major_vnd, "VND") if to_major_vnd is not None else row["to_amount_vnd"]
        ),
    }
    if "fee_amount" in fields:
        values["fee_amount"], values["fee_currency"] = _resolve_fee(
            fee_major, fee_currency or row["fee_currency"]
        )
    elif fee_currency and row["fee_amount"] and fee_currency != row["fee_currency"]:
        existing_fee = to_major(row["fee_amount"], row["fee_currency"] or "DKK")
        values["fee_amount"], values["fee_currency"] = _resolve_fee(existing_fee, fee_currency)
    values["effective_rate"] = effective_rate(values["from_amount_dkk"], values["to_amount_vnd"])
    if "provider" in fields:
        values["provider"] = provider
    if timestamp is not None:
        values["created_at"] = to_storage(timestamp)

    updated = {**dict(row), **values}
    check_solvency(conn, user_id, exchange_row_effect(row), exchange_row_effect(updated))
    conn.execute(
        update(exchanges)
        .where(exchanges.c.id == exchange_id, exchanges.c.user_id == user_id)
        .values(**values)
    )
    logger.info(
        "exchange_updated",
        user_id=user_id,
        exchange_id=exchange_id,
        from_amount_dkk=updated["from_amount_dkk"],
        to_amount_vnd=updated["to_amount_vnd"],
    )
    return ExchangeRecord.from_row(updated)


def delete_exchange(conn: Connection, exchange_id: str, user_id: str) -> None:
    lock_user_ledger(conn, user_id)
    row = _fetch_owned(conn, exchanges, exchange_id, user_id, "Exchange")
    check_solvency(conn, user_id, exchange_row_effect(row), NO_EFFECT)
    conn.execute(
        delete(exchanges).where(exchanges.c.id == exchange_id, exchanges.c.user_id == user_id)
    )
    logger.info("exchange_deleted", user_id=user_id, exchange_id=exchange_id)


def list_transactions(
    conn: Connection,
    user_id: str,
    txn_type: str | None = None,
    currency: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[TransactionRecord]:
    conditions = [transactions.c.user_id == user_id]
    if txn_type:
        conditions.append(transactions.c.type == TransactionType.validate(txn_type))
    if currency:
        conditions.append(transactions.c.currency == normalize_currency(currency))
    if start is not None:
        conditions.append(transactions.c.created_at >= to_storage(start))
    if end is not None:
        conditions.append(transactions.c.created_at <= to_storage(end))
    rows = conn.execute(
        select(transactions)
        .where(*conditions)
        .order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
    ).mappings().all()
    return [TransactionRecord.from_row(row) for row in rows]


def list_exchanges(
    conn: Connection,
    user_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[ExchangeRecord]:
    conditions = [exchanges.c.user_id == user_id]
    if start is not None:
        conditions.append(exchanges.c.created_at >= to_storage(start))
    if end is not None:
        conditions.append(exchanges.c.created_at <= to_storage(end))
    rows = conn.execute(
        select(exchanges)
        .where(*conditions)
        .order_by(exchanges.c.created_at.desc(), exchanges.c.id.desc())
    ).mappings().all()
    return [ExchangeRecord.from_row(row) for row in rows]


def list_history(
    conn: Connection,
    user_id: str,
    kind: str | None = None,
    currency: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[HistoryItem]:
    kind = HistoryKind.validate(kind)
    items: list[HistoryItem] = []
    if kind != "exchange":
        for record in list_transactions(conn, user_id, kind, currency, start, end):
            items.append(
                HistoryItem(
                    kind=record.type, id=record.id, created_at=record.created_at, transaction=record
                )
            )
    if kind in (None, "exchange"):
        for record in list_exchanges(conn, user_id, start, end):
            items.append(
                HistoryItem(
                    kind="EXCHANGE", id=record.id, created_at=record.created_at, exchange=record
                )
            )
    items.sort(key=lambda item: item.created_at, reverse=True)
    return items


def _fetch_owned(conn: Connection, table, record_id: str, user_id: str, entity: str):
    # A row owned by someone else is reported exactly like a missing one.
    row = conn.execute(
        select(table).where(table.c.id == record_id, table.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise NotFound(entity)
    return row


def _resolve_payment_method(txn_type: str, payment_method: str | None) -> str | None:
    normalized = normalize_payment_method(payment_method)
    if txn_type == "INCOME":
        if normalized is not None:
            raise ValidationError("Payment method only applies to expenses.")
        return None
    return normalized or "CASH"


def _parse_fee(value: Decimal | int | str | None) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    fee = parse_amount(value)
    if fee < 0:
        raise InvalidAmount("Fee amount must not be negative.")
    return fee


def _resolve_fee(
    fee_amount: Decimal | int | str | None, fee_currency: str | None
) -> tuple[int | None, str | None]:
    fee = _parse_fee(fee_amount)
    currency = normalize_currency(fee_currency) if fee_currency else "DKK"
    fee_minor = to_minor(fee, currency)
    if fee_minor <= 0:
        return None, None
    return fee_minor, currency
