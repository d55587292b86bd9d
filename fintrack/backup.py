from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from fintrack.db import (
    WALLET_NAMES,
    exchanges,
    from_storage,
    lock_system,
    new_id,
    to_storage,
    transactions,
    wallets,
)
from fintrack.errors import ValidationError
from fintrack.time_windows import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

BACKUP_VERSION = 1
BACKUP_SCOPE = "system"
BACKUP_SOURCE = "fintrack"
RESTORE_MODES = ("replace", "append")

RequiredText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Currency = Literal["DKK", "VND"]


class BackupModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BackupWallet(BackupModel):
    id: RequiredText
    name: RequiredText
    currency: Currency
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BackupTransaction(BackupModel):
    id: RequiredText
    user_id: RequiredText
    type: Literal["INCOME", "EXPENSE"]
    wallet_id: RequiredText
    amount: int = Field(gt=0)
    currency: Currency
    payment_method: Literal["CASH", "CREDIT_CARD"] | None = None
    category: str | None = None
    note: str | None = None
    created_at: datetime

    @model_validator(mode="after")
    def default_payment_method(self) -> "BackupTransaction":
        if self.type == "INCOME":
            self.payment_method = None
        elif self.payment_method is None:
            self.payment_method = "CASH"
        return self


class BackupExchange(BackupModel):
    id: RequiredText
    user_id: RequiredText
    from_wallet_id: RequiredText
    to_wallet_id: RequiredText
    from_amount_dkk: int = Field(gt=0)
    to_amount_vnd: int = Field(gt=0)
    effective_rate: Decimal = Field(gt=0)
    fee_amount: int | None = Field(default=None, ge=0)
    fee_currency: Currency | None = None
    provider: str | None = None
    created_at: datetime


class BackupMeta(BackupModel):
    wallet_count: int
    transaction_count: int
    exchange_count: int


class BackupDocument(BackupModel):
    version: int = BACKUP_VERSION
    scope: str = BACKUP_SCOPE
    source: str = BACKUP_SOURCE
    exported_at: datetime
    wallets: list[BackupWallet]
    transactions: list[BackupTransaction]
    exchanges: list[BackupExchange]
    meta: BackupMeta


class RestoreSummary(BackupModel):
    mode: str
    wallet_count: int
    transaction_count: int
    exchange_count: int


def export_backup(conn: Connection, now: datetime | None = None) -> dict:
    """Dump every wallet, transaction and exchange of the system."""
    exported_at = ensure_utc(now) if now is not None else utc_now()
    wallet_rows = conn.execute(select(wallets).order_by(wallets.c.currency.asc())).mappings().all()
    txn_rows = conn.execute(
        select(transactions).order_by(transactions.c.created_at.asc(), transactions.c.id.asc())
    ).mappings().all()
    exchange_rows = conn.execute(
        select(exchanges).order_by(exchanges.c.created_at.asc(), exchanges.c.id.asc())
    ).mappings().all()

    document = BackupDocument(
        exported_at=exported_at,
        wallets=[
            BackupWallet(
                id=row["id"],
                name=row["name"],
                currency=row["currency"],
                created_at=from_storage(row["created_at"]),
                updated_at=from_storage(row["updated_at"]),
            )
            for row in wallet_rows
        ],
        transactions=[
            BackupTransaction(**{**row, "created_at": from_storage(row["created_at"])})
            for row in txn_rows
        ],
        exchanges=[
            BackupExchange(
                **{
                    **row,
                    "effective_rate": Decimal(row["effective_rate"]),
                    "created_at": from_storage(row["created_at"]),
                }
            )
            for row in exchange_rows
        ],
        meta=BackupMeta(
            wallet_count=len(wallet_rows),
            transaction_count=len(txn_rows),
            exchange_count=len(exchange_rows),
        ),
    )
    logger.info(
        "backup_exported",
        wallet_count=len(wallet_rows),
        transaction_count=len(txn_rows),
        exchange_count=len(exchange_rows),
    )
    return document.model_dump(mode="json", by_alias=True)


def normalize_restore_mode(value: str | None) -> str:
    return "append" if value == "append" else "replace"


def parse_section(payload: dict, section: str, model: type[BackupModel]) -> list:
    """Validate one list of a backup, naming the offending row on failure."""
    records = payload.get(section)
    if not isinstance(records, list):
        return []
    parsed = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValidationError(f"{section}[{index}] is invalid")
        try:
            parsed.append(model.model_validate(record))
        except PydanticValidationError as exc:
            error = exc.errors()[0]
            field_name = error["loc"][0] if error["loc"] else "row"
            problem = "is required" if error["type"] in ("missing", "string_too_short") else "is invalid"
            raise ValidationError(f"{section}[{index}].{field_name} {problem}") from exc
    return parsed


def restore_backup(conn: Connection, payload: dict, mode: str | None = "replace") -> RestoreSummary:
    """Load a backup into the store in one unit, excluding every other writer.

    ``replace`` wipes all transactions and exchanges first, ``append``
    keeps them. Wallets are matched by currency, never by backup id.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid backup payload.")
    mode = normalize_restore_mode(mode)
    document = payload.get("backup") if isinstance(payload.get("backup"), dict) else payload
    backup_wallets = parse_section(document, "wallets", BackupWallet)
    backup_transactions = parse_section(document, "transactions", BackupTransaction)
    backup_exchanges = parse_section(document, "exchanges", BackupExchange)

    lock_system(conn)
    wallet_id_map, currency_wallet_map = _upsert_wallets(conn, backup_wallets)

    if mode == "replace":
        conn.execute(delete(exchanges))
        conn.execute(delete(transactions))

    try:
        if backup_transactions:
            conn.execute(
                insert(transactions),
                [
                    {
                        "id": row.id,
                        "user_id": row.user_id,
                        "wallet_id": wallet_id_map.get(row.wallet_id)
                        or currency_wallet_map[row.currency],
                        "type": row.type,
                        "amount": row.amount,
                        "currency": row.currency,
                        "payment_method": row.payment_method,
                        "category": row.category,
                        "note": row.note,
                        "created_at": to_storage(row.created_at),
                    }
                    for row in backup_transactions
                ],
            )
        if backup_exchanges:
            conn.execute(
                insert(exchanges),
                [
                    {
                        "id": row.id,
                        "user_id": row.user_id,
                        "from_wallet_id": wallet_id_map.get(row.from_wallet_id)
                        or currency_wallet_map["DKK"],
                        "to_wallet_id": wallet_id_map.get(row.to_wallet_id)
                        or currency_wallet_map["VND"],
                        "from_amount_dkk": row.from_amount_dkk,
                        "to_amount_vnd": row.to_amount_vnd,
                        "effective_rate": format(row.effective_rate.normalize(), "f"),
                        "fee_amount": row.fee_amount or None,
                        "fee_currency": row.fee_currency if row.fee_amount else None,
                        "provider": row.provider,
                        "created_at": to_storage(row.created_at),
                    }
                    for row in backup_exchanges
                ],
            )
    except IntegrityError as exc:
        raise ValidationError("Backup rows conflict with existing records.") from exc

    summary = RestoreSummary(
        mode=mode,
        wallet_count=len(backup_wallets),
        transaction_count=len(backup_transactions),
        exchange_count=len(backup_exchanges),
    )
    logger.info("backup_restored", **summary.model_dump())
    return summary


def _upsert_wallets(
    conn: Connection, backup_wallets: list[BackupWallet]
) -> tuple[dict[str, str], dict[str, str]]:
    rows = backup_wallets or [
        BackupWallet(id=currency, name=name, currency=currency)
        for currency, name in WALLET_NAMES.items()
    ]
    now = to_storage(utc_now())
    wallet_id_map: dict[str, str] = {}
    currency_wallet_map: dict[str, str] = {}
    for row in rows:
        existing = conn.execute(
            select(wallets.c.id).where(wallets.c.currency == row.currency)
        ).scalar_one_or_none()
        if existing:
            conn.execute(
                update(wallets)
                .where(wallets.c.id == existing)
                .values(name=row.name, updated_at=now)
            )
            wallet_id = existing
        else:
            wallet_id = new_id()
            conn.execute(
                insert(wallets).values(
                    id=wallet_id, name=row.name, currency=row.currency, created_at=now, updated_at=now
                )
            )
        wallet_id_map[row.id] = wallet_id
        currency_wallet_map[row.currency] = wallet_id
    for currency in WALLET_NAMES:
        if currency not in currency_wallet_map:
            currency_wallet_map[currency] = conn.execute(
                select(wallets.c.id).where(wallets.c.currency == currency)
            ).scalar_one()
    return wallet_id_map, currency_wallet_map
