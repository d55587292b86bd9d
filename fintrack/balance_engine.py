from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from sqlalchemy import func, or_, select
from sqlalchemy.engine import Connection

from fintrack.credit import expense_affects_wallet
from fintrack.db import ensure_wallets, exchanges, transactions
from fintrack.money import SUPPORTED_CURRENCIES


def empty_balances() -> dict[str, int]:
    return {currency: 0 for currency in SUPPORTED_CURRENCIES}


@dataclass(frozen=True)
class LedgerEffect:
    """What one ledger row does to its owner's balances, in minor units.

    ``net`` is the signed change per currency; ``debit`` is the outflow that
    must be funded.
    """

    net: dict[str, int] = field(default_factory=empty_balances)
    debit: dict[str, int] = field(default_factory=empty_balances)


NO_EFFECT = LedgerEffect()


def transaction_effect(
    txn_type: str, currency: str, amount: int, payment_method: str | None = None
) -> LedgerEffect:
    net = empty_balances()
    debit = empty_balances()
    if txn_type == "INCOME":
        net[currency] += amount
    elif txn_type == "EXPENSE" and expense_affects_wallet(payment_method):
        net[currency] -= amount
        debit[currency] += amount
    return LedgerEffect(net=net, debit=debit)


def exchange_effect(
    from_amount_dkk: int,
    to_amount_vnd: int,
    fee_amount: int | None = None,
    fee_currency: str | None = None,
) -> LedgerEffect:
    net = empty_balances()
    debit = empty_balances()
    net["DKK"] -= from_amount_dkk
    debit["DKK"] += from_amount_dkk
    net["VND"] += to_amount_vnd
    if fee_amount and fee_currency in net:
        net[fee_currency] -= fee_amount
        debit[fee_currency] += fee_amount
    return LedgerEffect(net=net, debit=debit)


def transaction_row_effect(row: Mapping) -> LedgerEffect:
    return transaction_effect(
        row["type"], row["currency"], row["amount"], row.get("payment_method")
    )


def exchange_row_effect(row: Mapping) -> LedgerEffect:
    return exchange_effect(
        row["from_amount_dkk"],
        row["to_amount_vnd"],
        row.get("fee_amount"),
        row.get("fee_currency"),
    )


def fold_balances(
    transaction_rows: Iterable[Mapping], exchange_rows: Iterable[Mapping]
) -> dict[str, int]:
    """Replay a user's whole history; the result does not depend on row order."""
    balances = empty_balances()
    effects = [transaction_row_effect(row) for row in transaction_rows]
    effects.extend(exchange_row_effect(row) for row in exchange_rows)
    for effect in effects:
        for currency, amount in effect.net.items():
            balances[currency] += amount
    return balances


def get_balances(conn: Connection, user_id: str) -> dict[str, int]:
    """Lifetime per-currency balances of ``user_id``, in minor units."""
    ensure_wallets(conn)
    balances = empty_balances()

    total_expr = func.coalesce(func.sum(transactions.c.amount), 0).label("total")
    txn_rows = conn.execute(
        select(transactions.c.currency, transactions.c.type, total_expr)
        .where(
            transactions.c.user_id == user_id,
            or_(
                transactions.c.type == "INCOME",
                transactions.c.payment_method.is_(None),
                transactions.c.payment_method != "CREDIT_CARD",
            ),
        )
        .group_by(transactions.c.currency, transactions.c.type)
    ).mappings().all()
    for row in txn_rows:
        if row["currency"] not in balances:
            continue
        amount = int(row["total"] or 0)
        if row["type"] == "INCOME":
            balances[row["currency"]] += amount
        elif row["type"] == "EXPENSE":
            balances[row["currency"]] -= amount

    leg_totals = conn.execute(
        select(
            func.coalesce(func.sum(exchanges.c.from_amount_dkk), 0).label("from_total"),
            func.coalesce(func.sum(exchanges.c.to_amount_vnd), 0).label("to_total"),
        ).where(exchanges.c.user_id == user_id)
    ).mappings().one()
    balances["DKK"] -= int(leg_totals["from_total"] or 0)
    balances["VND"] += int(leg_totals["to_total"] or 0)

    fee_rows = conn.execute(
        select(
            exchanges.c.fee_currency,
            func.coalesce(func.sum(exchanges.c.fee_amount), 0).label("total"),
        )
        .where(exchanges.c.user_id == user_id, exchanges.c.fee_currency.isnot(None))
        .group_by(exchanges.c.fee_currency)
    ).mappings().all()
    for row in fee_rows:
        if row["fee_currency"] in balances:
            balances[row["fee_currency"]] -= int(row["total"] or 0)

    return balances
