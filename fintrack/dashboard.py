from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.engine import Connection

from fintrack.balance_engine import get_balances
from fintrack.credit import is_credit_card_repayment
from fintrack.db import exchanges, from_storage, to_storage, transactions
from fintrack.time_windows import (
    ResolvedWindow,
    TimeWindow,
    bucket_window,
    cycle_target_points,
    ensure_utc,
    month_starts,
    month_window,
    previous_window,
    trend_periods,
    utc_now,
    window_day_count,
)

TREND_TARGET_POINTS = 3
MONTHLY_POINTS = 4
OTHER_CATEGORY = "Other"
CONVERSION_CATEGORY = "Currency conversion"
REPORT_CURRENCY = "DKK"
PERCENT_QUANT = Decimal("0.01")


class DashboardTotals(BaseModel):
    income: int
    expense: int
    net: int
    previous_income: int
    previous_expense: int
    previous_net: int
    income_delta: str
    expense_delta: str
    net_delta: str


class TrendPoint(BaseModel):
    start: datetime
    end: datetime
    income: int = 0
    expense: int = 0


class CategorySlice(BaseModel):
    label: str
    amount: int
    percent: Decimal
    start_percent: Decimal
    end_percent: Decimal


class MonthlyPoint(BaseModel):
    month: str
    income: int
    expense: int


class DashboardSnapshot(BaseModel):
    filter: str
    timezone: str
    expense_currency: str
    start: datetime
    end: datetime
    previous_start: datetime
    previous_end: datetime
    balances: dict[str, int]
    totals: DashboardTotals
    trend: list[TrendPoint]
    spending_cycle: list[TrendPoint]
    categories: list[CategorySlice]
    monthly: list[MonthlyPoint]


def format_delta(current: int, previous: int) -> str:
    """Period-over-period change, e.g. ``"+12.5%"`` or ``"-10.0%"``."""
    if previous == 0:
        if current == 0:
            return "0%"
        return "+100.0%"
    percent = (Decimal(current) - Decimal(previous)) / abs(Decimal(previous)) * 100
    percent = percent.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    sign = "+" if percent > 0 else ""
    if percent == 0:
        percent = abs(percent)
    return f"{sign}{percent}%"


def normalize_expense_currency(value: str | None) -> str:
    if value and value.strip().upper() == "VND":
        return "VND"
    return REPORT_CURRENCY


def counts_as_expense(row: Mapping) -> bool:
    return row["type"] == "EXPENSE" and not is_credit_card_repayment(
        row.get("category"), row.get("payment_method")
    )


def exchange_outflow(row: Mapping) -> int:
    """DKK leaving the wallet for one exchange, fee included when it is in DKK."""
    fee = 0
    if row.get("fee_currency") in (None, "DKK"):
        fee = row.get("fee_amount") or 0
    return row["from_amount_dkk"] + fee


def sum_transactions(rows: Iterable[Mapping], window: TimeWindow, txn_type: str) -> int:
    total = 0
    for row in rows:
        if not window.contains(row["created_at"]):
            continue
        if txn_type == "INCOME" and row["type"] == "INCOME":
            total += row["amount"]
        elif txn_type == "EXPENSE" and counts_as_expense(row):
            total += row["amount"]
    return total


def sum_exchange_outflow(rows: Iterable[Mapping], window: TimeWindow) -> int:
    return sum(exchange_outflow(row) for row in rows if window.contains(row["created_at"]))


def fill_trend(
    periods: list[TimeWindow], rows: list[Mapping], include_income: bool = True
) -> list[TrendPoint]:
    points = []
    for period in periods:
        points.append(
            TrendPoint(
                start=period.start,
                end=period.end,
                income=sum_transactions(rows, period, "INCOME") if include_income else 0,
                expense=sum_transactions(rows, period, "EXPENSE"),
            )
        )
    return points


def build_category_slices(
    rows: Iterable[Mapping], conversion_amount: int = 0
) -> list[CategorySlice]:
    """Expense shares by category, laid out as contiguous percent stops."""
    totals_by_category: dict[str, int] = {}
    uncategorized = 0
    for row in rows:
        if not counts_as_expense(row):
            continue
        category = row.get("category")
        if category:
            totals_by_category[category] = totals_by_category.get(category, 0) + row["amount"]
        else:
            uncategorized += row["amount"]

    items = sorted(totals_by_category.items(), key=lambda item: (-item[1], item[0]))
    items.append((OTHER_CATEGORY, uncategorized))
    items.append((CONVERSION_CATEGORY, conversion_amount))
    items = [(label, amount) for label, amount in items if amount > 0]

    total = sum(amount for _, amount in items)
    slices: list[CategorySlice] = []
    running = 0
    for label, amount in items:
        start_percent = _percent(running, total)
        running += amount
        slices.append(
            CategorySlice(
                label=label,
                amount=amount,
                percent=_percent(amount, total),
                start_percent=start_percent,
                end_percent=_percent(running, total),
            )
        )
    return slices


def _percent(amount: int, total: int) -> Decimal:
    if total <= 0:
        return Decimal("0.00")
    return (Decimal(amount) * 100 / Decimal(total)).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP)


def fetch_transaction_rows(
    conn: Connection,
    user_id: str,
    start: datetime,
    end: datetime,
    currency: str | None = None,
) -> list[dict]:
    conditions = [
        transactions.c.user_id == user_id,
        transactions.c.type.in_(("INCOME", "EXPENSE")),
        transactions.c.created_at >= to_storage(start),
        transactions.c.created_at <= to_storage(end),
    ]
    if currency:
        conditions.append(transactions.c.currency == currency)
    rows = conn.execute(
        select(
            transactions.c.type,
            transactions.c.amount,
            transactions.c.currency,
            transactions.c.category,
            transactions.c.payment_method,
            transactions.c.created_at,
        ).where(*conditions)
    ).mappings().all()
    return [{**row, "created_at": from_storage(row["created_at"])} for row in rows]


def fetch_exchange_rows(
    conn: Connection, user_id: str, start: datetime, end: datetime
) -> list[dict]:
    rows = conn.execute(
        select(
            exchanges.c.from_amount_dkk,
            exchanges.c.fee_amount,
            exchanges.c.fee_currency,
            exchanges.c.created_at,
        ).where(
            exchanges.c.user_id == user_id,
            exchanges.c.created_at >= to_storage(start),
            exchanges.c.created_at <= to_storage(end),
        )
    ).mappings().all()
    return [{**row, "created_at": from_storage(row["created_at"])} for row in rows]


def monthly_overview(
    conn: Connection, user_id: str, time_zone: str, now: datetime
) -> list[MonthlyPoint]:
    starts = month_starts(now, time_zone, MONTHLY_POINTS)
    months = [month_window(month, time_zone) for month in starts]
    txn_rows = fetch_transaction_rows(
        conn, user_id, months[0].start, months[-1].end, currency=REPORT_CURRENCY
    )
    exchange_rows = fetch_exchange_rows(conn, user_id, months[0].start, months[-1].end)
    return [
        MonthlyPoint(
            month=month_start.strftime("%Y-%m"),
            income=sum_transactions(txn_rows, window, "INCOME"),
            expense=sum_transactions(txn_rows, window, "EXPENSE")
            + sum_exchange_outflow(exchange_rows, window),
        )
        for month_start, window in zip(starts, months)
    ]


def compute_dashboard(
    conn: Connection,
    user_id: str,
    resolved: ResolvedWindow,
    expense_currency: str | None,
    time_zone: str,
    now: datetime | None = None,
) -> DashboardSnapshot:
    """Totals, trends, category split and monthly overview for one user.

    Totals, trends and the monthly overview are reported in DKK; the
    category split uses ``expense_currency``.
    """
    now = ensure_utc(now) if now is not None else utc_now()
    expense_currency = normalize_expense_currency(expense_currency)
    current = resolved.window
    previous = previous_window(current.start, current.end)

    if resolved.is_custom:
        periods = bucket_window(current.start, current.end, TREND_TARGET_POINTS, time_zone)
    else:
        periods = trend_periods(resolved.filter, current.start, time_zone)
    metrics_start = min(current.start, previous.start, periods[0].start)
    metrics_end = max(current.end, periods[-1].end)

    txn_rows = fetch_transaction_rows(
        conn, user_id, metrics_start, metrics_end, currency=REPORT_CURRENCY
    )
    exchange_rows = fetch_exchange_rows(conn, user_id, metrics_start, metrics_end)

    income = sum_transactions(txn_rows, current, "INCOME")
    conversion = sum_exchange_outflow(exchange_rows, current)
    expense = sum_transactions(txn_rows, current, "EXPENSE") + conversion
    previous_income = sum_transactions(txn_rows, previous, "INCOME")
    previous_expense = sum_transactions(txn_rows, previous, "EXPENSE") + sum_exchange_outflow(
        exchange_rows, previous
    )
    totals = DashboardTotals(
        income=income,
        expense=expense,
        net=income - expense,
        previous_income=previous_income,
        previous_expense=previous_expense,
        previous_net=previous_income - previous_expense,
        income_delta=format_delta(income, previous_income),
        expense_delta=format_delta(expense, previous_expense),
        net_delta=format_delta(income - expense, previous_income - previous_expense),
    )

    in_window = [row for row in txn_rows if current.contains(row["created_at"])]
    cycle = bucket_window(
        current.start,
        current.end,
        cycle_target_points(window_day_count(current.start, current.end, time_zone)),
        time_zone,
    )

    if expense_currency == REPORT_CURRENCY:
        category_rows = in_window
    else:
        category_rows = fetch_transaction_rows(
            conn, user_id, current.start, current.end, currency=expense_currency
        )
    categories = build_category_slices(
        category_rows, conversion if expense_currency == REPORT_CURRENCY else 0
    )

    return DashboardSnapshot(
        filter=resolved.filter,
        timezone=time_zone,
        expense_currency=expense_currency,
        start=current.start,
        end=current.end,
        previous_start=previous.start,
        previous_end=previous.end,
        balances=get_balances(conn, user_id),
        totals=totals,
        trend=fill_trend(periods, txn_rows),
        spending_cycle=fill_trend(cycle, in_window, include_income=False),
        categories=categories,
        monthly=monthly_overview(conn, user_id, time_zone, now),
    )
