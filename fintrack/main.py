import os
import secrets
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from urllib.parse import unquote

from fastapi import Body, Cookie, FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from fintrack.backup import RestoreSummary, export_backup, restore_backup
from fintrack.balance_engine import get_balances
from fintrack.dashboard import DashboardSnapshot, compute_dashboard
from fintrack.db import create_ledger_engine, init_db
from fintrack.errors import InsufficientBalance, NotFound, ValidationError, WalletMissing
from fintrack.ledger import (
    ExchangePatch,
    ExchangeRecord,
    HistoryItem,
    TransactionPatch,
    TransactionRecord,
    create_exchange,
    create_transaction,
    delete_exchange,
    delete_transaction,
    list_exchanges,
    list_history,
    list_transactions,
    parse_range_bound,
    update_exchange,
    update_transaction,
)
from fintrack.logging_config import configure_logging
from fintrack.time_windows import resolve_dashboard_window, resolve_timezone

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./fintrack.db")
engine = create_ledger_engine(database_url)
admin_token = os.getenv("ADMIN_TOKEN")
log_level = os.getenv("LOG_LEVEL", "INFO")
default_timezone = resolve_timezone(os.getenv("DEFAULT_TIMEZONE"))


@app.on_event("startup")
def startup() -> None:
    configure_logging(log_level)
    init_db(engine)


class TransactionPayload(BaseModel):
    type: str
    currency: str
    amount: Decimal | str
    category: str | None = None
    note: str | None = None
    payment_method: str | None = None
    created_at: datetime | str | None = None


class ExchangePayload(BaseModel):
    from_amount_dkk: Decimal | str
    to_amount_vnd: Decimal | str
    fee_amount: Decimal | str | None = None
    fee_currency: str | None = None
    provider: str | None = None
    created_at: datetime | str | None = None


class BalancesResponse(BaseModel):
    DKK: int
    VND: int


@contextmanager
def ledger_errors():
    try:
        yield
    except (ValidationError, InsufficientBalance) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except WalletMissing as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    user_id = x_user_id.strip()
    if len(user_id) > 64:
        raise HTTPException(status_code=400, detail="Invalid user identity.")
    return user_id


def get_time_zone(finance_tz: str | None, x_timezone: str | None) -> str:
    requested = unquote(finance_tz) if finance_tz else x_timezone
    if not requested:
        return default_timezone
    return resolve_timezone(requested.strip())


def require_admin(x_admin_token: str | None) -> None:
    if not admin_token or not x_admin_token:
        raise HTTPException(status_code=403, detail="Forbidden.")
    if not secrets.compare_digest(admin_token, x_admin_token):
        raise HTTPException(status_code=403, detail="Forbidden.")


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/balances", response_model=BalancesResponse)
def balances(x_user_id: str | None = Header(None, alias="x-user-id")) -> BalancesResponse:
    user_id = get_user_id(x_user_id)
    with ledger_errors(), engine.begin() as conn:
        result = get_balances(conn, user_id)
    return BalancesResponse(**result)


@app.get("/transactions", response_model=list[TransactionRecord])
def get_transactions(
    txn_type: str | None = Query(None, alias="type"),
    currency: str | None = Query(None),
    from_value: str | None = Query(None, alias="from"),
    to_value: str | None = Query(None, alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_timezone: str | None = Header(None, alias="x-timezone"),
    finance_tz: str | None = Cookie(None),
) -> list[TransactionRecord]:
    user_id = get_user_id(x_user_id)
    time_zone = get_time_zone(finance_tz, x_timezone)
    with ledger_errors():
        start = parse_range_bound(from_value, time_zone)
        end = parse_range_bound(to_value, time_zone, end_of_day=True)
        with engine.begin() as conn:
            return list_transactions(conn, user_id, txn_type, currency, start, end)


@app.post("/transactions", response_model=TransactionRecord)
def post_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionRecord:
    user_id = get_user_id(x_user_id)
    with ledger_errors(), engine.begin() as conn:
        return create_transaction(
            conn,
            user_id,
            payload.type,
            payload.currency,
            payload.amount,
            category=payload.category,
            note=payload.note,
            payment_method=payload.payment_method,
            created_at=payload.created_at,
        )


@app.patch("/transactions/{transaction_id}", response_model=TransactionRecord)
def patch_transaction(
    transaction_id: str,
    patch: TransactionPatch,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionRecord:
    user_id = get_user_id(x_user_id)
    with ledger_errors(), engine.begin() as conn:
        return update_transaction(conn, transaction_id, user_id, patch)


@app.delete("/transactions/{transaction_id}")
def remove_transaction(
    transaction_id: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with ledger_errors(), engine.begin() as conn:
        delete_transaction(conn, transaction_id, user_id)
    return {"status": "deleted"}


@app.get("/exchanges", response_model=list[ExchangeRecord])
def get_exchanges(
    from_value: str | None = Query(None, alias="from"),
    to_value: str | None = Query(None, alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_timezone: str | None = Header(None, alias="x-timezone"),
    finance_tz: str | None = Cookie(None),
) -> list[ExchangeRecord]:
    user_id = get_user_id(x_user_id)
    time_zone = get_time_zone(finance_tz, x_timezone)
    with ledger_errors():
        start = parse_range_bound(from_value, time_zone)
        end = parse_range_bound(to_value, time_zone, end_of_day=True)
        with engine.begin() as conn:
            return list_exchanges(conn, user_id, start, end)


@app.post("/exchanges", response_model=ExchangeRecord)
def post_exchange(
    payload: ExchangePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ExchangeRecord:
    user_id = get_user_id(x_user_id)
    with ledger_errors(), engine.begin() as conn:
        return create_exchange(
            conn,
            user_id,
            payload.from_amount_dkk,
            payload.to_amount_vnd,
            fee_amount=payload.fee_amount,
            fee_currency=payload.fee_currency,
            provider=payload.provider,
            created_at=payload.created_at,
        )


@app.patch("/exchanges/{exchange_id}", response_model=ExchangeRecord)
def patch_exchange(
    exchange_id: str,
    patch: ExchangePatch,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExchangeRecord:
    user_id = get_user_id(x_user_id)
    with ledger_errors(), engine.begin() as conn:
        return update_exchange(conn, exchange_id, user_id, patch)


@app.delete("/exchanges/{exchange_id}")
def remove_exchange(
    exchange_id: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with ledger_errors(), engine.begin() as conn:
        delete_exchange(conn, exchange_id, user_id)
    return {"status": "deleted"}


@app.get("/history", response_model=list[HistoryItem])
def history(
    txn_type: str | None = Query(None, alias="type"),
    currency: str | None = Query(None),
    from_value: str | None = Query(None, alias="from"),
    to_value: str | None = Query(None, alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_timezone: str | None = Header(None, alias="x-timezone"),
    finance_tz: str | None = Cookie(None),
) -> list[HistoryItem]:
    user_id = get_user_id(x_user_id)
    time_zone = get_time_zone(finance_tz, x_timezone)
    with ledger_errors():
        start = parse_range_bound(from_value, time_zone)
        end = parse_range_bound(to_value, time_zone, end_of_day=True)
        with engine.begin() as conn:
            return list_history(conn, user_id, txn_type, currency, start, end)


@app.get("/dashboard", response_model=DashboardSnapshot)
def dashboard(
    filter_name: str | None = Query(None, alias="filter"),
    from_value: str | None = Query(None, alias="from"),
    to_value: str | None = Query(None, alias="to"),
    expense_currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_timezone: str | None = Header(None, alias="x-timezone"),
    finance_tz: str | None = Cookie(None),
) -> DashboardSnapshot:
    user_id = get_user_id(x_user_id)
    time_zone = get_time_zone(finance_tz, x_timezone)
    resolved = resolve_dashboard_window(filter_name, from_value, to_value, time_zone)
    with ledger_errors(), engine.begin() as conn:
        return compute_dashboard(conn, user_id, resolved, expense_currency, time_zone)


@app.get("/system/backup")
def system_backup(x_admin_token: str | None = Header(None, alias="x-admin-token")) -> dict:
    require_admin(x_admin_token)
    with engine.begin() as conn:
        return export_backup(conn)


@app.post("/system/restore")
def system_restore(
    payload: dict = Body(...),
    x_admin_token: str | None = Header(None, alias="x-admin-token"),
) -> dict:
    require_admin(x_admin_token)
    with ledger_errors(), engine.begin() as conn:
        summary: RestoreSummary = restore_backup(conn, payload, payload.get("mode"))
    return {"ok": True, **summary.model_dump(by_alias=True)}
