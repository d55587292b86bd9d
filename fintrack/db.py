from __future__ import annotations

from datetime import datetime
from uuid import uuid4

import structlog
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from fintrack.errors import WalletMissing
from fintrack.money import SUPPORTED_CURRENCIES
from fintrack.time_windows import UTC, ensure_utc, utc_now

logger = structlog.get_logger(__name__)

metadata = MetaData()

WALLET_NAMES = {
    "DKK": "DKK Wallet",
    "VND": "VND Wallet",
}
SYSTEM_LOCK_KEY = "__system__"

wallets = Table(
    "wallets",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False, unique=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("wallet_id", String(36), ForeignKey("wallets.id"), nullable=False),
    Column("type", String(10), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("payment_method", String(20)),
    Column("category", String(255)),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, index=True),
)

exchanges = Table(
    "exchanges",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("from_wallet_id", String(36), ForeignKey("wallets.id"), nullable=False),
    Column("to_wallet_id", String(36), ForeignKey("wallets.id"), nullable=False),
    Column("from_amount_dkk", Integer, nullable=False),
    Column("to_amount_vnd", Integer, nullable=False),
    Column("effective_rate", String(64), nullable=False),
    Column("fee_amount", Integer),
    Column("fee_currency", String(3)),
    Column("provider", String(255)),
    Column("created_at", DateTime, nullable=False, index=True),
)

ledger_locks = Table(
    "ledger_locks",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("version", Integer, nullable=False, default=0),
)


def create_ledger_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url)

    kwargs = {}
    if ":memory:" in database_url or database_url in {"sqlite://", "sqlite:///"}:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(
        database_url, connect_args={"check_same_thread": False}, **kwargs
    )

    # pysqlite defers BEGIN until the first write; take the write lock up
    # front so a balance read and the following insert form one unit.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
    with engine.begin() as conn:
        ensure_wallets(conn)
        _ensure_lock_row(conn, SYSTEM_LOCK_KEY)


def new_id() -> str:
    return uuid4().hex


def to_storage(value: datetime) -> datetime:
    """Naive UTC, truncated to milliseconds, as stored in the database."""
    normalized = ensure_utc(value)
    normalized = normalized.replace(microsecond=normalized.microsecond // 1000 * 1000)
    return normalized.replace(tzinfo=None)


def from_storage(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def ensure_wallets(conn: Connection) -> dict[str, dict]:
    """Create the missing per-currency wallets and return all of them keyed by currency."""
    existing = {
        row["currency"]: dict(row)
        for row in conn.execute(select(wallets)).mappings().all()
    }
    for currency in SUPPORTED_CURRENCIES:
        if currency in existing:
            continue
        now = to_storage(utc_now())
        row = {
            "id": new_id(),
            "name": WALLET_NAMES[currency],
            "currency": currency,
            "created_at": now,
            "updated_at": now,
        }
        try:
            with conn.begin_nested():
                conn.execute(insert(wallets).values(**row))
        except IntegrityError:
            # Another writer created it first.
            continue
        logger.info("wallet_created", currency=currency, wallet_id=row["id"])
    return {
        row["currency"]: dict(row)
        for row in conn.execute(select(wallets)).mappings().all()
    }


def get_wallet_by_currency(conn: Connection, currency: str) -> dict:
    row = conn.execute(select(wallets).where(wallets.c.currency == currency)).mappings().first()
    if row:
        return dict(row)
    row = ensure_wallets(conn).get(currency)
    if not row:
        raise WalletMissing(currency)
    return row


def _ensure_lock_row(conn: Connection, key: str) -> None:
    exists = conn.execute(
        select(ledger_locks.c.user_id).where(ledger_locks.c.user_id == key)
    ).first()
    if exists:
        return
    try:
        with conn.begin_nested():
            conn.execute(insert(ledger_locks).values(user_id=key, version=0))
    except IntegrityError:
        pass


def lock_user_ledger(conn: Connection, user_id: str) -> None:
    """Serialize ledger mutations of one user until ``conn``'s transaction ends.

    Takes the system lock in shared mode so a running restore excludes
    every writer, then bumps the user's lock row, which holds a row lock
    on PostgreSQL and the database write lock on SQLite.
    """
    conn.execute(
        select(ledger_locks.c.version)
        .where(ledger_locks.c.user_id == SYSTEM_LOCK_KEY)
        .with_for_update(read=True)
    ).first()
    bump = (
        update(ledger_locks)
        .where(ledger_locks.c.user_id == user_id)
        .values(version=ledger_locks.c.version + 1)
    )
    if conn.execute(bump).rowcount:
        return
    _ensure_lock_row(conn, user_id)
    conn.execute(bump)


def lock_system(conn: Connection) -> None:
    """Exclusive lock over the whole ledger, held until the transaction ends."""
    _ensure_lock_row(conn, SYSTEM_LOCK_KEY)
    conn.execute(
        update(ledger_locks)
        .where(ledger_locks.c.user_id == SYSTEM_LOCK_KEY)
        .values(version=ledger_locks.c.version + 1)
    )
