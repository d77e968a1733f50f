"""
Database schema and connection management.

Uses SQLAlchemy; SQLite by default, PostgreSQL in production. Every
idempotency key is a real unique constraint so that the database, not the
application, arbitrates between concurrent writers.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generic, Iterator, TypeVar

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    insert,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntryRow(Base):
    """One immutable credit balance change."""

    __tablename__ = "credits_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    # Per-user position in the ledger; (user_id, sequence) is the CAS key.
    sequence = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    reference_type = Column(String(64), nullable=False)
    reference_id = Column(Integer, nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_credits_ledger_user_sequence"),
        Index("ix_credits_ledger_reference", "reference_type", "reference_id"),
    )


class PurchaseReceiptRow(Base):
    __tablename__ = "purchase_receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    stripe_checkout_session_id = Column(String(128), nullable=False, unique=True)
    stripe_payment_intent_id = Column(String(128), nullable=True, index=True)
    pack_id = Column(String(64), nullable=False)
    credits_added = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    stripe_receipt_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class StripeEventRow(Base):
    __tablename__ = "stripe_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stripe_event_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(128), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    credits_purchased = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class RefundQueueRow(Base):
    __tablename__ = "refund_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)
    stripe_charge_id = Column(String(128), nullable=False)
    stripe_refund_id = Column(String(128), nullable=False, unique=True)
    stripe_checkout_session_id = Column(String(128), nullable=True)
    amount_refunded = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    pack_id = Column(String(64), nullable=True)
    credits_to_reverse = Column(Integer, nullable=True)
    status = Column(String(16), nullable=False, default="pending", index=True)
    admin_user_id = Column(Integer, nullable=True)
    ignore_reason = Column(Text, nullable=True)
    ledger_entry_id = Column(Integer, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AdminActionLogRow(Base):
    __tablename__ = "admin_action_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    admin_user_id = Column(Integer, nullable=False)
    action = Column(String(256), nullable=False)
    target_user_id = Column(Integer, nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class OpsStatusRow(Base):
    """Single row (id=1) with the most recent webhook outcome timestamps."""

    __tablename__ = "ops_status"

    id = Column(Integer, primary_key=True)
    last_webhook_success_at = Column(DateTime(timezone=True), nullable=True)
    last_webhook_failure_at = Column(DateTime(timezone=True), nullable=True)
    last_webhook_event_id = Column(String(128), nullable=True)
    last_webhook_event_type = Column(String(128), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


@dataclass(frozen=True)
class Inserted(Generic[T]):
    row: T


@dataclass(frozen=True)
class AlreadyExists(Generic[T]):
    row: T


def insert_once(session: Session, model, key_columns: list[str], values: dict[str, Any]):
    """
    Insert a row unless one with the same unique key already exists.

    Args:
        session: Open session; the insert joins its transaction
        model: Mapped class whose table carries a unique index on key_columns
        key_columns: Columns forming the unique key
        values: Column values for the new row

    Returns:
        Inserted(row) if this call created the row, AlreadyExists(row) otherwise
    """
    dialect = session.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        dialect_insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = dialect_insert(model).values(**values).on_conflict_do_nothing(index_elements=key_columns)
        inserted = session.execute(stmt).rowcount == 1
    else:
        try:
            with session.begin_nested():
                session.execute(insert(model).values(**values))
            inserted = True
        except IntegrityError:
            inserted = False

    query = select(model).where(*(getattr(model, c) == values[c] for c in key_columns))
    row = session.scalars(query.execution_options(populate_existing=True)).one()
    return Inserted(row) if inserted else AlreadyExists(row)


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up
    # front so read-then-write sequences cannot deadlock between workers.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.url = url
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            _enable_sqlite_immediate_transactions(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session whose work commits on exit and rolls back on error."""
        with self.SessionLocal.begin() as session:
            yield session

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def init_database(url: str) -> Database:
    """
    Initialize database and create tables.

    Args:
        url: SQLAlchemy database URL

    Returns:
        Database bound to the URL
    """
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    database = Database(url)
    database.create_all()
    return database


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"
