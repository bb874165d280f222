from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
)

from pfm_backend.config import settings


def _connect_args() -> dict[str, bool]:
    if settings.database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(settings.database_url, connect_args=_connect_args())
metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("account_type", String(50), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("description", String(500), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("posted_at", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

cashflow_bills = Table(
    "cashflow_bills",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("due_date", Integer, nullable=False),
    Column("recurrence", String(20), nullable=False, server_default="monthly"),
    Column("start_date", Date, nullable=False),
    Column("category_id", Integer),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("stopped_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

cashflow_incomes = Table(
    "cashflow_incomes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("receive_date", Integer, nullable=False),
    Column("recurrence", String(20), nullable=False, server_default="monthly"),
    Column("start_date", Date, nullable=False),
    Column("category_id", Integer),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("stopped_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

cashflow_events = Table(
    "cashflow_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("source_type", String(20), nullable=False),
    Column("source_id", Integer),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("event_date", Date, nullable=False),
    Column("occurrence_date", Date, nullable=False),
    Column("event_type", String(20), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("processed", Boolean, nullable=False, server_default="0"),
    Column("suppressed", Boolean, nullable=False, server_default="0"),
    Column("meta", JSON),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime),
)

# One live override per projected slot; soft-deleted rows do not count.
Index(
    "uq_cashflow_events_slot",
    cashflow_events.c.user_id,
    cashflow_events.c.source_type,
    cashflow_events.c.source_id,
    cashflow_events.c.occurrence_date,
    unique=True,
    sqlite_where=cashflow_events.c.deleted_at.is_(None),
    postgresql_where=cashflow_events.c.deleted_at.is_(None),
)

cashflow_settings = Table(
    "cashflow_settings",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("auto_categorize", Boolean, nullable=False, server_default="1"),
    Column("show_projections", Boolean, nullable=False, server_default="1"),
    Column("projection_days", Integer, nullable=False, server_default="90"),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


def init_db() -> None:
    metadata.create_all(engine)
