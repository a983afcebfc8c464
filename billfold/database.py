from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    false,
    func,
    true,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("home_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("initial_balance", BigInteger, nullable=False, server_default="0"),
    Column("balance", BigInteger, nullable=False, server_default="0"),
    Column("credit_limit", BigInteger),
    Column("bill_generation_day", Integer),
    Column("bill_due_day", Integer),
    Column("interest_rate", Numeric(6, 4)),
    Column("minimum_payment_percentage", Numeric(5, 4)),
    Column("current_bill_paid", Boolean),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", "type", name="uq_categories_user_name_type"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False, index=True),
    Column("to_account_id", Integer, ForeignKey("accounts.id")),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("type", String(20), nullable=False),
    Column("amount", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("account_amount", BigInteger, nullable=False),
    Column("to_account_amount", BigInteger),
    Column("date", Date, nullable=False),
    Column("payee", String(255), nullable=False),
    Column("notes", String(500)),
    Column("status", String(20), nullable=False, server_default="completed"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("month", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "category_id", "month", name="uq_budgets_user_category_month"),
)

payees = Table(
    "payees",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("display_name", String(100), nullable=False),
    Column("description", String(500)),
    Column("category", String(50)),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_payees_user_name"),
)

credit_card_bills = Table(
    "credit_card_bills",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("period_start", Date, nullable=False),
    Column("period_end", Date, nullable=False),
    Column("generation_date", Date, nullable=False),
    Column("due_date", Date, nullable=False),
    Column("bill_amount", BigInteger, nullable=False),
    Column("minimum_payment", BigInteger, nullable=False),
    Column("previous_balance", BigInteger, nullable=False, server_default="0"),
    Column("new_charges", BigInteger, nullable=False, server_default="0"),
    Column("payments_credits", BigInteger, nullable=False, server_default="0"),
    Column("interest_charged", BigInteger, nullable=False, server_default="0"),
    Column("late_fees", BigInteger, nullable=False, server_default="0"),
    Column("interest_rate", Numeric(6, 4)),
    Column("transaction_count", Integer, nullable=False, server_default="0"),
    Column("is_paid", Boolean, nullable=False, server_default=false()),
    Column("paid_amount", BigInteger, nullable=False, server_default="0"),
    Column("paid_date", Date),
    Column("status", String(20), nullable=False, server_default="generated"),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("account_id", "period_start", "period_end", name="uq_bills_account_period"),
)

import_records = Table(
    "import_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("file_name", String(255), nullable=False),
    Column("file_size", Integer, nullable=False),
    Column("original_rows", JSON, nullable=False),
    Column("detected_columns", JSON, nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("total_rows", Integer, nullable=False, server_default="0"),
    Column("imported_rows", Integer, nullable=False, server_default="0"),
    Column("failed_rows", Integer, nullable=False, server_default="0"),
    Column("import_errors", JSON),
    Column("analysis", JSON),
    Column("confirmed_mappings", JSON),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("completed_at", DateTime),
)


class Database:
    """Owns the engine; created once per app and handed to request handlers."""

    def __init__(self, url: str, **engine_kwargs) -> None:
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs.setdefault("poolclass", StaticPool)
        self.url = url
        self.engine: Engine = create_engine(url, connect_args=connect_args, **engine_kwargs)

    def begin(self):
        return self.engine.begin()

    def connect(self) -> Connection:
        return self.engine.connect()

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
