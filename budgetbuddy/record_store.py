from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Connection

from budgetbuddy.category_defaults import DEFAULT_CATEGORIES, DefaultCategory, default_category_rows
from budgetbuddy.logging_config import get_logger
from budgetbuddy.period import MonthlyPeriod, to_utc
from budgetbuddy.stats_engine import Category, Transaction

logger = get_logger()

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), unique=True, nullable=False),
    Column("preferred_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(50), nullable=False),
    Column("color", String(7), nullable=False, server_default="#000000"),
    Column("monthly_budget", Numeric(12, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

# Datetimes are stored naive and always mean UTC.
transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("description", String(500), nullable=False, server_default=""),
    Column("receipt_image_url", String(500)),
    Column("transaction_date", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


def fetch_categories(conn: Connection, user_id: int) -> list[Category]:
    rows = conn.execute(
        select(
            categories.c.id,
            categories.c.name,
            categories.c.color,
            categories.c.monthly_budget,
        )
        .where(categories.c.user_id == user_id)
        .order_by(categories.c.id.asc())
    ).mappings().all()
    return [
        Category(
            id=row["id"],
            name=row["name"],
            color=row["color"],
            monthly_budget=coerce_decimal(row["monthly_budget"]),
        )
        for row in rows
    ]


def fetch_transactions(conn: Connection, user_id: int, period: MonthlyPeriod) -> list[Transaction]:
    rows = conn.execute(
        select(
            transactions.c.id,
            transactions.c.amount,
            transactions.c.currency,
            transactions.c.transaction_date,
            transactions.c.category_id,
            transactions.c.description,
        )
        .where(
            transactions.c.user_id == user_id,
            transactions.c.transaction_date >= to_storage(period.start),
            transactions.c.transaction_date < to_storage(period.end),
        )
        .order_by(transactions.c.transaction_date.asc(), transactions.c.id.asc())
    ).mappings().all()
    return [
        Transaction(
            id=row["id"],
            amount=coerce_decimal(row["amount"]),
            currency=row["currency"],
            transaction_date=row["transaction_date"].replace(tzinfo=timezone.utc),
            category_id=row["category_id"],
            description=row["description"] or "",
        )
        for row in rows
    ]


def fetch_preferred_currency(conn: Connection, user_id: int) -> str | None:
    return conn.execute(
        select(users.c.preferred_currency).where(users.c.id == user_id)
    ).scalar_one_or_none()


def user_exists(conn: Connection, user_id: int) -> bool:
    return conn.execute(select(users.c.id).where(users.c.id == user_id)).first() is not None


def category_belongs_to_user(conn: Connection, user_id: int, category_id: int) -> bool:
    match = conn.execute(
        select(categories.c.id).where(
            categories.c.id == category_id, categories.c.user_id == user_id
        )
    ).first()
    return match is not None


def ensure_default_categories(
    conn: Connection,
    user_id: int,
    defaults: Mapping[str, DefaultCategory] = DEFAULT_CATEGORIES,
) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing or not defaults:
        return
    rows = default_category_rows(user_id, defaults)
    conn.execute(insert(categories), rows)
    logger.info(f"Created {len(rows)} default categories for user {user_id}")


def insert_transaction(
    conn: Connection,
    user_id: int,
    *,
    amount: Decimal,
    currency: str,
    description: str,
    transaction_date: datetime,
    category_id: int | None = None,
    receipt_image_url: str | None = None,
) -> Mapping:
    row = conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            category_id=category_id,
            amount=amount,
            currency=currency,
            description=description,
            receipt_image_url=receipt_image_url,
            transaction_date=to_storage(transaction_date),
        )
        .returning(
            transactions.c.id,
            transactions.c.category_id,
            transactions.c.amount,
            transactions.c.currency,
            transactions.c.description,
            transactions.c.receipt_image_url,
            transactions.c.transaction_date,
        )
    ).mappings().first()
    return row


def to_storage(value: datetime) -> datetime:
    return to_utc(value).replace(tzinfo=None)


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))
