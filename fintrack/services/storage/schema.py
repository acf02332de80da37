"""
Structured Backend Schema

SQLAlchemy Core tables for the embedded SQLite database. Index names
follow idx_<table>_<columns>.

Amounts are stored as exact decimal strings; SQLite has no fixed-point
numeric type.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    Index,
    MetaData,
    String,
    Table,
    Text,
)


SETTINGS_ROW_ID = "default"

metadata = MetaData()


transactions_table = Table(
    "transactions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("title", String(200), nullable=False),
    Column("amount", String(40), nullable=False),
    Column("category", String(100), nullable=False),
    Column("date", Date, nullable=False),
    Column("type", String(20), nullable=False),
    Column("description", Text),
    Column("original_currency", String(3), nullable=False),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("recurring_id", String(64)),
    Index("idx_transactions_date", "date"),
    Index("idx_transactions_type", "type"),
    Index("idx_transactions_category", "category"),
    Index("idx_transactions_amount", "amount"),
    Index("idx_transactions_date_type", "date", "type"),
    Index("idx_transactions_category_type", "category", "type"),
    Index("idx_transactions_date_category", "date", "category"),
    Index("idx_transactions_recurring_date", "recurring_id", "date"),
)


budgets_table = Table(
    "budgets",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("category", String(100), nullable=False),
    Column("monthly_limit", String(40), nullable=False),
    Column("alert_threshold", Float, nullable=False),
    Column("is_active", Boolean, nullable=False),
    Column("currency", String(3), nullable=False),
    Index("idx_budgets_category", "category"),
    Index("idx_budgets_is_active", "is_active"),
    Index("idx_budgets_category_is_active", "category", "is_active"),
)


recurring_table = Table(
    "recurring",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("title", String(200), nullable=False),
    Column("amount", String(40), nullable=False),
    Column("category", String(100), nullable=False),
    Column("type", String(20), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("last_generated", Date),
    Column("next_occurrence", Date, nullable=False),
    Column("is_active", Boolean, nullable=False),
    Column("description", Text),
    Column("original_currency", String(3), nullable=False),
    Index("idx_recurring_frequency", "frequency"),
    Index("idx_recurring_is_active", "is_active"),
    Index("idx_recurring_next_occurrence", "next_occurrence"),
    Index("idx_recurring_last_generated", "last_generated"),
    Index("idx_recurring_start_date", "start_date"),
    Index("idx_recurring_is_active_next_occurrence", "is_active", "next_occurrence"),
)


settings_table = Table(
    "settings",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("payload", JSON, nullable=False),
)


FAMILY_TABLES = (transactions_table, budgets_table, recurring_table)
