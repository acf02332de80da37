"""
Core Entity Models for FinTrack

These models are plain records with no storage behavior. Everything else in
the system (adapters, migration, sync, scheduler) operates on them.

DESIGN DECISION: Python code uses snake_case field names while every
persisted blob and snapshot uses camelCase keys. The alias generator keeps
both spellings valid on input, so older flat blobs load unchanged.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)
from pydantic.alias_generators import to_camel


SNAPSHOT_VERSION = "2.0"


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """
    Kind of money movement.

    The stored amount is always non-negative; the effect on the cash
    balance is derived from the type.
    """
    INCOME = "income"
    EXPENSE = "expense"
    SAVINGS = "savings"
    WITHDRAWAL = "withdrawal"


class Frequency(str, Enum):
    """Recurrence period of a recurring template."""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Currency(str, Enum):
    TRY = "TRY"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class CurrencyPair(str, Enum):
    TRY_USD = "TRY-USD"
    USD_TRY = "USD-TRY"
    EUR_USD = "EUR-USD"
    USD_EUR = "USD-EUR"
    TRY_EUR = "TRY-EUR"
    EUR_TRY = "EUR-TRY"
    GBP_USD = "GBP-USD"
    USD_GBP = "USD-GBP"


class Language(str, Enum):
    TR = "tr"
    EN = "en"


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"


# =============================================================================
# KNOWN CATEGORIES
# =============================================================================

INCOME_CATEGORIES = [
    "Salary",
    "Investment Return",
    "Bonus",
    "Freelance",
    "Rental Income",
    "Pension",
    "Dividend",
    "Other Income",
]

SAVINGS_CATEGORIES = [
    "Emergency Fund",
    "Investment",
    "Retirement",
    "Goal Savings",
    "Other Savings",
]

EXPENSE_CATEGORIES = [
    "Food",
    "Transportation",
    "Rent",
    "Utilities",
    "Healthcare",
    "Education",
    "Entertainment",
    "Shopping",
    "Insurance",
    "Phone",
    "Internet",
    "Subscriptions",
    "Personal Care",
    "Other Expense",
]

ALL_CATEGORIES = [*INCOME_CATEGORIES, *EXPENSE_CATEGORIES]


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


Amount = Annotated[Decimal, Field(ge=0, description="Non-negative amount")]


class Record(BaseModel):
    """
    Base for all persisted records.

    Provides the camelCase wire format used by flat blobs and snapshots.
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_blob(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# CORE ENTITIES
# =============================================================================

class Transaction(Record):
    """
    A single income/expense/savings/withdrawal entry.

    Created by direct user entry or materialized from a RecurringTemplate.
    """

    id: str = Field(
        default_factory=_new_id,
        min_length=1,
        description="Opaque unique identifier"
    )
    title: str = Field(
        ...,
        min_length=1,
        max_length=200
    )
    amount: Amount
    category: str = Field(
        ...,
        min_length=1,
        description="Category name, normally one of ALL_CATEGORIES"
    )
    date: date
    type: TransactionType
    description: Optional[str] = None
    original_currency: Currency = Currency.TRY
    is_recurring: bool = False
    recurring_id: Optional[str] = Field(
        default=None,
        description="Template this transaction was generated from"
    )

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this transaction on the cash balance."""
        if self.type in (TransactionType.INCOME, TransactionType.WITHDRAWAL):
            return self.amount
        return -self.amount


class RecurringTemplate(Record):
    """
    A template that materializes one Transaction per period.

    next_occurrence must always equal
    next_occurrence(start_date, frequency, last_generated).
    """

    id: str = Field(default_factory=_new_id, min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    amount: Amount
    category: str = Field(..., min_length=1)
    type: TransactionType
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    last_generated: Optional[date] = None
    next_occurrence: date
    is_active: bool = True
    description: Optional[str] = None
    original_currency: Currency = Currency.TRY

    @model_validator(mode='after')
    def validate_dates(self) -> 'RecurringTemplate':
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self

    @classmethod
    def create(cls, **fields: Any) -> 'RecurringTemplate':
        """
        Build a template with next_occurrence derived from its schedule.

        Any next_occurrence passed in is ignored.
        """
        from fintrack.scheduler.recurring import next_occurrence

        fields.pop("next_occurrence", None)
        fields.pop("nextOccurrence", None)
        draft = cls.model_validate({**fields, "next_occurrence": date.min})
        draft.next_occurrence = next_occurrence(
            draft.start_date, draft.frequency, draft.last_generated
        )
        return cls.model_validate(draft.model_dump())

    def instance_for(self, occurrence: date) -> Transaction:
        """Materialize the transaction for one occurrence date."""
        return Transaction(
            title=self.title,
            amount=self.amount,
            category=self.category,
            date=occurrence,
            type=self.type,
            description=self.description,
            original_currency=self.original_currency,
            is_recurring=True,
            recurring_id=self.id,
        )


class Budget(Record):
    """
    Monthly spending limit for one category.

    At most one active budget may exist per category.
    """

    id: str = Field(default_factory=_new_id, min_length=1)
    category: str = Field(..., min_length=1)
    monthly_limit: Amount
    alert_threshold: float = Field(
        default=80.0,
        ge=0.0,
        le=100.0,
        description="Percentage of the limit that triggers an alert"
    )
    is_active: bool = True
    currency: Currency = Currency.TRY


class AppSettings(Record):
    """Global application settings (single row)."""

    currency: Currency = Currency.TRY
    currency_pair: Optional[CurrencyPair] = CurrencyPair.TRY_USD
    language: Language = Language.TR
    theme: Theme = Theme.LIGHT
    inflation_rate: float = Field(
        default=30.0,
        description="Annual inflation estimate (%) for real-return figures"
    )


DEFAULT_SETTINGS = AppSettings()


# =============================================================================
# BULK SHAPES
# =============================================================================

class StorageStats(Record):
    """Record counts per family plus settings presence."""

    transactions: int = Field(default=0, ge=0)
    budgets: int = Field(default=0, ge=0)
    recurring: int = Field(default=0, ge=0)
    has_settings: bool = False

    @property
    def total_records(self) -> int:
        return self.transactions + self.budgets + self.recurring

    @property
    def has_data(self) -> bool:
        return self.total_records > 0 or self.has_settings


class DataSnapshot(Record):
    """
    The whole dataset as one structured value.

    Used for export/import, migration and the migration backup blob.
    """

    transactions: list[Transaction] = Field(default_factory=list)
    budgets: list[Budget] = Field(default_factory=list)
    recurring: list[RecurringTemplate] = Field(default_factory=list)
    settings: AppSettings = Field(default_factory=AppSettings)
    exported_at: datetime = Field(default_factory=_utcnow)
    version: str = SNAPSHOT_VERSION

    def stats(self) -> StorageStats:
        return StorageStats(
            transactions=len(self.transactions),
            budgets=len(self.budgets),
            recurring=len(self.recurring),
            has_settings=True,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, text: str) -> 'DataSnapshot':
        return cls.model_validate_json(text)
