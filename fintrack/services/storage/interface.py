"""
Abstract Storage Interface

DESIGN DECISION: Every caller talks to storage through StorageAdapter.
This allows us to:
1. Run the same code over the structured and the flat backend
2. Swap backends during migration without the UI noticing
3. Use in-memory stores for testing

The shared helpers at the bottom of this module hold the semantics both
backends must agree on (merge-on-update, ordering, month ranges, the single
active budget rule), so the two implementations cannot drift apart.
"""

import calendar
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Iterable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from fintrack.models.entities import (
    AppSettings,
    Budget,
    DataSnapshot,
    RecurringTemplate,
    StorageStats,
    Transaction,
    TransactionType,
)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class BackendUnavailableError(StorageError):
    """Could not open or reach the storage backend."""
    pass


class QuotaExceededError(StorageError):
    """A write would exceed the key-value store size limit."""
    pass


class StorageAdapter(ABC):
    """
    Abstract interface for FinTrack persistence.

    Both the structured (SQLite) and flat (key-value) backends implement
    these methods and must return identical results for identical data.
    """

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_transaction(self, transaction: Transaction) -> Transaction:
        """
        Store a new transaction.

        Args:
            transaction: The transaction to store

        Returns:
            The stored transaction

        Raises:
            DuplicateError: If the id already exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update_transaction(self, id: str, updates: dict[str, Any]) -> Transaction:
        """
        Merge a partial update into a stored transaction.

        Args:
            id: The transaction id
            updates: Field values to change (snake_case or camelCase keys)

        Returns:
            The updated transaction

        Raises:
            NotFoundError: If the transaction doesn't exist
            StorageError: If the merged record is invalid or the write fails
        """
        pass

    @abstractmethod
    async def delete_transaction(self, id: str) -> bool:
        """
        Delete a transaction by id.

        Returns:
            True if a record was removed
        """
        pass

    @abstractmethod
    async def get_transaction(self, id: str) -> Optional[Transaction]:
        """Return the transaction, or None if absent."""
        pass

    @abstractmethod
    async def get_all_transactions(self) -> list[Transaction]:
        """All transactions in insertion order."""
        pass

    @abstractmethod
    async def get_transactions_by_date_range(
        self,
        start: date,
        end: date,
    ) -> list[Transaction]:
        """
        Transactions with start <= date <= end.

        Ordered by date ascending, ties in insertion order.
        """
        pass

    @abstractmethod
    async def get_transactions_by_category(self, category: str) -> list[Transaction]:
        pass

    @abstractmethod
    async def get_transactions_by_type(self, type: TransactionType) -> list[Transaction]:
        pass

    @abstractmethod
    async def get_transactions_by_category_and_type(
        self,
        category: str,
        type: TransactionType,
    ) -> list[Transaction]:
        pass

    @abstractmethod
    async def get_transactions_by_month(self, month: int, year: int) -> list[Transaction]:
        """
        Transactions of one calendar month.

        Args:
            month: 1-12
            year: Four-digit year
        """
        pass

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_budget(self, budget: Budget) -> Budget:
        """
        Store a new budget.

        Raises:
            DuplicateError: If the id exists or another active budget
                already covers the category
        """
        pass

    @abstractmethod
    async def update_budget(self, id: str, updates: dict[str, Any]) -> Budget:
        pass

    @abstractmethod
    async def delete_budget(self, id: str) -> bool:
        pass

    @abstractmethod
    async def get_budget(self, id: str) -> Optional[Budget]:
        pass

    @abstractmethod
    async def get_all_budgets(self) -> list[Budget]:
        pass

    @abstractmethod
    async def get_active_budgets(self) -> list[Budget]:
        pass

    @abstractmethod
    async def get_budget_by_category(self, category: str) -> Optional[Budget]:
        """The active budget for a category, or None."""
        pass

    # -------------------------------------------------------------------------
    # Recurring templates
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_recurring(self, template: RecurringTemplate) -> RecurringTemplate:
        pass

    @abstractmethod
    async def update_recurring(
        self,
        id: str,
        updates: dict[str, Any],
    ) -> RecurringTemplate:
        pass

    @abstractmethod
    async def delete_recurring(self, id: str) -> bool:
        pass

    @abstractmethod
    async def get_recurring(self, id: str) -> Optional[RecurringTemplate]:
        pass

    @abstractmethod
    async def get_all_recurring(self) -> list[RecurringTemplate]:
        pass

    @abstractmethod
    async def get_active_recurring(self) -> list[RecurringTemplate]:
        pass

    @abstractmethod
    async def get_pending_recurring(
        self,
        today: Optional[date] = None,
    ) -> list[RecurringTemplate]:
        """
        Active templates that are due on or before today.

        Args:
            today: Reference date, defaults to the local current date
        """
        pass

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_settings(self) -> AppSettings:
        """Stored settings, or defaults (not persisted) when none exist."""
        pass

    @abstractmethod
    async def update_settings(self, updates: dict[str, Any]) -> AppSettings:
        pass

    @abstractmethod
    async def reset_settings(self) -> AppSettings:
        """Overwrite stored settings with the defaults."""
        pass

    # -------------------------------------------------------------------------
    # Bulk
    # -------------------------------------------------------------------------

    @abstractmethod
    async def export_all(self) -> DataSnapshot:
        pass

    @abstractmethod
    async def import_all(self, snapshot: DataSnapshot) -> None:
        """
        Replace all stored data with the snapshot.

        Destructive: existing records are removed first.
        """
        pass

    @abstractmethod
    async def clear_all(self) -> None:
        pass

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


# =============================================================================
# SHARED SEMANTICS
# =============================================================================

M = TypeVar("M", bound=BaseModel)


def merge_update(record: M, updates: dict[str, Any]) -> M:
    """
    Merge a partial update into a record and re-validate it.

    The id never changes. Keys may use either field names or aliases.
    """
    model = type(record)
    aliases = {
        (info.alias or name): name for name, info in model.model_fields.items()
    }
    data = record.model_dump()
    for key, value in updates.items():
        name = aliases.get(key, key)
        if name == "id" or name not in model.model_fields:
            continue
        data[name] = value
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise StorageError(f"Invalid update for {model.__name__}: {e}") from e


def sort_by_date(transactions: Iterable[Transaction]) -> list[Transaction]:
    """Stable sort, so equal dates keep insertion order."""
    return sorted(transactions, key=lambda t: t.date)


def month_range(month: int, year: int) -> tuple[date, date]:
    """First and last day of a 1-12 month."""
    if not 1 <= month <= 12:
        raise StorageError(f"Month must be 1-12, got {month}")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def check_single_active_budget(budget: Budget, existing: Iterable[Budget]) -> None:
    """Raise DuplicateError if another active budget covers the category."""
    if not budget.is_active:
        return
    for other in existing:
        if other.id != budget.id and other.is_active and other.category == budget.category:
            raise DuplicateError(
                f"Active budget already exists for category {budget.category}"
            )
