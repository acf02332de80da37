"""
Flat Key-Value Storage Backend

Each entity family is one JSON array in one key-value slot; settings is one
JSON object. Every query loads the whole array and filters in memory.

This is the fallback backend and the source side of migration. It keeps the
same semantics as the structured backend through the helpers in
interface.py.
"""

import json
from datetime import date
from typing import Any, Callable, Optional, TypeVar

import structlog
from pydantic import TypeAdapter, ValidationError

from fintrack.config.settings import StorageSettings
from fintrack.models.entities import (
    AppSettings,
    Budget,
    DataSnapshot,
    RecurringTemplate,
    StorageStats,
    Transaction,
    TransactionType,
)
from fintrack.scheduler.recurring import is_due
from fintrack.services.storage.interface import (
    DuplicateError,
    NotFoundError,
    StorageAdapter,
    StorageError,
    check_single_active_budget,
    merge_update,
    month_range,
    sort_by_date,
)
from fintrack.services.storage.kv import KeyValueStore


logger = structlog.get_logger(__name__)

R = TypeVar("R", Transaction, Budget, RecurringTemplate)


class FlatStoreAdapter(StorageAdapter):
    """
    StorageAdapter over a KeyValueStore.

    Usage:
        adapter = FlatStoreAdapter(InMemoryKeyValueStore())
        await adapter.add_transaction(tx)
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[StorageSettings] = None,
    ):
        self._store = store
        settings = settings or StorageSettings()
        self._transactions_key = settings.transactions_key
        self._budgets_key = settings.budgets_key
        self._recurring_key = settings.recurring_key
        self._settings_key = settings.settings_key

    # =========================================================================
    # Slot helpers
    # =========================================================================

    def _load(self, key: str, model: type[R]) -> list[R]:
        raw = self._store.get(key)
        if raw is None:
            return []
        try:
            return TypeAdapter(list[model]).validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt data in slot {key}: {e}") from e

    def _save(self, key: str, records: list[Any]) -> None:
        try:
            payload = json.dumps(
                [r.to_blob() for r in records], ensure_ascii=False
            )
        except (TypeError, ValueError) as e:
            raise StorageError(f"Failed to serialize slot {key}: {e}") from e
        self._store.set(key, payload)

    def _add(self, key: str, model: type[R], record: R) -> R:
        records = self._load(key, model)
        if any(r.id == record.id for r in records):
            raise DuplicateError(f"{model.__name__} {record.id} already exists")
        records.append(record)
        self._save(key, records)
        return record

    def _update(
        self,
        key: str,
        model: type[R],
        id: str,
        updates: dict[str, Any],
        check: Optional[Callable[[R, list[R]], None]] = None,
    ) -> R:
        records = self._load(key, model)
        for index, record in enumerate(records):
            if record.id == id:
                updated = merge_update(record, updates)
                if check:
                    check(updated, records)
                records[index] = updated
                self._save(key, records)
                return updated
        raise NotFoundError(f"{model.__name__} {id} not found")

    def _delete(self, key: str, model: type[R], id: str) -> bool:
        records = self._load(key, model)
        remaining = [r for r in records if r.id != id]
        if len(remaining) == len(records):
            return False
        self._save(key, remaining)
        return True

    def _get(self, key: str, model: type[R], id: str) -> Optional[R]:
        for record in self._load(key, model):
            if record.id == id:
                return record
        return None

    # =========================================================================
    # Transactions
    # =========================================================================

    async def add_transaction(self, transaction: Transaction) -> Transaction:
        return self._add(self._transactions_key, Transaction, transaction)

    async def update_transaction(self, id: str, updates: dict[str, Any]) -> Transaction:
        return self._update(self._transactions_key, Transaction, id, updates)

    async def delete_transaction(self, id: str) -> bool:
        return self._delete(self._transactions_key, Transaction, id)

    async def get_transaction(self, id: str) -> Optional[Transaction]:
        return self._get(self._transactions_key, Transaction, id)

    async def get_all_transactions(self) -> list[Transaction]:
        return self._load(self._transactions_key, Transaction)

    async def get_transactions_by_date_range(
        self,
        start: date,
        end: date,
    ) -> list[Transaction]:
        transactions = self._load(self._transactions_key, Transaction)
        return sort_by_date(t for t in transactions if start <= t.date <= end)

    async def get_transactions_by_category(self, category: str) -> list[Transaction]:
        transactions = self._load(self._transactions_key, Transaction)
        return [t for t in transactions if t.category == category]

    async def get_transactions_by_type(self, type: TransactionType) -> list[Transaction]:
        type = TransactionType(type)
        transactions = self._load(self._transactions_key, Transaction)
        return [t for t in transactions if t.type == type]

    async def get_transactions_by_category_and_type(
        self,
        category: str,
        type: TransactionType,
    ) -> list[Transaction]:
        type = TransactionType(type)
        transactions = self._load(self._transactions_key, Transaction)
        return [t for t in transactions if t.category == category and t.type == type]

    async def get_transactions_by_month(self, month: int, year: int) -> list[Transaction]:
        start, end = month_range(month, year)
        return await self.get_transactions_by_date_range(start, end)

    # =========================================================================
    # Budgets
    # =========================================================================

    async def add_budget(self, budget: Budget) -> Budget:
        check_single_active_budget(budget, self._load(self._budgets_key, Budget))
        return self._add(self._budgets_key, Budget, budget)

    async def update_budget(self, id: str, updates: dict[str, Any]) -> Budget:
        return self._update(
            self._budgets_key, Budget, id, updates, check=check_single_active_budget
        )

    async def delete_budget(self, id: str) -> bool:
        return self._delete(self._budgets_key, Budget, id)

    async def get_budget(self, id: str) -> Optional[Budget]:
        return self._get(self._budgets_key, Budget, id)

    async def get_all_budgets(self) -> list[Budget]:
        return self._load(self._budgets_key, Budget)

    async def get_active_budgets(self) -> list[Budget]:
        return [b for b in self._load(self._budgets_key, Budget) if b.is_active]

    async def get_budget_by_category(self, category: str) -> Optional[Budget]:
        for budget in self._load(self._budgets_key, Budget):
            if budget.category == category and budget.is_active:
                return budget
        return None

    # =========================================================================
    # Recurring templates
    # =========================================================================

    async def add_recurring(self, template: RecurringTemplate) -> RecurringTemplate:
        return self._add(self._recurring_key, RecurringTemplate, template)

    async def update_recurring(
        self,
        id: str,
        updates: dict[str, Any],
    ) -> RecurringTemplate:
        return self._update(self._recurring_key, RecurringTemplate, id, updates)

    async def delete_recurring(self, id: str) -> bool:
        return self._delete(self._recurring_key, RecurringTemplate, id)

    async def get_recurring(self, id: str) -> Optional[RecurringTemplate]:
        return self._get(self._recurring_key, RecurringTemplate, id)

    async def get_all_recurring(self) -> list[RecurringTemplate]:
        return self._load(self._recurring_key, RecurringTemplate)

    async def get_active_recurring(self) -> list[RecurringTemplate]:
        templates = self._load(self._recurring_key, RecurringTemplate)
        return [r for r in templates if r.is_active]

    async def get_pending_recurring(
        self,
        today: Optional[date] = None,
    ) -> list[RecurringTemplate]:
        today = today or date.today()
        return [
            r for r in self._load(self._recurring_key, RecurringTemplate)
            if is_due(r.next_occurrence, r.end_date, r.is_active, today)
        ]

    # =========================================================================
    # Settings
    # =========================================================================

    def _read_settings(self) -> Optional[AppSettings]:
        raw = self._store.get(self._settings_key)
        if raw is None:
            return None
        try:
            return AppSettings.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt settings blob: {e}") from e

    def _write_settings(self, settings: AppSettings) -> None:
        self._store.set(self._settings_key, json.dumps(settings.to_blob()))

    async def get_settings(self) -> AppSettings:
        return self._read_settings() or AppSettings()

    async def update_settings(self, updates: dict[str, Any]) -> AppSettings:
        current = self._read_settings() or AppSettings()
        updated = merge_update(current, updates)
        self._write_settings(updated)
        return updated

    async def reset_settings(self) -> AppSettings:
        defaults = AppSettings()
        self._write_settings(defaults)
        return defaults

    # =========================================================================
    # Bulk
    # =========================================================================

    async def export_all(self) -> DataSnapshot:
        return DataSnapshot(
            transactions=self._load(self._transactions_key, Transaction),
            budgets=self._load(self._budgets_key, Budget),
            recurring=self._load(self._recurring_key, RecurringTemplate),
            settings=self._read_settings() or AppSettings(),
        )

    async def import_all(self, snapshot: DataSnapshot) -> None:
        await self.clear_all()
        self._save(self._transactions_key, snapshot.transactions)
        self._save(self._budgets_key, snapshot.budgets)
        self._save(self._recurring_key, snapshot.recurring)
        self._write_settings(snapshot.settings)
        logger.info(
            "flat_import_completed",
            transactions=len(snapshot.transactions),
            budgets=len(snapshot.budgets),
            recurring=len(snapshot.recurring),
        )

    async def clear_all(self) -> None:
        for key in (
            self._transactions_key,
            self._budgets_key,
            self._recurring_key,
            self._settings_key,
        ):
            self._store.remove(key)

    async def get_stats(self) -> StorageStats:
        return StorageStats(
            transactions=len(self._load(self._transactions_key, Transaction)),
            budgets=len(self._load(self._budgets_key, Budget)),
            recurring=len(self._load(self._recurring_key, RecurringTemplate)),
            has_settings=self._store.get(self._settings_key) is not None,
        )
