"""
Structured Storage Backend (SQLite via SQLAlchemy Core)

The primary backend once migration has run. Queries use the indexes
declared in schema.py; results match FlatStoreAdapter for the same data.

DESIGN DECISION: SQLAlchemy calls are synchronous and run inline inside the
async methods. The database is local and embedded, so there is no network
latency to hide behind a thread pool.
"""

from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, Optional

import structlog
from sqlalchemy import (
    Table,
    and_,
    create_engine,
    delete,
    func,
    insert,
    literal_column,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

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
    BackendUnavailableError,
    DuplicateError,
    NotFoundError,
    StorageAdapter,
    StorageError,
    check_single_active_budget,
    merge_update,
    month_range,
)
from fintrack.services.storage.schema import (
    FAMILY_TABLES,
    SETTINGS_ROW_ID,
    budgets_table,
    metadata,
    recurring_table,
    settings_table,
    transactions_table,
)


logger = structlog.get_logger(__name__)

ROWID = literal_column("rowid")


def create_sqlite_engine(database_url: str = "sqlite://") -> Engine:
    """
    Build an engine for a SQLite URL.

    In-memory databases share one connection so every session sees the
    same data.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(database_url, future=True, pool_pre_ping=True)


def _to_row(record: Any) -> dict[str, Any]:
    row = record.model_dump()
    for key, value in row.items():
        if isinstance(value, Decimal):
            row[key] = str(value)
        elif isinstance(value, Enum):
            row[key] = value.value
    return row


class StructuredStoreAdapter(StorageAdapter):
    """
    StorageAdapter over SQLite.

    Usage:
        adapter = StructuredStoreAdapter("sqlite:///data/fintrack.db")
        await adapter.add_transaction(tx)
        await adapter.close()
    """

    def __init__(
        self,
        database_url: str = "sqlite://",
        engine: Optional[Engine] = None,
    ):
        self._engine = engine or create_sqlite_engine(database_url)
        try:
            metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise BackendUnavailableError(
                f"Cannot open structured store {self._engine.url}: {e}"
            ) from e

    @contextmanager
    def _begin(self, action: str) -> Iterator[Connection]:
        """Run a block in one database transaction, mapping backend errors."""
        try:
            with self._engine.begin() as conn:
                yield conn
        except IntegrityError as e:
            raise DuplicateError(f"Failed to {action}: duplicate key") from e
        except OperationalError as e:
            raise BackendUnavailableError(f"Failed to {action}: {e}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to {action}: {e}") from e

    def _fetch(self, action: str, stmt: Any, model: type) -> list:
        with self._begin(action) as conn:
            rows = conn.execute(stmt).mappings().all()
        return [model.model_validate(dict(row)) for row in rows]

    def _get(self, table: Table, model: type, id: str) -> Optional[Any]:
        found = self._fetch(
            f"get {table.name} {id}",
            select(table).where(table.c.id == id),
            model,
        )
        return found[0] if found else None

    def _insert(self, table: Table, record: Any) -> Any:
        with self._begin(f"add {table.name} {record.id}") as conn:
            conn.execute(insert(table).values(**_to_row(record)))
        return record

    def _update(
        self,
        table: Table,
        model: type,
        id: str,
        updates: dict[str, Any],
    ) -> Any:
        with self._begin(f"update {table.name} {id}") as conn:
            row = conn.execute(
                select(table).where(table.c.id == id)
            ).mappings().first()
            if row is None:
                raise NotFoundError(f"{model.__name__} {id} not found")
            updated = merge_update(model.model_validate(dict(row)), updates)
            if table is budgets_table:
                others = conn.execute(
                    select(budgets_table).where(
                        and_(
                            budgets_table.c.category == updated.category,
                            budgets_table.c.is_active.is_(True),
                            budgets_table.c.id != id,
                        )
                    )
                ).mappings().all()
                check_single_active_budget(
                    updated, [Budget.model_validate(dict(o)) for o in others]
                )
            conn.execute(
                update(table).where(table.c.id == id).values(**_to_row(updated))
            )
        return updated

    def _delete(self, table: Table, id: str) -> bool:
        with self._begin(f"delete {table.name} {id}") as conn:
            removed = conn.execute(delete(table).where(table.c.id == id)).rowcount
        return removed > 0

    # =========================================================================
    # Transactions
    # =========================================================================

    async def add_transaction(self, transaction: Transaction) -> Transaction:
        return self._insert(transactions_table, transaction)

    async def update_transaction(self, id: str, updates: dict[str, Any]) -> Transaction:
        return self._update(transactions_table, Transaction, id, updates)

    async def delete_transaction(self, id: str) -> bool:
        return self._delete(transactions_table, id)

    async def get_transaction(self, id: str) -> Optional[Transaction]:
        return self._get(transactions_table, Transaction, id)

    async def get_all_transactions(self) -> list[Transaction]:
        return self._fetch(
            "list transactions",
            select(transactions_table).order_by(ROWID),
            Transaction,
        )

    async def get_transactions_by_date_range(
        self,
        start: date,
        end: date,
    ) -> list[Transaction]:
        t = transactions_table
        return self._fetch(
            "query transactions by date",
            select(t).where(t.c.date.between(start, end)).order_by(t.c.date, ROWID),
            Transaction,
        )

    async def get_transactions_by_category(self, category: str) -> list[Transaction]:
        t = transactions_table
        return self._fetch(
            "query transactions by category",
            select(t).where(t.c.category == category).order_by(ROWID),
            Transaction,
        )

    async def get_transactions_by_type(self, type: TransactionType) -> list[Transaction]:
        t = transactions_table
        return self._fetch(
            "query transactions by type",
            select(t).where(t.c.type == TransactionType(type).value).order_by(ROWID),
            Transaction,
        )

    async def get_transactions_by_category_and_type(
        self,
        category: str,
        type: TransactionType,
    ) -> list[Transaction]:
        t = transactions_table
        return self._fetch(
            "query transactions by category and type",
            select(t)
            .where(and_(t.c.category == category, t.c.type == TransactionType(type).value))
            .order_by(ROWID),
            Transaction,
        )

    async def get_transactions_by_month(self, month: int, year: int) -> list[Transaction]:
        start, end = month_range(month, year)
        return await self.get_transactions_by_date_range(start, end)

    # =========================================================================
    # Budgets
    # =========================================================================

    async def add_budget(self, budget: Budget) -> Budget:
        with self._begin(f"add budget {budget.id}") as conn:
            others = conn.execute(
                select(budgets_table).where(
                    and_(
                        budgets_table.c.category == budget.category,
                        budgets_table.c.is_active.is_(True),
                    )
                )
            ).mappings().all()
            check_single_active_budget(
                budget, [Budget.model_validate(dict(o)) for o in others]
            )
            conn.execute(insert(budgets_table).values(**_to_row(budget)))
        return budget

    async def update_budget(self, id: str, updates: dict[str, Any]) -> Budget:
        return self._update(budgets_table, Budget, id, updates)

    async def delete_budget(self, id: str) -> bool:
        return self._delete(budgets_table, id)

    async def get_budget(self, id: str) -> Optional[Budget]:
        return self._get(budgets_table, Budget, id)

    async def get_all_budgets(self) -> list[Budget]:
        return self._fetch(
            "list budgets",
            select(budgets_table).order_by(ROWID),
            Budget,
        )

    async def get_active_budgets(self) -> list[Budget]:
        b = budgets_table
        return self._fetch(
            "list active budgets",
            select(b).where(b.c.is_active.is_(True)).order_by(ROWID),
            Budget,
        )

    async def get_budget_by_category(self, category: str) -> Optional[Budget]:
        b = budgets_table
        found = self._fetch(
            f"get budget for {category}",
            select(b)
            .where(and_(b.c.category == category, b.c.is_active.is_(True)))
            .order_by(ROWID)
            .limit(1),
            Budget,
        )
        return found[0] if found else None

    # =========================================================================
    # Recurring templates
    # =========================================================================

    async def add_recurring(self, template: RecurringTemplate) -> RecurringTemplate:
        return self._insert(recurring_table, template)

    async def update_recurring(
        self,
        id: str,
        updates: dict[str, Any],
    ) -> RecurringTemplate:
        return self._update(recurring_table, RecurringTemplate, id, updates)

    async def delete_recurring(self, id: str) -> bool:
        return self._delete(recurring_table, id)

    async def get_recurring(self, id: str) -> Optional[RecurringTemplate]:
        return self._get(recurring_table, RecurringTemplate, id)

    async def get_all_recurring(self) -> list[RecurringTemplate]:
        return self._fetch(
            "list recurring",
            select(recurring_table).order_by(ROWID),
            RecurringTemplate,
        )

    async def get_active_recurring(self) -> list[RecurringTemplate]:
        r = recurring_table
        return self._fetch(
            "list active recurring",
            select(r).where(r.c.is_active.is_(True)).order_by(ROWID),
            RecurringTemplate,
        )

    async def get_pending_recurring(
        self,
        today: Optional[date] = None,
    ) -> list[RecurringTemplate]:
        today = today or date.today()
        r = recurring_table
        candidates = self._fetch(
            "list pending recurring",
            select(r)
            .where(and_(r.c.is_active.is_(True), r.c.next_occurrence <= today))
            .order_by(ROWID),
            RecurringTemplate,
        )
        return [
            t for t in candidates
            if is_due(t.next_occurrence, t.end_date, t.is_active, today)
        ]

    # =========================================================================
    # Settings
    # =========================================================================

    def _read_settings(self, conn: Connection) -> Optional[AppSettings]:
        payload = conn.execute(
            select(settings_table.c.payload).where(settings_table.c.id == SETTINGS_ROW_ID)
        ).scalar_one_or_none()
        if payload is None:
            return None
        return AppSettings.model_validate(payload)

    def _write_settings(self, conn: Connection, settings: AppSettings) -> None:
        conn.execute(delete(settings_table).where(settings_table.c.id == SETTINGS_ROW_ID))
        conn.execute(
            insert(settings_table).values(id=SETTINGS_ROW_ID, payload=settings.to_blob())
        )

    async def get_settings(self) -> AppSettings:
        with self._begin("read settings") as conn:
            return self._read_settings(conn) or AppSettings()

    async def update_settings(self, updates: dict[str, Any]) -> AppSettings:
        with self._begin("update settings") as conn:
            updated = merge_update(self._read_settings(conn) or AppSettings(), updates)
            self._write_settings(conn, updated)
        return updated

    async def reset_settings(self) -> AppSettings:
        defaults = AppSettings()
        with self._begin("reset settings") as conn:
            self._write_settings(conn, defaults)
        return defaults

    # =========================================================================
    # Bulk
    # =========================================================================

    async def export_all(self) -> DataSnapshot:
        with self._begin("read settings") as conn:
            settings = self._read_settings(conn) or AppSettings()
        return DataSnapshot(
            transactions=await self.get_all_transactions(),
            budgets=await self.get_all_budgets(),
            recurring=await self.get_all_recurring(),
            settings=settings,
        )

    async def import_all(self, snapshot: DataSnapshot) -> None:
        """Replace everything in one database transaction."""
        families = (
            (transactions_table, snapshot.transactions),
            (budgets_table, snapshot.budgets),
            (recurring_table, snapshot.recurring),
        )
        with self._begin("import snapshot") as conn:
            for table in (*FAMILY_TABLES, settings_table):
                conn.execute(delete(table))
            for table, records in families:
                if records:
                    conn.execute(insert(table), [_to_row(r) for r in records])
            self._write_settings(conn, snapshot.settings)
        logger.info(
            "structured_import_completed",
            transactions=len(snapshot.transactions),
            budgets=len(snapshot.budgets),
            recurring=len(snapshot.recurring),
        )

    async def clear_all(self) -> None:
        with self._begin("clear store") as conn:
            for table in (*FAMILY_TABLES, settings_table):
                conn.execute(delete(table))

    async def get_stats(self) -> StorageStats:
        with self._begin("count records") as conn:
            counts = {
                table.name: conn.execute(
                    select(func.count()).select_from(table)
                ).scalar_one()
                for table in FAMILY_TABLES
            }
            settings_rows = conn.execute(
                select(func.count()).select_from(settings_table)
            ).scalar_one()
        return StorageStats(
            transactions=counts["transactions"],
            budgets=counts["budgets"],
            recurring=counts["recurring"],
            has_settings=settings_rows > 0,
        )

    async def close(self) -> None:
        self._engine.dispose()
