"""
Shared fixtures for FinTrack tests.

No test touches the network: the remote store is an in-memory fake and the
HTTP client tests run on httpx.MockTransport.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import pytest

from fintrack.audit.logger import AuditLogger
from fintrack.models.audit import AuditEvent, AuditEventType
from fintrack.models.entities import (
    Budget,
    Frequency,
    RecurringTemplate,
    Transaction,
    TransactionType,
)
from fintrack.services.storage import (
    FlatStoreAdapter,
    InMemoryKeyValueStore,
    StructuredStoreAdapter,
)
from fintrack.services.sync.remote import RemoteError, RemoteStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


# =============================================================================
# FAKE REMOTE STORE
# =============================================================================

class FakeRemoteStore(RemoteStore):
    """
    In-memory RemoteStore with PostgREST-like semantics.

    Upsert keeps the first created_at of a row. Failures can be injected
    per record id (fail_ids) or per table for selects (fail_select).
    """

    def __init__(self):
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.fail_ids: set[str] = set()
        self.fail_select: set[str] = set()
        self.upserts: list[tuple[str, dict[str, Any]]] = []
        self.deletes: list[tuple[str, Any]] = []
        self._tick = 0

    def _created_at(self) -> str:
        self._tick += 1
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return (base + timedelta(seconds=self._tick)).isoformat()

    def seed(self, table: str, row: dict[str, Any]) -> None:
        row = dict(row)
        row.setdefault("created_at", self._created_at())
        self.tables.setdefault(table, {})[row["id"]] = row

    def rows(self, table: str) -> list[dict[str, Any]]:
        return list(self.tables.get(table, {}).values())

    @staticmethod
    def _matches(row: dict[str, Any], filters: dict[str, Any]) -> bool:
        return all(row.get(column) == value for column, value in filters.items())

    async def upsert(self, table: str, row: dict[str, Any]) -> None:
        if row["id"] in self.fail_ids:
            raise RemoteError(f"POST {table} returned 500: boom", status_code=500)
        self.upserts.append((table, row))
        existing = self.tables.setdefault(table, {}).get(row["id"])
        created_at = existing["created_at"] if existing else self._created_at()
        self.tables[table][row["id"]] = {**row, "created_at": created_at}

    async def select(
        self,
        table: str,
        filters: dict[str, Any],
        columns: str = "*",
        order: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        if table in self.fail_select:
            raise RemoteError(f"GET {table} returned 503: unavailable", status_code=503)
        rows = [dict(r) for r in self.rows(table) if self._matches(r, filters)]
        for key in reversed(order or []):
            column, _, direction = key.partition(".")
            rows.sort(key=lambda r: r.get(column) or "", reverse=direction == "desc")
        if columns != "*":
            wanted = columns.split(",")
            rows = [{c: r.get(c) for c in wanted} for r in rows]
        return rows

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        self.deletes.append((table, filters))
        kept = {
            id: row for id, row in self.tables.get(table, {}).items()
            if not self._matches(row, filters)
        }
        self.tables[table] = kept

    async def delete_in(
        self,
        table: str,
        column: str,
        values: list[Any],
        filters: Optional[dict[str, Any]] = None,
    ) -> None:
        self.deletes.append((table, (column, list(values), filters)))
        kept = {
            id: row for id, row in self.tables.get(table, {}).items()
            if not (row.get(column) in values and self._matches(row, filters or {}))
        }
        self.tables[table] = kept


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


# =============================================================================
# AUDIT
# =============================================================================

class RecordingAuditLogger(AuditLogger):
    """AuditLogger that also keeps every event for inspection."""

    def __init__(self):
        super().__init__()
        self.events: list[AuditEvent] = []

    async def log(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return await super().log(event)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def audit() -> RecordingAuditLogger:
    return RecordingAuditLogger()


# =============================================================================
# STORAGE
# =============================================================================

@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def flat_adapter(kv) -> FlatStoreAdapter:
    return FlatStoreAdapter(kv)


@pytest.fixture
def structured_adapter():
    adapter = StructuredStoreAdapter("sqlite://")
    yield adapter
    adapter._engine.dispose()


@pytest.fixture(params=["flat", "structured"])
def adapter(request, flat_adapter, structured_adapter):
    """Each contract test runs once per backend."""
    if request.param == "flat":
        return flat_adapter
    return structured_adapter


# =============================================================================
# RECORD FACTORIES
# =============================================================================

@pytest.fixture
def make_transaction():
    def factory(**overrides: Any) -> Transaction:
        fields = {
            "title": "Groceries",
            "amount": Decimal("125.50"),
            "category": "Food",
            "date": date(2024, 3, 15),
            "type": TransactionType.EXPENSE,
        }
        fields.update(overrides)
        return Transaction(**fields)
    return factory


@pytest.fixture
def make_budget():
    def factory(**overrides: Any) -> Budget:
        fields = {
            "category": "Food",
            "monthly_limit": Decimal("3000"),
        }
        fields.update(overrides)
        return Budget(**fields)
    return factory


@pytest.fixture
def make_template():
    def factory(**overrides: Any) -> RecurringTemplate:
        fields = {
            "title": "Rent",
            "amount": Decimal("15000"),
            "category": "Rent",
            "type": TransactionType.EXPENSE,
            "frequency": Frequency.MONTHLY,
            "start_date": date(2024, 1, 1),
        }
        fields.update(overrides)
        return RecurringTemplate.create(**fields)
    return factory
