"""
Import Validation

User-supplied JSON and CSV payloads are validated completely before
anything is written. A payload is either accepted whole or rejected with a
human-readable ImportValidationError; there is no partial import.

JSON: an object with a `transactions` array whose rows all carry title,
numeric amount, category, date and type.

CSV: a header row naming Title, Amount, Category, Date and Type (English or
Turkish, any case), optionally Description. Rows with an amount of zero or
less are dropped, every row gets a fresh id.
"""

import csv
import io
import json
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from fintrack.audit.logger import AuditLogger
from fintrack.concurrency import ReentrancyGuard
from fintrack.models.entities import Transaction, TransactionType
from fintrack.models.state import ImportReport
from fintrack.services.storage.interface import StorageAdapter


logger = structlog.get_logger(__name__)

REQUIRED_FIELDS = ("title", "amount", "category", "date", "type")

CSV_HEADERS = {
    "title": ("title", "başlık"),
    "amount": ("amount", "tutar"),
    "category": ("category", "kategori"),
    "date": ("date", "tarih"),
    "type": ("type", "tür"),
    "description": ("description", "açıklama"),
}


class ImportValidationError(Exception):
    """An import payload failed structural validation."""

    def __init__(self, message: str, issues: Optional[list[str]] = None):
        self.message = message
        self.issues = issues or []
        super().__init__(message)


# =============================================================================
# JSON
# =============================================================================

def _row_is_complete(row: Any) -> bool:
    if not isinstance(row, dict):
        return False
    amount = row.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False
    return all(row.get(field) for field in ("title", "category", "date", "type"))


def parse_json_import(text: str) -> list[Transaction]:
    """
    Validate a JSON export and return its transactions.

    Raises:
        ImportValidationError: If the payload is malformed
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ImportValidationError(f"Failed to parse JSON: {e.msg}") from e

    rows = data.get("transactions") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        raise ImportValidationError("Invalid JSON: missing transactions array")

    incomplete = [i for i, row in enumerate(rows) if not _row_is_complete(row)]
    if incomplete:
        raise ImportValidationError(
            "Invalid JSON: transactions have invalid structure",
            issues=[f"Row {i + 1}: missing or invalid required field" for i in incomplete],
        )

    transactions = []
    issues = []
    for i, row in enumerate(rows):
        payload = dict(row)
        if isinstance(payload["amount"], float):
            payload["amount"] = Decimal(str(payload["amount"]))
        try:
            transactions.append(Transaction.model_validate(payload))
        except ValidationError as e:
            issues.append(f"Row {i + 1}: {e.errors()[0]['msg']}")

    if issues:
        raise ImportValidationError(
            "Invalid JSON: transactions have invalid structure", issues=issues
        )
    return transactions


# =============================================================================
# CSV
# =============================================================================

def _find_header(headers: list[str], names: tuple[str, ...]) -> Optional[int]:
    lowered = [h.strip().lower() for h in headers]
    for name in names:
        if name in lowered:
            return lowered.index(name)
    return None


def _parse_amount(raw: str) -> Decimal:
    try:
        return Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        return Decimal(0)


def parse_csv_import(text: str) -> list[Transaction]:
    """
    Validate a CSV export and return its transactions.

    Quoted fields may contain commas; a doubled quote is a literal quote.

    Raises:
        ImportValidationError: If the header or any kept row is invalid
    """
    lines = text.strip().splitlines()
    if len(lines) < 2:
        raise ImportValidationError("CSV file is empty or invalid")

    reader = csv.reader(io.StringIO("\n".join(lines)), skipinitialspace=True)
    headers = next(reader)
    index = {field: _find_header(headers, names) for field, names in CSV_HEADERS.items()}

    if any(index[field] is None for field in REQUIRED_FIELDS):
        raise ImportValidationError(
            "CSV missing required columns: Title, Amount, Category, Date, Type"
        )

    def cell(cells: list[str], field: str) -> str:
        position = index[field]
        if position is None or position >= len(cells):
            return ""
        return cells[position].strip()

    transactions = []
    issues = []
    for line_number, cells in enumerate(reader, start=2):
        if not any(c.strip() for c in cells):
            continue

        amount = _parse_amount(cell(cells, "amount"))
        if amount <= 0:
            continue

        raw_type = cell(cells, "type").lower() or TransactionType.EXPENSE.value
        try:
            transactions.append(Transaction(
                title=cell(cells, "title") or "Untitled",
                amount=amount,
                category=cell(cells, "category") or "Other",
                date=cell(cells, "date") or date.today(),
                type=raw_type,
                description=cell(cells, "description") or None,
            ))
        except ValidationError as e:
            issues.append(f"Line {line_number}: {e.errors()[0]['msg']}")

    if issues:
        raise ImportValidationError(
            f"CSV has {len(issues)} invalid row(s)", issues=issues
        )
    if not transactions:
        raise ImportValidationError("No valid transactions found in CSV")
    return transactions


# =============================================================================
# APPLYING AN IMPORT
# =============================================================================

class DataImporter:
    """
    Applies validated transaction payloads to storage.

    Add mode keeps existing data and skips ids already stored. Replace mode
    swaps the whole transaction set, keeping budgets, recurring templates
    and settings.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._audit = audit_logger or AuditLogger()
        self._guard = ReentrancyGuard("import")

    @property
    def is_processing(self) -> bool:
        return self._guard.is_processing

    async def import_transactions(
        self,
        transactions: list[Transaction],
        replace: bool = False,
    ) -> Optional[ImportReport]:
        """
        Store a validated payload.

        Returns None when another import is already in flight.
        """
        return await self._guard.run(self._apply, transactions, replace)

    async def _apply(
        self,
        transactions: list[Transaction],
        replace: bool,
    ) -> ImportReport:
        unique: dict[str, Transaction] = {}
        for transaction in transactions:
            unique.setdefault(transaction.id, transaction)
        skipped = len(transactions) - len(unique)

        if replace:
            snapshot = await self._storage.export_all()
            snapshot.transactions = list(unique.values())
            await self._storage.import_all(snapshot)
            imported = len(unique)
        else:
            existing = {t.id for t in await self._storage.get_all_transactions()}
            imported = 0
            for transaction in unique.values():
                if transaction.id in existing:
                    skipped += 1
                    continue
                await self._storage.add_transaction(transaction)
                imported += 1

        report = ImportReport(imported=imported, skipped=skipped, replace=replace)
        logger.info("import_completed", **report.model_dump())
        await self._audit.log_import_completed(imported, skipped, replace)
        return report

    async def import_json(self, text: str, replace: bool = False) -> Optional[ImportReport]:
        try:
            transactions = parse_json_import(text)
        except ImportValidationError as e:
            await self._audit.log_import_rejected(e.message)
            raise
        return await self.import_transactions(transactions, replace=replace)

    async def import_csv(self, text: str, replace: bool = False) -> Optional[ImportReport]:
        try:
            transactions = parse_csv_import(text)
        except ImportValidationError as e:
            await self._audit.log_import_rejected(e.message)
            raise
        return await self.import_transactions(transactions, replace=replace)
