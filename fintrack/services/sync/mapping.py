"""
Remote Row Mapping

Converts between local entities and remote rows. Remote rows use snake_case
column names, carry the owner's user_id and a server-side updated_at stamp.
Columns the local model does not know (created_at, user_id) are dropped on
the way in.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from fintrack.models.entities import RecurringTemplate, Transaction


def _iso(value: Any) -> Any:
    return value.isoformat() if value is not None else None


def _amount(value: Any) -> Any:
    # numeric columns arrive as JSON numbers; go through str to keep 12.1 exact
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def transaction_to_row(
    transaction: Transaction,
    user_id: str,
    pushed_at: datetime,
) -> dict[str, Any]:
    return {
        "id": transaction.id,
        "user_id": user_id,
        "title": transaction.title,
        "amount": str(transaction.amount),
        "category": transaction.category,
        "type": transaction.type.value,
        "date": transaction.date.isoformat(),
        "description": transaction.description,
        "is_recurring": transaction.is_recurring,
        "recurring_id": transaction.recurring_id,
        "original_currency": transaction.original_currency.value,
        "updated_at": pushed_at.isoformat(),
    }


def row_to_transaction(row: dict[str, Any]) -> Transaction:
    """
    Build a Transaction from a remote row.

    Raises:
        pydantic.ValidationError: If the row is malformed
    """
    return Transaction.model_validate({
        "id": row.get("id"),
        "title": row.get("title"),
        "amount": _amount(row.get("amount")),
        "category": row.get("category"),
        "type": row.get("type"),
        "date": row.get("date"),
        "description": row.get("description"),
        "is_recurring": bool(row.get("is_recurring") or False),
        "recurring_id": row.get("recurring_id"),
        "original_currency": row.get("original_currency") or "TRY",
    })


def recurring_to_row(
    template: RecurringTemplate,
    user_id: str,
    pushed_at: datetime,
) -> dict[str, Any]:
    return {
        "id": template.id,
        "user_id": user_id,
        "title": template.title,
        "amount": str(template.amount),
        "category": template.category,
        "type": template.type.value,
        "frequency": template.frequency.value,
        "start_date": template.start_date.isoformat(),
        "end_date": _iso(template.end_date),
        "last_generated": _iso(template.last_generated),
        "next_occurrence": template.next_occurrence.isoformat(),
        "is_active": template.is_active,
        "description": template.description,
        "original_currency": template.original_currency.value,
        "updated_at": pushed_at.isoformat(),
    }


def row_to_recurring(row: dict[str, Any]) -> RecurringTemplate:
    return RecurringTemplate.model_validate({
        "id": row.get("id"),
        "title": row.get("title"),
        "amount": _amount(row.get("amount")),
        "category": row.get("category"),
        "type": row.get("type"),
        "frequency": row.get("frequency"),
        "start_date": row.get("start_date"),
        "end_date": row.get("end_date"),
        "last_generated": row.get("last_generated"),
        "next_occurrence": row.get("next_occurrence"),
        "is_active": bool(row.get("is_active", True)),
        "description": row.get("description"),
        "original_currency": row.get("original_currency") or "TRY",
    })


def same_content(local: Any, remote: Any) -> bool:
    """True when two records of the same family hold identical field values."""
    return local.model_dump() == remote.model_dump()
