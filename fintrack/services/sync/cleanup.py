"""
Remote Duplicate Cleanup

Maintenance batch, not part of the normal sync loop. Earlier releases could
materialize the same recurring occurrence twice or create two budgets for
one category; this removes the extras from the remote store.

Rules:
- Recurring-generated transactions sharing (recurring_id, date) are
  duplicates. Rows are read ordered by date then created_at and the first
  one is kept.
- Budgets sharing a category are duplicates. Rows are read ordered by
  created_at and the first one is kept.
"""

from typing import Optional

import structlog

from fintrack.audit.logger import AuditLogger
from fintrack.models.state import CleanupResult, CleanupSummary
from fintrack.services.sync.remote import IdentityProvider, RemoteError, RemoteStore


logger = structlog.get_logger(__name__)


class DuplicateCleaner:
    """Removes duplicate remote rows, keeping the earliest of each group."""

    def __init__(
        self,
        remote: RemoteStore,
        identity: IdentityProvider,
        transactions_table: str = "transactions",
        budgets_table: str = "budgets",
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._remote = remote
        self._identity = identity
        self._transactions_table = transactions_table
        self._budgets_table = budgets_table
        self._audit = audit_logger or AuditLogger()

    async def _purge(self, table: str, user_id: str, ids: list[str]) -> CleanupResult:
        if not ids:
            return CleanupResult(success=True, deleted=0)
        await self._remote.delete_in(table, "id", ids, filters={"user_id": user_id})
        logger.info("duplicates_removed", table=table, deleted=len(ids))
        await self._audit.log_duplicates_cleaned(table, len(ids))
        return CleanupResult(success=True, deleted=len(ids))

    async def _user_id(self) -> tuple[Optional[str], Optional[str]]:
        try:
            user_id = await self._identity.current_user_id()
        except Exception as e:
            logger.error("identity_lookup_failed", operation="cleanup", error=str(e))
            return None, f"Identity lookup failed: {e}"
        if not user_id:
            return None, "User not authenticated"
        return user_id, None

    async def cleanup_transactions(self) -> CleanupResult:
        user_id, error = await self._user_id()
        if not user_id:
            return CleanupResult(success=False, error=error)

        try:
            rows = await self._remote.select(
                self._transactions_table,
                {"user_id": user_id, "is_recurring": True},
                columns="id,recurring_id,date,created_at",
                order=["date.asc", "created_at.asc"],
            )
            seen: set[tuple] = set()
            to_delete: list[str] = []
            for row in rows:
                key = (row.get("recurring_id"), row.get("date"))
                if key in seen:
                    to_delete.append(row["id"])
                else:
                    seen.add(key)
            return await self._purge(self._transactions_table, user_id, to_delete)
        except RemoteError as e:
            logger.error("duplicate_cleanup_failed", table=self._transactions_table, error=str(e))
            return CleanupResult(success=False, error=str(e))

    async def cleanup_budgets(self) -> CleanupResult:
        user_id, error = await self._user_id()
        if not user_id:
            return CleanupResult(success=False, error=error)

        try:
            rows = await self._remote.select(
                self._budgets_table,
                {"user_id": user_id},
                columns="id,category,created_at",
                order=["created_at.asc"],
            )
            seen: set[str] = set()
            to_delete: list[str] = []
            for row in rows:
                if row.get("category") in seen:
                    to_delete.append(row["id"])
                else:
                    seen.add(row.get("category"))
            return await self._purge(self._budgets_table, user_id, to_delete)
        except RemoteError as e:
            logger.error("duplicate_cleanup_failed", table=self._budgets_table, error=str(e))
            return CleanupResult(success=False, error=str(e))

    async def run_cleanup(self) -> CleanupSummary:
        """Run both cleanups and aggregate their outcome."""
        errors: list[str] = []

        transactions = await self.cleanup_transactions()
        if transactions.error:
            errors.append(f"Transactions: {transactions.error}")

        budgets = await self.cleanup_budgets()
        if budgets.error:
            errors.append(f"Budgets: {budgets.error}")

        summary = CleanupSummary(
            transactions=transactions.deleted,
            budgets=budgets.deleted,
            errors=errors,
        )
        logger.info("cleanup_complete", **summary.model_dump())
        return summary
