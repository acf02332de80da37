"""
Recurring Transaction Processor

Turns due recurring templates into concrete transactions. This is the work
an external scheduling trigger (app start, a daily timer) asks for.

DESIGN DECISION: Materialization is idempotent per (template, date). A date
already materialized for a template is skipped, so running the processor
twice, or after a crash between adding transactions and advancing the
template, never creates duplicates.
"""

from datetime import date
from typing import Any, Awaitable, Callable, Optional

import structlog

from fintrack.audit.logger import AuditLogger
from fintrack.concurrency import ReentrancyGuard
from fintrack.models.entities import RecurringTemplate, Transaction
from fintrack.models.state import MaterializationReport
from fintrack.scheduler.recurring import next_occurrence, pending_occurrences
from fintrack.services.storage.interface import (
    NotFoundError,
    StorageAdapter,
    StorageError,
)


logger = structlog.get_logger(__name__)

TransactionCallback = Callable[[Transaction], Awaitable[Any]]


class RecurringProcessor:
    """
    Materializes due recurring templates through a StorageAdapter.

    Usage:
        processor = RecurringProcessor(adapter, on_created=sync.push_transaction)
        report = await processor.process_due()
    """

    def __init__(
        self,
        storage: StorageAdapter,
        audit_logger: Optional[AuditLogger] = None,
        on_created: Optional[TransactionCallback] = None,
    ):
        self._storage = storage
        self._audit = audit_logger or AuditLogger()
        self._on_created = on_created
        self._guard = ReentrancyGuard("recurring")

    async def create_template(self, **fields: Any) -> RecurringTemplate:
        """Build a template with a derived next_occurrence and store it."""
        template = RecurringTemplate.create(**fields)
        return await self._storage.add_recurring(template)

    async def process_due(
        self,
        today: Optional[date] = None,
    ) -> Optional[MaterializationReport]:
        """
        Materialize every pending occurrence of every due template.

        Returns None when another run is already in flight.
        """
        return await self._guard.run(self._process, today or date.today())

    async def _process(self, today: date) -> MaterializationReport:
        report = MaterializationReport()
        templates = await self._storage.get_pending_recurring(today)
        if not templates:
            return report

        materialized = {
            (t.recurring_id, t.date)
            for t in await self._storage.get_all_transactions()
            if t.recurring_id
        }

        for template in templates:
            report.templates_processed += 1
            try:
                await self._materialize(template, today, materialized, report)
            except StorageError as e:
                logger.error(
                    "recurring_materialize_failed",
                    template_id=template.id,
                    error=str(e),
                )
                report.errors.append(f"Recurring {template.id}: {e}")

        logger.info(
            "recurring_processed",
            templates=report.templates_processed,
            created=report.transactions_created,
            skipped=report.skipped_existing,
        )
        return report

    async def _materialize(
        self,
        template: RecurringTemplate,
        today: date,
        materialized: set,
        report: MaterializationReport,
    ) -> None:
        dates = pending_occurrences(
            template.start_date,
            template.frequency,
            template.last_generated,
            template.end_date,
            today,
        )
        if not dates:
            return

        created: list[str] = []
        for occurrence in dates:
            if (template.id, occurrence) in materialized:
                report.skipped_existing += 1
                continue

            transaction = await self._storage.add_transaction(
                template.instance_for(occurrence)
            )
            materialized.add((template.id, occurrence))
            report.transactions_created += 1
            report.created_ids.append(transaction.id)
            created.append(occurrence.isoformat())

            if self._on_created is not None:
                try:
                    await self._on_created(transaction)
                except Exception as e:
                    # The local transaction stands; the next full sync pushes it
                    logger.warning(
                        "recurring_callback_failed",
                        transaction_id=transaction.id,
                        error=str(e),
                    )

        last = dates[-1]
        await self._storage.update_recurring(
            template.id,
            {
                "last_generated": last,
                "next_occurrence": next_occurrence(
                    template.start_date, template.frequency, last
                ),
            },
        )
        if created:
            await self._audit.log_recurring_materialized(template.id, created)

    async def set_active(self, id: str, active: bool) -> RecurringTemplate:
        """Pause or resume a template."""
        return await self._storage.update_recurring(id, {"is_active": active})

    async def delete_template(self, id: str, cascade: bool = False) -> int:
        """
        Delete a template.

        Args:
            id: Template id
            cascade: Also delete the transactions generated from it.
                     Otherwise they stay, orphaned.

        Returns:
            Number of generated transactions deleted

        Raises:
            NotFoundError: If the template doesn't exist
        """
        if not await self._storage.delete_recurring(id):
            raise NotFoundError(f"RecurringTemplate {id} not found")

        if not cascade:
            return 0

        removed = 0
        for transaction in await self._storage.get_all_transactions():
            if transaction.recurring_id == id:
                if await self._storage.delete_transaction(transaction.id):
                    removed += 1
        logger.info("recurring_deleted_cascade", template_id=id, transactions=removed)
        return removed
