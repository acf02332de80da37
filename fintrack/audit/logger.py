"""
Audit Logger

DESIGN DECISION: Every step that can lose or duplicate user data is logged.

The audit logger:
- Is async so callers in the storage and sync paths can await it uniformly
- Gracefully handles failures (never crashes the caller if logging fails)
- Supports correlation IDs to trace related events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from fintrack.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity


def configure_logging(level: str = "INFO") -> None:
    """
    Configure structlog on top of the stdlib logging module.

    Safe to call more than once; the last call wins.
    """
    logging.basicConfig(format="%(message)s", level=level.upper())
    logging.getLogger().setLevel(level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class AuditLogger:
    """
    Central audit logging service.

    Emits every event to the structured local log at the level matching
    its severity.
    """

    def __init__(self, logger_name: str = "fintrack.audit"):
        self._logger = structlog.get_logger(logger_name)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Returns True if the event was written.
        """
        try:
            log_dict = event.to_log_dict()

            if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
                self._logger.error("audit_event", **log_dict)
            elif event.severity == AuditSeverity.WARNING:
                self._logger.warning("audit_event", **log_dict)
            elif event.severity == AuditSeverity.DEBUG:
                self._logger.debug("audit_event", **log_dict)
            else:
                self._logger.info("audit_event", **log_dict)
            return True
        except Exception as e:
            # Logging must never break the caller
            logging.getLogger(__name__).warning("audit log failed: %s", e)
            return False

    # -------------------------------------------------------------------------
    # Migration
    # -------------------------------------------------------------------------

    async def log_migration_started(self, correlation_id: UUID) -> None:
        """Log start of a forward migration."""
        await self.log(AuditEventBuilder.migration_started(correlation_id))

    async def log_migration_completed(
        self,
        counts: dict[str, int],
        correlation_id: UUID,
    ) -> None:
        """Log successful forward migration."""
        await self.log(AuditEventBuilder.migration_completed(counts, correlation_id))

    async def log_migration_failed(
        self,
        error_message: str,
        verification: bool,
        correlation_id: UUID,
    ) -> None:
        """Log failed forward migration."""
        await self.log(
            AuditEventBuilder.migration_failed(error_message, verification, correlation_id)
        )

    async def log_rollback_completed(self, counts: dict[str, int]) -> None:
        await self.log(AuditEventBuilder.rollback_completed(counts))

    async def log_rollback_failed(self, error_message: str) -> None:
        await self.log(AuditEventBuilder.rollback_failed(error_message))

    async def log_backup_cleaned(self, age_days: int) -> None:
        await self.log(AuditEventBuilder.backup_cleaned(age_days))

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def log_sync_started(self, user_id: str, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.sync_started(user_id, correlation_id))

    async def log_sync_completed(
        self,
        synced: int,
        conflicts: int,
        errors: list[str],
        correlation_id: UUID,
    ) -> None:
        """Log the aggregate outcome of a sync pass."""
        await self.log(
            AuditEventBuilder.sync_completed(synced, conflicts, errors, correlation_id)
        )

    async def log_sync_failed(
        self,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.sync_failed(error_message, correlation_id))

    async def log_sync_record_failed(
        self,
        entity_type: str,
        entity_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.sync_record_failed(
                entity_type, entity_id, error_message, correlation_id
            )
        )

    async def log_remote_delete(self, entity_type: str, entity_id: str) -> None:
        await self.log(AuditEventBuilder.remote_delete(entity_type, entity_id))

    async def log_duplicates_cleaned(self, table: str, deleted: int) -> None:
        await self.log(AuditEventBuilder.duplicates_cleaned(table, deleted))

    # -------------------------------------------------------------------------
    # Import / recurring
    # -------------------------------------------------------------------------

    async def log_import_completed(
        self,
        imported: int,
        skipped: int,
        replace: bool,
    ) -> None:
        await self.log(AuditEventBuilder.import_completed(imported, skipped, replace))

    async def log_import_rejected(self, reason: str) -> None:
        await self.log(AuditEventBuilder.import_rejected(reason))

    async def log_recurring_materialized(
        self,
        template_id: str,
        dates: list[str],
    ) -> None:
        await self.log(AuditEventBuilder.recurring_materialized(template_id, dates))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a migration or sync pass and pass it through
    all subsequent events of that run.
    """
    return uuid4()
