"""
Audit Models for FinTrack

Every step that can lose or duplicate user data is recorded as an audit
event: migrations and rollbacks, backup cleanup, sync passes, remote
deletes, duplicate cleanup, imports and recurring materialization.

DESIGN DECISION: Audit events are append-only log records. They are never
read back by the application.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Audited operations, grouped by the subsystem that emits them."""
    # Migration
    MIGRATION_STARTED = "migration_started"
    MIGRATION_COMPLETED = "migration_completed"
    MIGRATION_FAILED = "migration_failed"
    MIGRATION_VERIFICATION_FAILED = "migration_verification_failed"
    ROLLBACK_COMPLETED = "rollback_completed"
    ROLLBACK_FAILED = "rollback_failed"
    BACKUP_CLEANED = "backup_cleaned"

    # Sync
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    SYNC_RECORD_FAILED = "sync_record_failed"
    REMOTE_DELETE = "remote_delete"
    DUPLICATES_CLEANED = "duplicates_cleaned"

    # Import
    IMPORT_COMPLETED = "import_completed"
    IMPORT_REJECTED = "import_rejected"

    # Recurring
    RECURRING_MATERIALIZED = "recurring_materialized"

    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Maps onto the stdlib logging level the event is written at."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    """
    One audit record.

    entity_type names the data family touched ('transaction', 'recurring',
    'budget', 'snapshot'); correlation_id ties together the events of one
    migration run or one sync pass.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=_utcnow)

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    entity_type: Optional[str] = None
    entity_id: Optional[str] = Field(
        default=None,
        description="Record id, remote table name or template id"
    )
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Counts, dates or error lists specific to the event type"
    )
    error_message: Optional[str] = None
    is_user_action: bool = Field(
        default=False,
        description="True for imports and other flows the user started"
    )

    def to_log_dict(self) -> dict[str, Any]:
        """Flat JSON-friendly dict for the structlog renderer."""
        return self.model_dump(mode="json")


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.migration_completed(counts, correlation_id)
        event = AuditEventBuilder.sync_completed(5, 0, [], correlation_id)
    """

    # -------------------------------------------------------------------------
    # Migration
    # -------------------------------------------------------------------------

    @staticmethod
    def migration_started(correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MIGRATION_STARTED,
            entity_type="snapshot",
            correlation_id=correlation_id,
            description="Migration from flat to structured storage started",
        )

    @staticmethod
    def migration_completed(
        counts: dict[str, int],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MIGRATION_COMPLETED,
            entity_type="snapshot",
            correlation_id=correlation_id,
            description=f"Migration completed: {sum(counts.values())} records moved",
            details={"migrated": counts},
        )

    @staticmethod
    def migration_failed(
        error_message: str,
        verification: bool,
        correlation_id: UUID
    ) -> AuditEvent:
        event_type = (
            AuditEventType.MIGRATION_VERIFICATION_FAILED
            if verification
            else AuditEventType.MIGRATION_FAILED
        )
        return AuditEvent(
            event_type=event_type,
            severity=AuditSeverity.ERROR,
            entity_type="snapshot",
            correlation_id=correlation_id,
            description="Migration verification failed" if verification else "Migration failed",
            error_message=error_message,
        )

    @staticmethod
    def rollback_completed(counts: dict[str, int]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROLLBACK_COMPLETED,
            severity=AuditSeverity.WARNING,
            entity_type="snapshot",
            description="Rolled back to flat storage from backup",
            details={"restored": counts},
            is_user_action=True,
        )

    @staticmethod
    def rollback_failed(error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROLLBACK_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="snapshot",
            description="Rollback failed",
            error_message=error_message,
        )

    @staticmethod
    def backup_cleaned(age_days: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_CLEANED,
            entity_type="snapshot",
            description=f"Migration backup removed after {age_days} days",
            details={"age_days": age_days},
        )

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    @staticmethod
    def sync_started(user_id: str, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            correlation_id=correlation_id,
            description="Sync pass started",
            details={"user_id": user_id},
        )

    @staticmethod
    def sync_completed(
        synced: int,
        conflicts: int,
        errors: list[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_COMPLETED,
            severity=AuditSeverity.WARNING if errors else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=(
                f"Sync finished: {synced} synced, {conflicts} conflicts, "
                f"{len(errors)} errors"
            ),
            details={
                "synced": synced,
                "conflicts": conflicts,
                "errors": errors[:20],
            },
        )

    @staticmethod
    def sync_failed(
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description="Sync pass failed",
            error_message=error_message,
        )

    @staticmethod
    def sync_record_failed(
        entity_type: str,
        entity_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_RECORD_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Failed to sync {entity_type} {entity_id}",
            error_message=error_message,
        )

    @staticmethod
    def remote_delete(entity_type: str, entity_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_DELETE,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Deleted {entity_type} {entity_id} from remote",
            is_user_action=True,
        )

    @staticmethod
    def duplicates_cleaned(table: str, deleted: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATES_CLEANED,
            description=f"Removed {deleted} duplicate rows from {table}",
            details={"table": table, "deleted": deleted},
        )

    # -------------------------------------------------------------------------
    # Import / recurring
    # -------------------------------------------------------------------------

    @staticmethod
    def import_completed(imported: int, skipped: int, replace: bool) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_COMPLETED,
            entity_type="transaction",
            description=f"Imported {imported} transactions ({'replace' if replace else 'add'} mode)",
            details={"imported": imported, "skipped": skipped, "replace": replace},
            is_user_action=True,
        )

    @staticmethod
    def import_rejected(reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            description="Import payload rejected",
            error_message=reason,
            is_user_action=True,
        )

    @staticmethod
    def recurring_materialized(
        template_id: str,
        dates: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_MATERIALIZED,
            entity_type="recurring",
            entity_id=template_id,
            description=f"Generated {len(dates)} transactions from template",
            details={"dates": dates},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
