"""
Process State Models

Status records produced by the migration coordinator, the sync engine and
the recurring processor. They are returned to callers and handed to
subscribers; none of them carries behavior beyond small helpers.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from fintrack.models.entities import DataSnapshot


# =============================================================================
# MIGRATION
# =============================================================================

class MigrationStatus(str, Enum):
    """
    Migration lifecycle.

    The persisted flag only ever holds FLAT_ONLY, MIGRATING or
    STRUCTURED_ONLY. NOT_STARTED and BOTH are results of probing the
    backends when no decisive flag is stored.
    """
    NOT_STARTED = "not-started"
    FLAT_ONLY = "flat-only"
    STRUCTURED_ONLY = "structured-only"
    BOTH = "both"
    MIGRATING = "migrating"


class MigrationErrorKind(str, Enum):
    VERIFICATION = "verification"
    STORAGE = "storage"
    NO_BACKUP = "no_backup"
    UNEXPECTED = "unexpected"


class MigrationState(BaseModel):
    """Persisted migration flag plus backup blob and its timestamp."""

    status: Optional[MigrationStatus] = None
    backup: Optional[DataSnapshot] = None
    migrated_at: Optional[datetime] = None


class MigrationResult(BaseModel):
    """Outcome of one migrate() or rollback() call."""

    success: bool
    status: MigrationStatus
    error: Optional[str] = None
    error_kind: Optional[MigrationErrorKind] = None
    migrated: dict[str, int] = Field(
        default_factory=dict,
        description="Per-family record counts written to the target"
    )


class MigrationInfo(BaseModel):
    """Read-only view for diagnostics screens."""

    status: MigrationStatus
    migrated_at: Optional[datetime] = None
    has_backup: bool = False
    backup_version: Optional[str] = None


# =============================================================================
# SYNC
# =============================================================================

class SyncStatus(BaseModel):
    """
    Observable state of the sync engine.

    Only last_sync_time survives a restart.
    """

    is_syncing: bool = False
    last_sync_time: Optional[datetime] = None
    last_error: Optional[str] = None


class SyncPartialFailure(Exception):
    """Raised on request when a sync pass recorded per-record errors."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Sync finished with {len(errors)} error(s): {errors[:3]}")


class SyncResult(BaseModel):
    """Aggregate outcome of one sync pass."""

    success: bool
    synced: int = 0
    conflicts: int = 0
    errors: list[str] = Field(default_factory=list)

    def merge(self, other: 'SyncResult') -> 'SyncResult':
        errors = [*self.errors, *other.errors]
        return SyncResult(
            success=not errors,
            synced=self.synced + other.synced,
            conflicts=self.conflicts + other.conflicts,
            errors=errors,
        )

    def raise_for_errors(self) -> None:
        if self.errors:
            raise SyncPartialFailure(self.errors)


class CleanupResult(BaseModel):
    """Outcome of remote duplicate cleanup."""

    success: bool
    deleted: int = 0
    error: Optional[str] = None


class CleanupSummary(BaseModel):
    """Deleted duplicate counts per table, plus any per-table errors."""

    transactions: int = 0
    budgets: int = 0
    errors: list[str] = Field(default_factory=list)


# =============================================================================
# RECURRING
# =============================================================================

class ImportReport(BaseModel):
    """Outcome of applying a validated import payload."""

    imported: int = 0
    skipped: int = 0
    replace: bool = False


class MaterializationReport(BaseModel):
    """What one recurring-processor pass produced."""

    templates_processed: int = 0
    transactions_created: int = 0
    skipped_existing: int = 0
    created_ids: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
