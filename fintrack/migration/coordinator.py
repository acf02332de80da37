"""
Flat-to-Structured Migration

MigrationCoordinator moves the whole dataset from the flat key-value backend
into the structured backend, verifies it, and can roll back from the backup
it writes before touching the target.

DESIGN DECISION: The flag, the backup and its timestamp live in an injected
MigrationStateStore instead of process globals. Failures never escape as
exceptions: they are logged, audited and reported as MigrationResult.

Lifecycle of the persisted flag:
    (none) --probe--> not-started | flat-only | structured-only | both
    flat-only --migrate--> migrating --> structured-only   (verified)
                                     --> migrating         (verification failed)
                                     --> flat-only         (any other failure)
    structured-only --rollback--> flat-only
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from fintrack.audit.logger import AuditLogger, create_correlation_id
from fintrack.concurrency import AdvisoryLease, ReentrancyGuard
from fintrack.config.settings import MigrationSettings
from fintrack.models.entities import DataSnapshot, StorageStats
from fintrack.models.state import (
    MigrationErrorKind,
    MigrationInfo,
    MigrationResult,
    MigrationState,
    MigrationStatus,
)
from fintrack.services.storage.interface import StorageAdapter, StorageError
from fintrack.services.storage.kv import KeyValueStore


logger = structlog.get_logger(__name__)

# Flag values written by earlier releases
_LEGACY_FLAGS = {
    "localStorage": MigrationStatus.FLAT_ONLY,
    "indexedDB": MigrationStatus.STRUCTURED_ONLY,
}


class MigrationVerificationError(Exception):
    """Post-import counts do not match the exported snapshot."""

    def __init__(self, expected: StorageStats, actual: StorageStats):
        self.expected = expected
        self.actual = actual
        super().__init__(
            "Data verification failed - counts do not match "
            f"(expected {expected.model_dump()}, got {actual.model_dump()})"
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationStateStore:
    """Flag, backup blob and backup timestamp slots."""

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[MigrationSettings] = None,
    ):
        settings = settings or MigrationSettings()
        self._store = store
        self._flag_key = settings.flag_key
        self._backup_key = settings.backup_key
        self._date_key = settings.date_key

    def get_flag(self) -> Optional[MigrationStatus]:
        raw = self._store.get(self._flag_key)
        if raw is None:
            return None
        if raw in _LEGACY_FLAGS:
            return _LEGACY_FLAGS[raw]
        try:
            return MigrationStatus(raw)
        except ValueError:
            logger.warning("migration_flag_unknown", value=raw)
            return None

    def set_flag(self, status: MigrationStatus) -> None:
        self._store.set(self._flag_key, status.value)

    def has_backup(self) -> bool:
        return self._store.get(self._backup_key) is not None

    def get_backup(self) -> Optional[DataSnapshot]:
        raw = self._store.get(self._backup_key)
        if raw is None:
            return None
        try:
            return DataSnapshot.from_json(raw)
        except ValidationError as e:
            raise StorageError(f"Migration backup is corrupt: {e}") from e

    def write_backup(self, snapshot: DataSnapshot, at: datetime) -> None:
        self._store.set(self._backup_key, snapshot.to_json())
        self._store.set(self._date_key, at.isoformat())

    def get_migrated_at(self) -> Optional[datetime]:
        raw = self._store.get(self._date_key)
        if raw is None:
            return None
        try:
            moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("migration_date_unreadable", value=raw)
            return None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment

    def clear_backup(self) -> None:
        self._store.remove(self._backup_key)
        self._store.remove(self._date_key)

    def load(self) -> MigrationState:
        return MigrationState(
            status=self.get_flag(),
            backup=self.get_backup(),
            migrated_at=self.get_migrated_at(),
        )


class MigrationCoordinator:
    """
    Owns backend selection and the migration protocol.

    Usage:
        coordinator = MigrationCoordinator(flat, structured, MigrationStateStore(kv))
        await coordinator.auto_migrate()
        adapter = await coordinator.get_current_adapter()
    """

    def __init__(
        self,
        flat: StorageAdapter,
        structured: StorageAdapter,
        state: MigrationStateStore,
        settings: Optional[MigrationSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        lease: Optional[AdvisoryLease] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._flat = flat
        self._structured = structured
        self._state = state
        self._settings = settings or MigrationSettings()
        self._audit = audit_logger or AuditLogger()
        self._lease = lease
        self._clock = clock
        self._guard = ReentrancyGuard("migration")
        self._auto_attempted = False

    @property
    def is_processing(self) -> bool:
        return self._guard.is_processing

    # =========================================================================
    # Status detection
    # =========================================================================

    async def check_status(self) -> MigrationStatus:
        """
        Current migration status.

        A stored flag is decisive. Without one, both backends are probed;
        a probe failure falls back to flat-only.
        """
        flag = self._state.get_flag()
        if flag is not None:
            return flag

        try:
            flat_stats = await self._flat.get_stats()
            structured_stats = await self._structured.get_stats()
        except StorageError as e:
            logger.warning("migration_status_probe_failed", error=str(e))
            return MigrationStatus.FLAT_ONLY

        if structured_stats.has_data and flat_stats.has_data:
            return MigrationStatus.BOTH
        if structured_stats.has_data:
            return MigrationStatus.STRUCTURED_ONLY
        if flat_stats.has_data:
            return MigrationStatus.FLAT_ONLY
        return MigrationStatus.NOT_STARTED

    async def get_current_adapter(self) -> StorageAdapter:
        """The adapter every caller should use right now."""
        status = await self.check_status()
        if status in (MigrationStatus.STRUCTURED_ONLY, MigrationStatus.BOTH):
            logger.debug("storage_adapter_selected", backend="structured", status=status.value)
            return self._structured
        logger.debug("storage_adapter_selected", backend="flat", status=status.value)
        return self._flat

    def get_migration_info(self) -> MigrationInfo:
        backup_version = None
        if self._state.has_backup():
            try:
                backup = self._state.get_backup()
                backup_version = backup.version if backup else None
            except StorageError as e:
                logger.warning("migration_backup_unreadable", error=str(e))
        return MigrationInfo(
            status=self._state.get_flag() or MigrationStatus.NOT_STARTED,
            migrated_at=self._state.get_migrated_at(),
            has_backup=self._state.has_backup(),
            backup_version=backup_version,
        )

    # =========================================================================
    # Forward migration
    # =========================================================================

    async def migrate(self) -> Optional[MigrationResult]:
        """
        Copy flat data into the structured backend.

        Returns None when another migration or rollback is in flight, or
        when another process holds the lease.
        """
        return await self._guarded(self._migrate)

    async def _guarded(self, flow: Callable) -> Optional[MigrationResult]:
        if not self._guard.try_acquire():
            logger.info("migration_already_running")
            return None
        try:
            if self._lease is not None and not self._lease.acquire():
                return None
            try:
                return await flow()
            finally:
                if self._lease is not None:
                    self._lease.release()
        finally:
            self._guard.release()

    async def _migrate(self) -> MigrationResult:
        status = await self.check_status()
        if status in (
            MigrationStatus.NOT_STARTED,
            MigrationStatus.STRUCTURED_ONLY,
            MigrationStatus.BOTH,
        ):
            logger.info("migration_not_needed", status=status.value)
            return MigrationResult(success=True, status=status)

        correlation_id = create_correlation_id()
        await self._audit.log_migration_started(correlation_id)
        logger.info("migration_started", correlation_id=str(correlation_id))

        try:
            counts = await self._run_forward()
        except MigrationVerificationError as e:
            # Flag stays at migrating so the next start retries
            logger.error("migration_verification_failed", error=str(e))
            await self._audit.log_migration_failed(str(e), True, correlation_id)
            return MigrationResult(
                success=False,
                status=MigrationStatus.MIGRATING,
                error=str(e),
                error_kind=MigrationErrorKind.VERIFICATION,
            )
        except Exception as e:
            logger.error("migration_failed", error=str(e), exc_info=True)
            kind = (
                MigrationErrorKind.STORAGE
                if isinstance(e, StorageError)
                else MigrationErrorKind.UNEXPECTED
            )
            try:
                self._state.set_flag(MigrationStatus.FLAT_ONLY)
            except StorageError as flag_error:
                logger.error("migration_flag_reset_failed", error=str(flag_error))
            await self._audit.log_migration_failed(str(e), False, correlation_id)
            if kind == MigrationErrorKind.UNEXPECTED:
                await self._audit.log_error(
                    type(e).__name__,
                    str(e),
                    details={"stage": "migration"},
                    correlation_id=correlation_id,
                )
            return MigrationResult(
                success=False,
                status=MigrationStatus.FLAT_ONLY,
                error=str(e),
                error_kind=kind,
            )

        await self._audit.log_migration_completed(counts, correlation_id)
        logger.info("migration_completed", **counts)
        return MigrationResult(
            success=True,
            status=MigrationStatus.STRUCTURED_ONLY,
            migrated=counts,
        )

    async def _run_forward(self) -> dict[str, int]:
        self._state.set_flag(MigrationStatus.MIGRATING)

        snapshot = await self._flat.export_all()

        # Backup before the target is touched
        self._state.write_backup(snapshot, self._clock())

        await self._structured.import_all(snapshot)

        expected = snapshot.stats()
        actual = await self._structured.get_stats()
        if (
            actual.transactions != expected.transactions
            or actual.budgets != expected.budgets
            or actual.recurring != expected.recurring
            or not actual.has_settings
        ):
            raise MigrationVerificationError(expected, actual)

        self._state.set_flag(MigrationStatus.STRUCTURED_ONLY)
        return {
            "transactions": expected.transactions,
            "budgets": expected.budgets,
            "recurring": expected.recurring,
        }

    async def auto_migrate(self) -> Optional[MigrationResult]:
        """
        Startup hook: migrate once per process when flat data is waiting.

        An interrupted run (flag still migrating) is retried from scratch.
        """
        if self._auto_attempted:
            return None
        self._auto_attempted = True

        status = await self.check_status()
        if status == MigrationStatus.FLAT_ONLY:
            logger.info("auto_migration_triggered")
            return await self.migrate()
        if status == MigrationStatus.MIGRATING:
            logger.warning("migration_interrupted_retrying")
            return await self.migrate()

        logger.info("auto_migration_not_needed", status=status.value)
        return None

    # =========================================================================
    # Rollback and backup retention
    # =========================================================================

    async def rollback(self) -> Optional[MigrationResult]:
        """
        Restore the flat backend from the migration backup.

        The backup is kept, so rolling forward again is possible.
        """
        return await self._guarded(self._rollback)

    async def _rollback(self) -> MigrationResult:
        try:
            backup = self._state.get_backup()
            if backup is None:
                await self._audit.log_rollback_failed("No backup found - cannot rollback")
                return MigrationResult(
                    success=False,
                    status=await self.check_status(),
                    error="No backup found - cannot rollback",
                    error_kind=MigrationErrorKind.NO_BACKUP,
                )

            await self._structured.clear_all()
            await self._flat.import_all(backup)
            self._state.set_flag(MigrationStatus.FLAT_ONLY)
        except Exception as e:
            logger.error("rollback_failed", error=str(e), exc_info=True)
            await self._audit.log_rollback_failed(str(e))
            return MigrationResult(
                success=False,
                status=self._state.get_flag() or MigrationStatus.NOT_STARTED,
                error=str(e),
                error_kind=(
                    MigrationErrorKind.STORAGE
                    if isinstance(e, StorageError)
                    else MigrationErrorKind.UNEXPECTED
                ),
            )

        counts = {
            "transactions": len(backup.transactions),
            "budgets": len(backup.budgets),
            "recurring": len(backup.recurring),
        }
        await self._audit.log_rollback_completed(counts)
        logger.info("rollback_completed", **counts)
        return MigrationResult(
            success=True,
            status=MigrationStatus.FLAT_ONLY,
            migrated=counts,
        )

    async def cleanup_backup(self, now: Optional[datetime] = None) -> bool:
        """
        Discard the backup once it is older than the retention window.

        Returns True if the backup was removed.
        """
        migrated_at = self._state.get_migrated_at()
        if migrated_at is None:
            return False

        age = (now or self._clock()) - migrated_at
        if age < timedelta(days=self._settings.backup_retention_days):
            return False

        self._state.clear_backup()
        logger.info("migration_backup_cleaned", age_days=age.days)
        await self._audit.log_backup_cleaned(age.days)
        return True
