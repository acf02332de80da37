"""
Composition Root for FinTrack

This module wires the storage backends, the migration coordinator, the
recurring processor, the importer and (when configured) the sync engine.

DESIGN DECISION: Nothing here is a singleton. create_app_components()
builds a fresh, fully injected object graph, so tests can run several
independent instances side by side.

Startup sequence (bootstrap):
1. Drop the migration backup once it is past its retention window
2. Auto-migrate flat data into the structured store (once per process)
3. Select the active adapter and bind the processor and importer to it
"""

from datetime import datetime
from typing import Optional

import structlog
from pydantic import ValidationError

from fintrack.audit import AuditLogger, configure_logging
from fintrack.concurrency import AdvisoryLease
from fintrack.config import Settings, SyncSettings, get_settings
from fintrack.migration import MigrationCoordinator, MigrationStateStore
from fintrack.scheduler.processor import RecurringProcessor
from fintrack.services.storage import (
    FileKeyValueStore,
    FlatStoreAdapter,
    InMemoryKeyValueStore,
    KeyValueStore,
    StorageAdapter,
    StructuredStoreAdapter,
)
from fintrack.services.sync import (
    DuplicateCleaner,
    IdentityProvider,
    RemoteStore,
    StaticIdentity,
    SupabaseRemoteStore,
    SyncEngine,
)
from fintrack.validation import DataImporter


logger = structlog.get_logger(__name__)


class FinTrackApp:
    """
    Holds the wired components.

    storage, processor and importer are bound by bootstrap(), because the
    active adapter is only known after migration has run.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        flat: FlatStoreAdapter,
        structured: StructuredStoreAdapter,
        coordinator: MigrationCoordinator,
        audit_logger: AuditLogger,
        auto_migrate: bool = True,
        sync_engine: Optional[SyncEngine] = None,
        cleaner: Optional[DuplicateCleaner] = None,
        remote: Optional[RemoteStore] = None,
    ):
        self.kv = kv
        self.flat = flat
        self.structured = structured
        self.coordinator = coordinator
        self.audit_logger = audit_logger
        self.auto_migrate = auto_migrate
        self.sync_engine = sync_engine
        self.cleaner = cleaner
        self.remote = remote

        self.storage: Optional[StorageAdapter] = None
        self.processor: Optional[RecurringProcessor] = None
        self.importer: Optional[DataImporter] = None

    async def bootstrap(self, now: Optional[datetime] = None) -> StorageAdapter:
        """Run the startup sequence and return the active adapter."""
        await self.coordinator.cleanup_backup(now)
        if self.auto_migrate:
            await self.coordinator.auto_migrate()

        self.storage = await self.coordinator.get_current_adapter()

        # Only the structured store is mirrored to the cloud
        on_created = None
        if self.sync_engine is not None and self.storage is self.structured:
            on_created = self.sync_engine.push_transaction

        self.processor = RecurringProcessor(
            self.storage,
            audit_logger=self.audit_logger,
            on_created=on_created,
        )
        self.importer = DataImporter(self.storage, audit_logger=self.audit_logger)

        logger.info(
            "app_bootstrapped",
            backend="structured" if self.storage is self.structured else "flat",
            sync_enabled=self.sync_engine is not None,
        )
        return self.storage

    async def aclose(self) -> None:
        await self.structured.close()
        if self.remote is not None:
            await self.remote.aclose()


def _load_sync_settings(settings: Settings) -> Optional[SyncSettings]:
    try:
        return settings.sync
    except ValidationError:
        logger.info("sync_not_configured")
        return None


def create_app_components(
    settings: Optional[Settings] = None,
    remote: Optional[RemoteStore] = None,
    identity: Optional[IdentityProvider] = None,
    in_memory: bool = False,
) -> FinTrackApp:
    """
    Factory function to create all application components.

    Args:
        settings: Settings to use; defaults to get_settings()
        remote: Remote store; built from sync settings when omitted
        identity: Current-user collaborator; without one, sync reports
                  "User not authenticated"
        in_memory: Keep every slot and table in memory (tests, demos)

    Returns:
        An un-bootstrapped FinTrackApp
    """
    settings = settings or get_settings()
    runtime = settings.runtime
    storage_settings = settings.storage
    migration_settings = settings.migration

    configure_logging(runtime.log_level)
    audit_logger = AuditLogger()

    if in_memory:
        kv: KeyValueStore = InMemoryKeyValueStore(
            quota_bytes=storage_settings.flat_quota_bytes
        )
        structured = StructuredStoreAdapter("sqlite://")
        lease = None
    else:
        kv = FileKeyValueStore(
            storage_settings.flat_path,
            quota_bytes=storage_settings.flat_quota_bytes,
        )
        storage_settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        structured = StructuredStoreAdapter(storage_settings.database_url)
        lease = AdvisoryLease(
            kv,
            migration_settings.lease_key,
            ttl_seconds=migration_settings.lease_ttl_seconds,
        )

    flat = FlatStoreAdapter(kv, storage_settings)
    coordinator = MigrationCoordinator(
        flat,
        structured,
        MigrationStateStore(kv, migration_settings),
        settings=migration_settings,
        audit_logger=audit_logger,
        lease=lease,
    )

    sync_settings = _load_sync_settings(settings)
    if remote is None and sync_settings is not None:
        remote = SupabaseRemoteStore.from_settings(sync_settings)

    sync_engine = None
    cleaner = None
    if remote is not None:
        identity = identity or StaticIdentity(None)
        if sync_settings is not None:
            sync_engine = SyncEngine.from_settings(
                structured, remote, identity, kv, sync_settings, audit_logger
            )
            cleaner = DuplicateCleaner(
                remote,
                identity,
                transactions_table=sync_settings.transactions_table,
                budgets_table=sync_settings.budgets_table,
                audit_logger=audit_logger,
            )
        else:
            sync_engine = SyncEngine(
                structured, remote, identity, kv, audit_logger=audit_logger
            )
            cleaner = DuplicateCleaner(remote, identity, audit_logger=audit_logger)

    return FinTrackApp(
        kv=kv,
        flat=flat,
        structured=structured,
        coordinator=coordinator,
        audit_logger=audit_logger,
        auto_migrate=migration_settings.auto_migrate,
        sync_engine=sync_engine,
        cleaner=cleaner,
        remote=remote,
    )
