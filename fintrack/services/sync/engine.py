"""
Sync Engine

Reconciles the local structured store with the remote store, one entity
family at a time (transactions, then recurring templates).

Algorithm per family:
1. Push every local record as an upsert keyed by id, stamped with
   updated_at = push time. A failed record is recorded and skipped.
2. Pull every remote row owned by the user. Ids missing locally are
   inserted; ids present locally are left untouched (local wins).
   A present id whose remote content differs is counted as a conflict.
3. success = no errors.

DESIGN DECISION: Local-wins on pull drops remote edits to records that also
exist locally. This is the documented policy, not an oversight; conflicts
are counted so callers can see when it happens.

Remote deletion is never propagated to local records.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, NamedTuple, Optional

import structlog
from pydantic import ValidationError

from fintrack.audit.logger import AuditLogger, create_correlation_id
from fintrack.config.settings import SyncSettings
from fintrack.models.entities import RecurringTemplate, Transaction
from fintrack.models.state import SyncResult, SyncStatus
from fintrack.services.storage.interface import (
    DuplicateError,
    StorageAdapter,
    StorageError,
)
from fintrack.services.storage.kv import KeyValueStore
from fintrack.services.sync.mapping import (
    recurring_to_row,
    row_to_recurring,
    row_to_transaction,
    same_content,
    transaction_to_row,
)
from fintrack.services.sync.remote import IdentityProvider, RemoteError, RemoteStore


logger = structlog.get_logger(__name__)

StatusCallback = Callable[[SyncStatus], None]

NOT_AUTHENTICATED = "User not authenticated"
ALREADY_SYNCING = "Sync already in progress"
IDENTITY_FAILED = "Identity lookup failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Family(NamedTuple):
    """Everything the generic push/pull loop needs to know about a family."""
    label: str
    table: str
    list_local: Callable[[], Awaitable[list]]
    get_local: Callable[[str], Awaitable[Optional[Any]]]
    add_local: Callable[[Any], Awaitable[Any]]
    to_row: Callable[[Any, str, datetime], dict]
    from_row: Callable[[dict], Any]


class SyncEngine:
    """
    Push-then-pull synchronization between local storage and a RemoteStore.

    Usage:
        engine = SyncEngine(structured, remote, identity, kv)
        unsubscribe = engine.subscribe(print)
        result = await engine.sync_all()
    """

    def __init__(
        self,
        local: StorageAdapter,
        remote: RemoteStore,
        identity: IdentityProvider,
        state_store: KeyValueStore,
        transactions_table: str = "transactions",
        recurring_table: str = "recurring_transactions",
        last_sync_key: str = "monera-last-sync",
        sync_timeout: float = 120.0,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._local = local
        self._remote = remote
        self._identity = identity
        self._state_store = state_store
        self._last_sync_key = last_sync_key
        self._sync_timeout = sync_timeout
        self._audit = audit_logger or AuditLogger()
        self._clock = clock
        self._listeners: list[StatusCallback] = []

        self._transactions = _Family(
            label="Transaction",
            table=transactions_table,
            list_local=local.get_all_transactions,
            get_local=local.get_transaction,
            add_local=local.add_transaction,
            to_row=transaction_to_row,
            from_row=row_to_transaction,
        )
        self._recurring = _Family(
            label="Recurring",
            table=recurring_table,
            list_local=local.get_all_recurring,
            get_local=local.get_recurring,
            add_local=local.add_recurring,
            to_row=recurring_to_row,
            from_row=row_to_recurring,
        )

        self._status = SyncStatus(last_sync_time=self._load_last_sync())

    @classmethod
    def from_settings(
        cls,
        local: StorageAdapter,
        remote: RemoteStore,
        identity: IdentityProvider,
        state_store: KeyValueStore,
        settings: SyncSettings,
        audit_logger: Optional[AuditLogger] = None,
    ) -> "SyncEngine":
        return cls(
            local,
            remote,
            identity,
            state_store,
            transactions_table=settings.transactions_table,
            recurring_table=settings.recurring_table,
            last_sync_key=settings.last_sync_key,
            sync_timeout=settings.sync_timeout_seconds,
            audit_logger=audit_logger,
        )

    # =========================================================================
    # Status and subscribers
    # =========================================================================

    def _load_last_sync(self) -> Optional[datetime]:
        raw = self._state_store.get(self._last_sync_key)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("last_sync_unreadable", value=raw)
            return None

    def get_status(self) -> SyncStatus:
        """A copy of the current status."""
        return self._status.model_copy()

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """
        Register a status listener.

        Returns a function that removes it again.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.get_status())
            except Exception as e:
                logger.warning("sync_listener_failed", error=str(e))

    # =========================================================================
    # Full sync
    # =========================================================================

    async def sync_all(self) -> SyncResult:
        """
        Run one full sync pass.

        Never raises: failures are reported in the result and in the status.
        """
        if self._status.is_syncing:
            logger.info("sync_rejected_overlap")
            return SyncResult(success=False, errors=[ALREADY_SYNCING])

        # Claimed before the first await so an overlapping call sees it
        self._status.is_syncing = True
        self._notify()
        try:
            user_id, error = await self._resolve_user("sync")
            if not user_id:
                return SyncResult(success=False, errors=[error])
            result, correlation_id = await self._run_pass(user_id)
        finally:
            self._status.is_syncing = False
            self._notify()

        await self._audit.log_sync_completed(
            result.synced, result.conflicts, result.errors, correlation_id
        )
        return result

    async def _run_pass(self, user_id: str) -> tuple[SyncResult, Any]:
        correlation_id = create_correlation_id()
        self._status.last_error = None
        await self._audit.log_sync_started(user_id, correlation_id)

        try:
            result = await asyncio.wait_for(
                self._sync_families(user_id, correlation_id),
                timeout=self._sync_timeout,
            )
        except asyncio.TimeoutError:
            message = f"Sync timed out after {self._sync_timeout}s"
            logger.error("sync_timeout", timeout=self._sync_timeout)
            await self._audit.log_sync_failed(message, correlation_id)
            result = SyncResult(success=False, errors=[message])
        except Exception as e:
            logger.error("sync_failed", error=str(e), exc_info=True)
            await self._audit.log_sync_failed(str(e), correlation_id)
            await self._audit.log_error(
                type(e).__name__,
                str(e),
                details={"stage": "sync"},
                correlation_id=correlation_id,
            )
            result = SyncResult(success=False, errors=[str(e)])

        now = self._clock()
        self._status.last_sync_time = now
        self._status.last_error = "; ".join(result.errors[:3]) if result.errors else None
        try:
            self._state_store.set(self._last_sync_key, now.isoformat())
        except StorageError as e:
            logger.warning("last_sync_persist_failed", error=str(e))
        return result, correlation_id

    async def _resolve_user(self, operation: str) -> tuple[Optional[str], Optional[str]]:
        """The signed-in user id, or None and the reason there is none."""
        try:
            user_id = await self._identity.current_user_id()
        except Exception as e:
            logger.error("identity_lookup_failed", operation=operation, error=str(e))
            await self._audit.log_error(
                type(e).__name__, str(e), details={"stage": "identity", "operation": operation}
            )
            return None, f"{IDENTITY_FAILED}: {e}"
        if not user_id:
            logger.warning("not_authenticated", operation=operation)
            return None, NOT_AUTHENTICATED
        return user_id, None

    async def _sync_families(self, user_id: str, correlation_id: Any) -> SyncResult:
        transactions = await self._sync_family(self._transactions, user_id, correlation_id)
        recurring = await self._sync_family(self._recurring, user_id, correlation_id)
        result = transactions.merge(recurring)
        logger.info(
            "sync_completed",
            synced=result.synced,
            conflicts=result.conflicts,
            errors=len(result.errors),
        )
        return result

    async def _sync_family(
        self,
        family: _Family,
        user_id: str,
        correlation_id: Any,
    ) -> SyncResult:
        errors: list[str] = []
        synced = 0
        conflicts = 0

        # 1. Push
        for record in await family.list_local():
            try:
                await self._remote.upsert(
                    family.table, family.to_row(record, user_id, self._clock())
                )
                synced += 1
            except RemoteError as e:
                errors.append(f"{family.label} {record.id}: {e}")
                await self._audit.log_sync_record_failed(
                    family.label.lower(), record.id, str(e), correlation_id
                )

        # 2. Pull
        try:
            rows = await self._remote.select(family.table, {"user_id": user_id})
        except RemoteError as e:
            errors.append(f"{family.label} fetch error: {e}")
            return SyncResult(
                success=False, synced=synced, conflicts=conflicts, errors=errors
            )

        for row in rows:
            row_id = row.get("id")
            try:
                remote_record = family.from_row(row)
            except ValidationError as e:
                errors.append(f"Cloud {family.label.lower()} {row_id}: invalid row ({e.error_count()} errors)")
                continue

            try:
                local_record = await family.get_local(remote_record.id)
                if local_record is None:
                    await family.add_local(remote_record)
                    synced += 1
                elif not same_content(local_record, remote_record):
                    conflicts += 1
                    logger.info(
                        "sync_conflict_local_kept",
                        family=family.label,
                        id=remote_record.id,
                    )
            except DuplicateError:
                logger.warning("sync_duplicate_skipped", family=family.label, id=row_id)
            except StorageError as e:
                errors.append(f"Cloud {family.label.lower()} {row_id}: {e}")

        return SyncResult(
            success=not errors, synced=synced, conflicts=conflicts, errors=errors
        )

    # =========================================================================
    # Single-record operations
    # =========================================================================

    async def _push_one(self, family: _Family, record: Any) -> bool:
        user_id, _ = await self._resolve_user("push")
        if not user_id:
            return False
        try:
            await self._remote.upsert(
                family.table, family.to_row(record, user_id, self._clock())
            )
        except RemoteError as e:
            logger.warning("push_failed", family=family.label, id=record.id, error=str(e))
            return False
        return True

    async def push_transaction(self, transaction: Transaction) -> bool:
        """Upsert one transaction immediately."""
        return await self._push_one(self._transactions, transaction)

    async def push_recurring(self, template: RecurringTemplate) -> bool:
        """Upsert one recurring template immediately."""
        return await self._push_one(self._recurring, template)

    async def _delete_one(self, family: _Family, id: str) -> bool:
        user_id, _ = await self._resolve_user("delete")
        if not user_id:
            return False
        try:
            await self._remote.delete(family.table, {"id": id, "user_id": user_id})
        except RemoteError as e:
            logger.warning("remote_delete_failed", family=family.label, id=id, error=str(e))
            return False
        await self._audit.log_remote_delete(family.label.lower(), id)
        return True

    async def delete_transaction(self, id: str) -> bool:
        """Hard-delete a transaction from the remote store."""
        return await self._delete_one(self._transactions, id)

    async def delete_recurring(self, id: str) -> bool:
        """Hard-delete a recurring template from the remote store."""
        return await self._delete_one(self._recurring, id)
