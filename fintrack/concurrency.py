"""
Concurrency Guards

ReentrancyGuard keeps two overlapping runs of the same flow (migration,
import, recurring materialization) from interleaving inside one process.
A second caller is turned away, not queued.

AdvisoryLease is the cross-process counterpart: a timestamped lock record
in the key-value store that expires on its own if the holder dies. It is
advisory only, so cooperating processes must check it.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import structlog

from fintrack.services.storage.kv import KeyValueStore


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ReentrancyGuard:
    """
    A lock flag plus an is_processing flag.

    Both are checked before entry and cleared in a finally block.
    """

    def __init__(self, name: str):
        self.name = name
        self._locked = False
        self.is_processing = False

    @property
    def locked(self) -> bool:
        return self._locked or self.is_processing

    def try_acquire(self) -> bool:
        if self.locked:
            return False
        self._locked = True
        self.is_processing = True
        return True

    def release(self) -> None:
        self._locked = False
        self.is_processing = False

    async def run(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> Optional[T]:
        """
        Await func under the guard.

        Returns None without calling func when another run is in flight.
        """
        if not self.try_acquire():
            logger.info("reentrant_call_rejected", guard=self.name)
            return None
        try:
            return await func(*args, **kwargs)
        finally:
            self.release()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdvisoryLease:
    """
    Expiring lock record shared through a KeyValueStore.

    Usage:
        lease = AdvisoryLease(store, "fintrack_lease", ttl_seconds=300)
        if lease.acquire():
            try:
                ...
            finally:
                lease.release()
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        ttl_seconds: float = 300.0,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._key = key
        self._ttl = timedelta(seconds=ttl_seconds)
        self.owner = owner or str(uuid4())
        self._clock = clock

    def _read(self) -> Optional[dict]:
        raw = self._store.get(self._key)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
            record["expires_at"] = datetime.fromisoformat(record["expires_at"])
            return record
        except (ValueError, KeyError, TypeError):
            # Unreadable lease records are treated as expired
            logger.warning("lease_record_unreadable", key=self._key)
            return None

    def holder(self) -> Optional[str]:
        """Owner of the live lease, or None if free or expired."""
        record = self._read()
        if record is None or record["expires_at"] <= self._clock():
            return None
        return record.get("owner")

    def acquire(self) -> bool:
        """Take or renew the lease; False if another owner holds it."""
        current = self.holder()
        if current is not None and current != self.owner:
            logger.info("lease_held_elsewhere", key=self._key, holder=current)
            return False

        now = self._clock()
        self._store.set(
            self._key,
            json.dumps({
                "owner": self.owner,
                "acquired_at": now.isoformat(),
                "expires_at": (now + self._ttl).isoformat(),
            }),
        )
        return True

    def release(self) -> None:
        """Drop the lease if this owner holds it."""
        if self.holder() == self.owner:
            self._store.remove(self._key)
