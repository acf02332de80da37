"""
Tests for the re-entrancy guard and the advisory lease.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fintrack.concurrency import AdvisoryLease, ReentrancyGuard
from fintrack.services.storage import InMemoryKeyValueStore


class TestReentrancyGuard:
    """Tests for ReentrancyGuard."""

    @pytest.mark.anyio
    async def test_overlapping_call_is_rejected(self):
        """Test that a second run while the first is in flight returns None."""
        guard = ReentrancyGuard("test")
        gate = asyncio.Event()

        async def slow() -> str:
            await gate.wait()
            return "done"

        first = asyncio.create_task(guard.run(slow))
        await asyncio.sleep(0)
        assert guard.is_processing is True

        assert await guard.run(slow) is None

        gate.set()
        assert await first == "done"
        assert guard.locked is False

    @pytest.mark.anyio
    async def test_released_after_exception(self):
        """Test that the guard is cleared when the run raises."""
        guard = ReentrancyGuard("test")

        async def broken() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await guard.run(broken)

        assert guard.locked is False

        async def fine(value: int) -> int:
            return value

        assert await guard.run(fine, 3) == 3


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class TestAdvisoryLease:
    """Tests for AdvisoryLease."""

    def test_second_owner_blocked_until_release(self):
        """Test mutual exclusion between two owners."""
        store = InMemoryKeyValueStore()
        first = AdvisoryLease(store, "lease", owner="a")
        second = AdvisoryLease(store, "lease", owner="b")

        assert first.acquire() is True
        assert second.acquire() is False
        assert second.holder() == "a"

        first.release()
        assert second.acquire() is True

    def test_expired_lease_can_be_taken(self):
        """Test that a dead holder's lease lapses after the TTL."""
        store = InMemoryKeyValueStore()
        clock = FakeClock()
        first = AdvisoryLease(store, "lease", ttl_seconds=60, owner="a", clock=clock)
        second = AdvisoryLease(store, "lease", ttl_seconds=60, owner="b", clock=clock)

        first.acquire()
        clock.now += timedelta(seconds=61)

        assert first.holder() is None
        assert second.acquire() is True

    def test_release_by_non_holder_is_ignored(self):
        """Test that only the holder can release."""
        store = InMemoryKeyValueStore()
        holder = AdvisoryLease(store, "lease", owner="a")
        other = AdvisoryLease(store, "lease", owner="b")

        holder.acquire()
        other.release()
        assert holder.holder() == "a"

    def test_unreadable_record_is_treated_as_free(self):
        """Test that a garbage lease record does not block forever."""
        store = InMemoryKeyValueStore({"lease": "not json"})
        lease = AdvisoryLease(store, "lease", owner="a")
        assert lease.holder() is None
        assert lease.acquire() is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
