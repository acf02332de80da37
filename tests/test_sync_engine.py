"""
Tests for the sync engine.

The remote side is the FakeRemoteStore from conftest; local storage is the
in-memory structured backend.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from fintrack.models.audit import AuditEventType
from fintrack.models.entities import Frequency, TransactionType
from fintrack.services.storage import InMemoryKeyValueStore
from fintrack.services.sync import IdentityProvider, StaticIdentity, SyncEngine
from fintrack.services.sync.mapping import row_to_transaction, transaction_to_row


PUSHED_AT = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)
USER = "user-1"


class YieldingIdentity(IdentityProvider):
    """Resolves the user only after giving the event loop a turn."""

    async def current_user_id(self):
        await asyncio.sleep(0)
        return USER


class FailingIdentity(IdentityProvider):
    async def current_user_id(self):
        raise RuntimeError("token refresh failed")


@pytest.fixture
def state_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def engine(structured_adapter, remote, state_store) -> SyncEngine:
    return SyncEngine(
        structured_adapter,
        remote,
        StaticIdentity(USER),
        state_store,
        clock=lambda: PUSHED_AT,
    )


def remote_row(make_transaction, user_id=USER, **overrides):
    return transaction_to_row(make_transaction(**overrides), user_id, PUSHED_AT)


class TestSyncAll:
    """Tests for SyncEngine.sync_all."""

    @pytest.mark.anyio
    async def test_push_uploads_every_local_record(self, engine, structured_adapter, remote, make_transaction, make_template):
        """Test that local transactions and templates are upserted."""
        tx = await structured_adapter.add_transaction(make_transaction(description="shop"))
        template = await structured_adapter.add_recurring(make_template())

        result = await engine.sync_all()

        assert result.success is True
        assert result.synced == 2
        pushed = remote.tables["transactions"][tx.id]
        assert pushed["user_id"] == USER
        assert pushed["amount"] == "125.50"
        assert pushed["updated_at"] == PUSHED_AT.isoformat()
        assert remote.tables["recurring_transactions"][template.id]["frequency"] == "monthly"

    @pytest.mark.anyio
    async def test_push_is_idempotent(self, engine, structured_adapter, remote, make_transaction):
        """Test that repeated syncs never duplicate remote rows."""
        await structured_adapter.add_transaction(make_transaction())

        await engine.sync_all()
        await engine.sync_all()

        assert len(remote.rows("transactions")) == 1

    @pytest.mark.anyio
    async def test_pull_inserts_missing_records(self, engine, structured_adapter, remote, make_transaction):
        """Test that remote-only rows are added locally."""
        row = remote_row(make_transaction, title="From phone", amount=Decimal("12.10"))
        row["amount"] = 12.1
        remote.seed("transactions", row)
        remote.seed("transactions", remote_row(make_transaction, user_id="someone-else"))

        result = await engine.sync_all()

        local = await structured_adapter.get_all_transactions()
        assert [t.title for t in local] == ["From phone"]
        assert local[0].amount == Decimal("12.1")
        assert result.synced == 1

    @pytest.mark.anyio
    async def test_local_wins_and_conflicts_counted(self, engine, structured_adapter, remote, make_transaction):
        """Test that a differing remote row never overwrites local data."""
        tx = await structured_adapter.add_transaction(make_transaction(title="Local title"))
        remote.fail_ids.add(tx.id)
        remote.seed(
            "transactions",
            transaction_to_row(tx.model_copy(update={"title": "Remote title"}), USER, PUSHED_AT),
        )

        result = await engine.sync_all()

        assert (await structured_adapter.get_transaction(tx.id)).title == "Local title"
        assert result.conflicts == 1
        assert result.success is False
        assert result.errors[0].startswith(f"Transaction {tx.id}:")

    @pytest.mark.anyio
    async def test_failed_record_does_not_stop_the_pass(self, engine, structured_adapter, remote, make_transaction):
        """Test per-record failure isolation."""
        bad = await structured_adapter.add_transaction(make_transaction(title="bad"))
        good = await structured_adapter.add_transaction(make_transaction(title="good"))
        remote.fail_ids.add(bad.id)

        result = await engine.sync_all()

        assert good.id in remote.tables["transactions"]
        assert result.synced == 1
        assert len(result.errors) == 1
        assert engine.get_status().last_error == result.errors[0]

    @pytest.mark.anyio
    async def test_fetch_failure_reported(self, engine, remote, structured_adapter, make_template):
        """Test that a failed pull of one family does not hide the other."""
        await structured_adapter.add_recurring(make_template())
        remote.fail_select.add("transactions")

        result = await engine.sync_all()

        assert result.success is False
        assert any("Transaction fetch error" in e for e in result.errors)
        assert result.synced == 1

    @pytest.mark.anyio
    async def test_invalid_remote_row_skipped(self, engine, remote, structured_adapter, make_transaction):
        """Test that malformed cloud rows are reported, valid ones still land."""
        remote.seed("transactions", {"id": "broken", "user_id": USER, "title": ""})
        remote.seed("transactions", remote_row(make_transaction, title="ok"))

        result = await engine.sync_all()

        assert [t.title for t in await structured_adapter.get_all_transactions()] == ["ok"]
        assert any("broken" in e for e in result.errors)

    @pytest.mark.anyio
    async def test_pull_recurring_templates(self, engine, remote, structured_adapter):
        """Test that remote templates are added locally."""
        remote.seed("recurring_transactions", {
            "id": "r-1",
            "user_id": USER,
            "title": "Gym",
            "amount": 750,
            "category": "Personal Care",
            "type": "expense",
            "frequency": "monthly",
            "start_date": "2024-01-05",
            "end_date": None,
            "last_generated": "2024-05-05",
            "next_occurrence": "2024-06-05",
            "is_active": True,
            "description": None,
            "original_currency": "TRY",
        })

        await engine.sync_all()

        template = await structured_adapter.get_recurring("r-1")
        assert template.frequency == Frequency.MONTHLY
        assert template.amount == Decimal("750")
        assert template.last_generated == date(2024, 5, 5)

    @pytest.mark.anyio
    async def test_unauthenticated(self, structured_adapter, remote, state_store):
        """Test that sync without a user is refused."""
        engine = SyncEngine(structured_adapter, remote, StaticIdentity(None), state_store)

        result = await engine.sync_all()

        assert result.success is False
        assert result.errors == ["User not authenticated"]
        assert remote.upserts == []
        assert engine.get_status().is_syncing is False

    @pytest.mark.anyio
    async def test_identity_failure_is_reported(self, structured_adapter, remote, state_store, audit, make_transaction):
        """Test that a failing identity lookup becomes an error result."""
        await structured_adapter.add_transaction(make_transaction())
        engine = SyncEngine(
            structured_adapter, remote, FailingIdentity(), state_store, audit_logger=audit
        )

        result = await engine.sync_all()

        assert result.success is False
        assert result.errors == ["Identity lookup failed: token refresh failed"]
        assert engine.get_status().is_syncing is False
        assert remote.upserts == []
        [event] = audit.of_type(AuditEventType.SYSTEM_ERROR)
        assert event.error_message == "token refresh failed"
        assert event.details["operation"] == "sync"

    @pytest.mark.anyio
    async def test_unexpected_failure_is_reported(self, structured_adapter, remote, state_store, audit, make_transaction):
        """Test that a non-remote error inside the pass is caught and audited."""
        await structured_adapter.add_transaction(make_transaction())

        async def explode(table, row):
            raise RuntimeError("serializer bug")

        remote.upsert = explode
        engine = SyncEngine(
            structured_adapter, remote, StaticIdentity(USER), state_store, audit_logger=audit
        )

        result = await engine.sync_all()

        assert result.errors == ["serializer bug"]
        assert engine.get_status().last_error == "serializer bug"
        [event] = audit.of_type(AuditEventType.SYSTEM_ERROR)
        assert event.description == "System error: RuntimeError"
        assert event.details == {"stage": "sync"}
        assert event.correlation_id is not None

    @pytest.mark.anyio
    async def test_overlapping_sync_rejected(self, engine, structured_adapter, remote, make_transaction):
        """Test that a second sync during the first is refused."""
        await structured_adapter.add_transaction(make_transaction())
        gate = asyncio.Event()
        original_upsert = remote.upsert

        async def slow_upsert(table, row):
            await gate.wait()
            await original_upsert(table, row)

        remote.upsert = slow_upsert
        first = asyncio.create_task(engine.sync_all())
        while not engine.get_status().is_syncing:
            await asyncio.sleep(0)

        second = await engine.sync_all()
        assert second.errors == ["Sync already in progress"]

        gate.set()
        assert (await first).success is True

    @pytest.mark.anyio
    async def test_overlap_rejected_while_user_resolves(self, structured_adapter, remote, state_store, audit, make_transaction):
        """Test that a call arriving during the identity lookup is refused."""
        await structured_adapter.add_transaction(make_transaction())
        engine = SyncEngine(
            structured_adapter, remote, YieldingIdentity(), state_store, audit_logger=audit
        )

        first, second = await asyncio.gather(engine.sync_all(), engine.sync_all())

        assert first.success is True
        assert first.synced == 1
        assert second.errors == ["Sync already in progress"]
        assert len(remote.upserts) == 1
        assert len(audit.of_type(AuditEventType.SYNC_STARTED)) == 1
        assert engine.get_status().is_syncing is False

    @pytest.mark.anyio
    async def test_timeout(self, structured_adapter, remote, state_store, make_transaction):
        """Test that a hung remote ends the pass with an error."""
        await structured_adapter.add_transaction(make_transaction())

        async def hang(table, row):
            await asyncio.Event().wait()

        remote.upsert = hang
        engine = SyncEngine(
            structured_adapter, remote, StaticIdentity(USER), state_store, sync_timeout=0.05
        )

        result = await engine.sync_all()

        assert result.success is False
        assert "timed out" in result.errors[0]
        assert engine.get_status().is_syncing is False


class TestStatus:
    """Tests for status reporting and subscribers."""

    @pytest.mark.anyio
    async def test_subscribers_see_start_and_end(self, engine):
        """Test that listeners get is_syncing True then False."""
        seen = []
        engine.subscribe(lambda status: seen.append(status.is_syncing))

        await engine.sync_all()

        assert seen == [True, False]

    @pytest.mark.anyio
    async def test_unsubscribe(self, engine):
        """Test that an unsubscribed listener is not called."""
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        unsubscribe()
        unsubscribe()

        await engine.sync_all()

        assert seen == []

    @pytest.mark.anyio
    async def test_failing_listener_is_isolated(self, engine):
        """Test that a raising listener does not break sync."""
        def broken(status):
            raise RuntimeError("ui gone")

        engine.subscribe(broken)
        assert (await engine.sync_all()).success is True

    @pytest.mark.anyio
    async def test_last_sync_time_persisted(self, engine, structured_adapter, remote, state_store):
        """Test that last_sync_time survives a new engine instance."""
        assert engine.get_status().last_sync_time is None

        await engine.sync_all()

        assert state_store.get("monera-last-sync") == PUSHED_AT.isoformat()
        restarted = SyncEngine(structured_adapter, remote, StaticIdentity(USER), state_store)
        assert restarted.get_status().last_sync_time == PUSHED_AT

    def test_status_is_a_copy(self, engine):
        """Test that callers cannot mutate the engine's status."""
        status = engine.get_status()
        status.is_syncing = True
        assert engine.get_status().is_syncing is False


class TestSingleRecordOperations:
    """Tests for immediate push and remote delete."""

    @pytest.mark.anyio
    async def test_push_transaction(self, engine, remote, make_transaction):
        """Test immediate upsert of one transaction."""
        tx = make_transaction(type=TransactionType.INCOME)
        assert await engine.push_transaction(tx) is True
        assert remote.tables["transactions"][tx.id]["type"] == "income"

    @pytest.mark.anyio
    async def test_push_failure_returns_false(self, engine, remote, make_transaction):
        """Test that a rejected push is reported, not raised."""
        tx = make_transaction()
        remote.fail_ids.add(tx.id)
        assert await engine.push_transaction(tx) is False

    @pytest.mark.anyio
    async def test_push_recurring(self, engine, remote, make_template):
        """Test immediate upsert of one template."""
        template = make_template()
        assert await engine.push_recurring(template) is True
        assert template.id in remote.tables["recurring_transactions"]

    @pytest.mark.anyio
    async def test_delete_is_scoped_to_user(self, engine, remote, make_transaction):
        """Test that remote delete removes only the user's row."""
        mine = remote_row(make_transaction)
        theirs = dict(mine, user_id="someone-else")
        remote.seed("transactions", mine)

        assert await engine.delete_transaction(mine["id"]) is True
        assert remote.rows("transactions") == []
        assert remote.deletes[-1] == ("transactions", {"id": mine["id"], "user_id": USER})

        remote.seed("transactions", theirs)
        await engine.delete_transaction(theirs["id"])
        assert len(remote.rows("transactions")) == 1

    @pytest.mark.anyio
    async def test_remote_delete_leaves_local(self, engine, structured_adapter, make_template):
        """Test that remote deletion is never propagated to local records."""
        template = await structured_adapter.add_recurring(make_template())
        assert await engine.delete_recurring(template.id) is True
        assert await structured_adapter.get_recurring(template.id) == template

    @pytest.mark.anyio
    async def test_operations_need_a_user(self, structured_adapter, remote, state_store, make_transaction):
        """Test that single-record operations refuse without a user."""
        engine = SyncEngine(structured_adapter, remote, StaticIdentity(None), state_store)
        assert await engine.push_transaction(make_transaction()) is False
        assert await engine.delete_transaction("x") is False
        assert remote.upserts == []

    @pytest.mark.anyio
    async def test_operations_survive_identity_failure(self, structured_adapter, remote, state_store, make_transaction):
        """Test that single-record operations return False when the lookup raises."""
        engine = SyncEngine(structured_adapter, remote, FailingIdentity(), state_store)
        assert await engine.push_transaction(make_transaction()) is False
        assert await engine.delete_recurring("x") is False
        assert remote.upserts == []
        assert remote.deletes == []


class TestMapping:
    """Tests for the remote row mapping."""

    def test_row_ignores_remote_only_columns(self, make_transaction):
        """Test that created_at and user_id are dropped on the way in."""
        tx = make_transaction(recurring_id="r-1", is_recurring=True)
        row = transaction_to_row(tx, USER, PUSHED_AT)
        row["created_at"] = "2024-01-01T00:00:00+00:00"

        assert row_to_transaction(row) == tx

    def test_float_amount_is_exact(self, make_transaction):
        """Test that JSON numbers become exact decimals."""
        row = transaction_to_row(make_transaction(), USER, PUSHED_AT)
        row["amount"] = 0.1
        assert row_to_transaction(row).amount == Decimal("0.1")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
