"""
Integration tests for the composition root.
"""

from datetime import date

import pytest

from fintrack.config import Settings
from fintrack.models.state import MigrationStatus
from fintrack.orchestrator import create_app_components
from fintrack.services.sync import StaticIdentity


@pytest.fixture(autouse=True)
def local_only(monkeypatch, tmp_path):
    monkeypatch.delenv("FINTRACK_SYNC_SUPABASE_URL", raising=False)
    monkeypatch.delenv("FINTRACK_SYNC_SUPABASE_KEY", raising=False)
    monkeypatch.setenv("FINTRACK_STORAGE_DATA_DIR", str(tmp_path / "data"))


class TestCreateAppComponents:
    """Tests for create_app_components and bootstrap."""

    @pytest.mark.anyio
    async def test_fresh_install_uses_flat_store(self):
        """Test that an empty install starts on the flat backend without sync."""
        app = create_app_components(Settings(), in_memory=True)

        storage = await app.bootstrap()

        assert storage is app.flat
        assert app.sync_engine is None
        assert app.cleaner is None
        assert app.processor is not None
        assert app.importer is not None
        await app.aclose()

    @pytest.mark.anyio
    async def test_bootstrap_migrates_flat_data(self, make_transaction):
        """Test that startup moves existing flat data to the structured store."""
        app = create_app_components(Settings(), in_memory=True)
        await app.flat.add_transaction(make_transaction())

        storage = await app.bootstrap()

        assert storage is app.structured
        assert len(await storage.get_all_transactions()) == 1
        assert app.coordinator.get_migration_info().status == MigrationStatus.STRUCTURED_ONLY
        await app.aclose()

    @pytest.mark.anyio
    async def test_materialized_transactions_are_pushed(self, remote, make_template):
        """Test that the processor pushes new transactions when sync is wired."""
        app = create_app_components(
            Settings(), remote=remote, identity=StaticIdentity("user-1"), in_memory=True
        )
        await app.flat.add_recurring(make_template())
        await app.bootstrap()

        report = await app.processor.process_due(date(2024, 2, 1))

        assert report.transactions_created == 1
        assert report.created_ids[0] in remote.tables["transactions"]
        assert app.sync_engine is not None
        assert app.cleaner is not None

    @pytest.mark.anyio
    async def test_file_backed_state_survives_restart(self, tmp_path, make_transaction):
        """Test that a second app instance on the same directory sees migrated data."""
        first = create_app_components(Settings())
        await first.flat.add_transaction(make_transaction())
        await first.bootstrap()
        await first.aclose()

        assert (tmp_path / "data" / "fintrack.db").exists()

        second = create_app_components(Settings())
        storage = await second.bootstrap()

        assert storage is second.structured
        assert len(await storage.get_all_transactions()) == 1
        await second.aclose()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
