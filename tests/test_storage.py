"""
Tests for the in-memory store and backend selection.
"""

import pytest

from vendorsync.config import SyncConfig
from vendorsync.models import (
    GLOBAL_SCOPE,
    CatalogRecord,
    CatalogValues,
    Scope,
    SyncRun,
    SyncState,
    VendorOffer,
)
from vendorsync.storage import MemoryStore, create_store
from vendorsync.storage.postgres import PostgresStore


def record(sku, vendor="acme", scope=GLOBAL_SCOPE):
    return CatalogRecord(sku=sku, scope=scope, values=CatalogValues(), source_vendor=vendor)


class TestRuns:
    """Test the single in-progress run per pair."""

    @pytest.mark.asyncio
    async def test_begin_run_blocks_second_active_run(self, store):
        first = SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.FETCHING)
        second = SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.FETCHING)

        assert await store.begin_run(first) is None
        active = await store.begin_run(second)

        assert active.run_id == first.run_id

    @pytest.mark.asyncio
    async def test_begin_run_after_terminal_run(self, store):
        first = SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.FETCHING)
        await store.begin_run(first)
        first.state = SyncState.FAILED
        await store.update_run(first)

        second = SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.FETCHING)

        assert await store.begin_run(second) is None
        assert (await store.get_run("acme", GLOBAL_SCOPE)).run_id == second.run_id

    @pytest.mark.asyncio
    async def test_update_run_ignores_finished_run(self, store):
        run = SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.FETCHING)
        await store.begin_run(run)
        run.state = SyncState.FAILED
        assert await store.update_run(run)

        run.state = SyncState.SUCCESS

        assert await store.update_run(run) is False
        assert (await store.get_run("acme", GLOBAL_SCOPE)).state == SyncState.FAILED

    @pytest.mark.asyncio
    async def test_update_run_ignores_other_run_id(self, store):
        await store.begin_run(SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.FETCHING))
        other = SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.DIFFING)

        assert await store.update_run(other) is False

    @pytest.mark.asyncio
    async def test_returned_runs_are_copies(self, store):
        run = SyncRun(vendor="acme", scope=GLOBAL_SCOPE, state=SyncState.FETCHING)
        await store.begin_run(run)

        run.state = SyncState.DIFFING

        assert (await store.get_run("acme", GLOBAL_SCOPE)).state == SyncState.FETCHING


class TestTransactions:
    """Test staged writes and rollback."""

    @pytest.mark.asyncio
    async def test_commit_applies_writes(self, store):
        async with store.transaction() as tx:
            await tx.upsert_record(record("A-1"))
            await tx.upsert_offer(VendorOffer("acme", "A-1", GLOBAL_SCOPE, CatalogValues()))

        assert (await store.get_record(GLOBAL_SCOPE, "A-1")).source_vendor == "acme"
        assert len(await store.get_offers(GLOBAL_SCOPE, "A-1")) == 1

    @pytest.mark.asyncio
    async def test_exception_discards_writes(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.upsert_record(record("A-1"))
                raise RuntimeError("boom")

        assert await store.get_record(GLOBAL_SCOPE, "A-1") is None
        assert store.record_count() == 0

    @pytest.mark.asyncio
    async def test_transaction_reads_own_writes(self, store):
        async with store.transaction() as tx:
            await tx.upsert_record(record("A-1"))
            records = await tx.get_records(GLOBAL_SCOPE, ["A-1", "B-2"])
            await tx.delete_record(GLOBAL_SCOPE, "A-1")
            after_delete = await tx.get_records(GLOBAL_SCOPE, ["A-1"])

        assert list(records) == ["A-1"]
        assert after_delete == {}

    @pytest.mark.asyncio
    async def test_record_count_by_scope(self, store):
        tenant = Scope.tenant("4")
        async with store.transaction() as tx:
            await tx.upsert_record(record("A-1"))
            await tx.upsert_record(record("A-1", scope=tenant))
            await tx.upsert_record(record("B-2", scope=tenant))

        assert store.record_count(GLOBAL_SCOPE) == 1
        assert store.record_count(tenant) == 2


class TestCreateStore:
    """Test backend selection from configuration."""

    def test_memory_store_without_database_url(self):
        assert isinstance(create_store(SyncConfig(database_url="")), MemoryStore)

    def test_postgres_store_with_database_url(self):
        store = create_store(SyncConfig(database_url="postgresql://localhost/vendorsync"))

        assert isinstance(store, PostgresStore)
