"""
Tests for SyncOrchestrator: run lifecycle, single-flight, retries and failures.
"""

import asyncio
from decimal import Decimal
from datetime import timedelta

import pytest

from conftest import make_feed
from vendorsync.config import RetryConfig, SyncConfig
from vendorsync.errors import (
    AlreadyRunning,
    EmptyFeedError,
    FeedAuthError,
    FeedConnectionError,
    StuckRun,
    VendorNotFound,
)
from vendorsync.models import GLOBAL_SCOPE, Scope, SyncRun, SyncState, TriggerSource, utcnow
from vendorsync.sync.orchestrator import GENERIC_FAILURE, RESET_MESSAGE, SyncOrchestrator

ROWS = [
    "A-1,10.00,5,Alpha",
    "B-2,20.00,0,Bravo",
    "C-3,30.00,7,Charlie",
]


def gated(rows):
    """Fetch outcome that blocks until released."""
    started = asyncio.Event()
    release = asyncio.Event()

    async def fetch(credentials):
        started.set()
        await release.wait()
        return make_feed(rows)

    return fetch, started, release


async def begin_stale_run(store, vendor, age_seconds):
    run = SyncRun(vendor=vendor, scope=GLOBAL_SCOPE, state=SyncState.FETCHING)
    run.started_at = utcnow() - timedelta(seconds=age_seconds)
    assert await store.begin_run(run) is None
    return run


class TestSuccessfulRuns:
    """Test the happy path and the unchanged-feed short-circuit."""

    @pytest.mark.asyncio
    async def test_first_sync_succeeds(self, orchestrator, feeds, store):
        feeds["zulu"] = make_feed(ROWS)

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.SUCCESS
        assert run.stats.added == 3
        assert run.stats.processed == 3
        assert run.stats.total_rows == 3
        assert run.finished_at is not None
        assert run.error is None
        assert (await store.get_record(GLOBAL_SCOPE, "B-2")).source_vendor == "zulu"

    @pytest.mark.asyncio
    async def test_identical_feed_is_skipped(self, orchestrator, feeds):
        feeds["zulu"] = make_feed(ROWS)
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        run = await orchestrator.trigger("zulu", "global", TriggerSource.SCHEDULED)

        assert run.state == SyncState.SKIPPED
        assert run.trigger == TriggerSource.SCHEDULED
        assert run.stats.processed == 0
        assert run.stats.total_rows == 3
        assert run.stats.skipped == 3

    @pytest.mark.asyncio
    async def test_changed_rows_only_are_processed(self, orchestrator, feeds):
        feeds["zulu"] = [make_feed(ROWS), make_feed([ROWS[0], "B-2,25.00,0,Bravo", ROWS[2]])]
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.SUCCESS
        assert run.stats.processed == 1
        assert run.stats.updated == 1

    @pytest.mark.asyncio
    async def test_large_feed_processes_only_changes(self, orchestrator, feeds):
        orchestrator.run_timeout = 120.0
        rows = [f"SKU{i:05d},{i}.00,{i % 10},Item {i}" for i in range(40_000)]
        changed = list(rows)
        for i in range(0, 40_000, 800):
            changed[i] = f"SKU{i:05d},{i}.50,{i % 10},Item {i}"
        feeds["zulu"] = [make_feed(rows), make_feed(changed)]
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.SUCCESS
        assert run.stats.processed == 50
        assert run.stats.total_rows == 40_000

    @pytest.mark.asyncio
    async def test_credentials_reach_fetcher(self, orchestrator, feeds, fetch_calls, vault):
        await vault.put("acme", GLOBAL_SCOPE, {"ftpServer": "ftp.acme.test", "token": "t1"})
        feeds["acme"] = make_feed(ROWS)

        run = await orchestrator.trigger("acme", GLOBAL_SCOPE)

        assert run.state == SyncState.SUCCESS
        assert fetch_calls == [("acme", {"host": "ftp.acme.test", "token": "t1"})]

    @pytest.mark.asyncio
    async def test_trigger_many_runs_pairs_concurrently(self, orchestrator, feeds):
        feeds["zulu"] = make_feed(ROWS)
        feeds["lines"] = make_feed(["A-1,1.00"], header="sku,price")

        results = await orchestrator.trigger_many(
            [("zulu", GLOBAL_SCOPE), ("lines", "global"), ("zulu", "tenant:3")]
        )

        assert [r.state for r in results] == [SyncState.SUCCESS] * 3

    @pytest.mark.asyncio
    async def test_unknown_vendor_raises(self, orchestrator):
        with pytest.raises(VendorNotFound):
            await orchestrator.trigger("ghost", GLOBAL_SCOPE)


class TestSingleFlight:
    """At most one run per (vendor, scope) is in progress."""

    @pytest.mark.asyncio
    async def test_second_trigger_rejected_while_running(self, orchestrator, feeds):
        fetch, started, release = gated(ROWS)
        feeds["zulu"] = fetch
        first = asyncio.create_task(orchestrator.trigger("zulu", GLOBAL_SCOPE))
        await started.wait()

        with pytest.raises(AlreadyRunning) as exc_info:
            await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert not isinstance(exc_info.value, StuckRun)
        status = await orchestrator.status("zulu", GLOBAL_SCOPE)
        assert status.state == SyncState.FETCHING

        release.set()
        assert (await first).state == SyncState.SUCCESS

    @pytest.mark.asyncio
    async def test_other_scope_not_blocked(self, orchestrator, feeds):
        fetch, started, release = gated(ROWS)
        feeds["zulu"] = [fetch, make_feed(ROWS)]
        first = asyncio.create_task(orchestrator.trigger("zulu", GLOBAL_SCOPE))
        await started.wait()

        other = await orchestrator.trigger("zulu", "tenant:5")

        assert other.state == SyncState.SUCCESS
        release.set()
        await first

    @pytest.mark.asyncio
    async def test_stale_run_reported_as_stuck(self, orchestrator, store):
        stale = await begin_stale_run(store, "zulu", age_seconds=120)

        with pytest.raises(StuckRun) as exc_info:
            await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert exc_info.value.run_id == stale.run_id
        assert "reset" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_stuck_run_is_not_auto_cleared(self, orchestrator, store):
        await begin_stale_run(store, "zulu", age_seconds=120)

        for _ in range(2):
            with pytest.raises(StuckRun):
                await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert (await store.get_run("zulu", GLOBAL_SCOPE)).state == SyncState.FETCHING


class TestFailures:
    """Test failure classification, retries and catalog preservation."""

    @pytest.mark.asyncio
    async def test_connection_error_retried(self, orchestrator, feeds, fetch_calls):
        feeds["zulu"] = [FeedConnectionError("refused"), make_feed(ROWS)]

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.SUCCESS
        assert len(fetch_calls) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, orchestrator, feeds, fetch_calls):
        feeds["zulu"] = [FeedConnectionError("refused") for _ in range(3)]

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert run.error == FeedConnectionError.default_message
        assert len(fetch_calls) == 3

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, orchestrator, feeds, fetch_calls):
        feeds["zulu"] = [FeedAuthError("530 Login incorrect"), make_feed(ROWS)]

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert run.error == FeedAuthError.default_message
        assert len(fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_empty_feed_keeps_catalog(self, orchestrator, feeds, store):
        feeds["zulu"] = [make_feed(ROWS), b""]
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)
        snapshot = await store.get_snapshot("zulu", GLOBAL_SCOPE)

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert run.error == EmptyFeedError.default_message
        assert (await store.get_snapshot("zulu", GLOBAL_SCOPE)).fingerprint == snapshot.fingerprint
        record = await store.get_record(GLOBAL_SCOPE, "A-1")
        assert record.active

    @pytest.mark.asyncio
    async def test_malformed_feed_message_names_line(self, orchestrator, feeds):
        feeds["zulu"] = make_feed([ROWS[0], "B-2,20.00"])

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert "line 3" in run.error

    @pytest.mark.asyncio
    async def test_unconfigured_credentials(self, orchestrator, feeds, fetch_calls):
        feeds["acme"] = make_feed(ROWS)

        run = await orchestrator.trigger("acme", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert run.error == "Credentials for acme (global) are not configured"
        assert fetch_calls == []

    @pytest.mark.asyncio
    async def test_missing_required_credential(self, orchestrator, feeds, vault):
        await vault.put("acme", GLOBAL_SCOPE, {"token": "t1"})
        feeds["acme"] = make_feed(ROWS)

        run = await orchestrator.trigger("acme", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert "host" in run.error

    @pytest.mark.asyncio
    async def test_unexpected_error_stores_generic_message(self, orchestrator, feeds):
        feeds["zulu"] = RuntimeError("socket.gaierror at 0x7f3a")

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert run.error == GENERIC_FAILURE
        assert "0x7f3a" not in run.error

    @pytest.mark.asyncio
    async def test_timeout_fails_run(self, store, catalog, vault, fetchers, feeds):
        config = SyncConfig(
            run_timeout_sec=0.05,
            retry=RetryConfig(max_attempts=1, base_delay=0.0, max_delay=0.0),
        )
        orchestrator = SyncOrchestrator(store, catalog, vault, fetchers=fetchers, config=config)

        async def slow(credentials):
            await asyncio.sleep(5)
            return make_feed(ROWS)

        feeds["zulu"] = slow

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.FAILED
        assert "timed out" in run.error
        assert await store.get_snapshot("zulu", GLOBAL_SCOPE) is None

    @pytest.mark.asyncio
    async def test_failed_run_does_not_block_next(self, orchestrator, feeds):
        feeds["zulu"] = [b"", make_feed(ROWS)]
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.SUCCESS

    @pytest.mark.asyncio
    async def test_bad_cell_keeps_record_until_fixed(self, orchestrator, feeds, store):
        tenant = Scope.tenant("9")
        feeds["zulu"] = [
            make_feed(["A-1,10.00,5,Alpha"]),
            make_feed(["A-1,N/A,5,Alpha"]),
            make_feed(["A-1,12.00,5,Alpha"]),
        ]
        await orchestrator.trigger("zulu", tenant)

        bad = await orchestrator.trigger("zulu", tenant)

        assert bad.state == SyncState.SUCCESS
        assert bad.stats.failed == 1
        assert bad.stats.removed == 0
        assert (await store.get_record(tenant, "A-1")).values.price == Decimal("10.00")

        fixed = await orchestrator.trigger("zulu", tenant)

        assert fixed.stats.updated == 1
        assert (await store.get_record(tenant, "A-1")).values.price == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_timeout_after_commit_is_success(self, orchestrator, feeds, store, monkeypatch):
        reconcile = orchestrator.reconciler.reconcile

        async def slow_return(*args, **kwargs):
            stats = await reconcile(*args, **kwargs)
            await asyncio.sleep(5)
            return stats

        monkeypatch.setattr(orchestrator.reconciler, "reconcile", slow_return)
        orchestrator.run_timeout = 0.2
        feeds["zulu"] = make_feed(ROWS)

        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert run.state == SyncState.SUCCESS
        assert run.error is None
        assert (await store.get_run("zulu", GLOBAL_SCOPE)).state == SyncState.SUCCESS
        assert await store.get_record(GLOBAL_SCOPE, "A-1") is not None


class TestStatusAndReset:
    """Test status queries and operator reset."""

    @pytest.mark.asyncio
    async def test_status_before_any_run(self, orchestrator):
        status = await orchestrator.status("zulu", GLOBAL_SCOPE)

        assert status.state == SyncState.IDLE
        assert status.last_run_at is None
        assert status.last_outcome is None

    @pytest.mark.asyncio
    async def test_status_after_success(self, orchestrator, feeds):
        feeds["zulu"] = make_feed(ROWS)
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        status = await orchestrator.status("zulu", GLOBAL_SCOPE)

        assert status.state == SyncState.IDLE
        assert status.last_outcome == SyncState.SUCCESS
        assert status.stats.added == 3
        assert status.to_dict()["last_outcome"] == "success"

    @pytest.mark.asyncio
    async def test_status_after_failure_carries_error(self, orchestrator, feeds):
        feeds["zulu"] = b""
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        status = await orchestrator.status("zulu", GLOBAL_SCOPE)

        assert status.last_outcome == SyncState.FAILED
        assert status.last_error == EmptyFeedError.default_message

    @pytest.mark.asyncio
    async def test_list_status(self, orchestrator, feeds):
        feeds["zulu"] = make_feed(ROWS)
        feeds["lines"] = make_feed(["A-1,1.00"], header="sku,price")
        await orchestrator.trigger("zulu", GLOBAL_SCOPE)
        await orchestrator.trigger("lines", GLOBAL_SCOPE)

        statuses = await orchestrator.list_status()

        assert [(s.vendor, s.scope.key) for s in statuses] == [
            ("lines", "global"),
            ("zulu", "global"),
        ]

    @pytest.mark.asyncio
    async def test_reset_with_nothing_running(self, orchestrator):
        assert await orchestrator.reset("zulu", GLOBAL_SCOPE) is None

    @pytest.mark.asyncio
    async def test_reset_refuses_recent_run(self, orchestrator, store):
        await begin_stale_run(store, "zulu", age_seconds=5)

        with pytest.raises(AlreadyRunning):
            await orchestrator.reset("zulu", GLOBAL_SCOPE)

    @pytest.mark.asyncio
    async def test_reset_stuck_run_allows_new_trigger(self, orchestrator, store, feeds):
        await begin_stale_run(store, "zulu", age_seconds=120)
        feeds["zulu"] = make_feed(ROWS)

        reset = await orchestrator.reset("zulu", GLOBAL_SCOPE)
        status = await orchestrator.status("zulu", GLOBAL_SCOPE)
        run = await orchestrator.trigger("zulu", GLOBAL_SCOPE)

        assert reset.state == SyncState.FAILED
        assert status.last_error == RESET_MESSAGE
        assert run.state == SyncState.SUCCESS

    @pytest.mark.asyncio
    async def test_forced_reset_supersedes_live_run(self, orchestrator, feeds, store):
        fetch, started, release = gated(ROWS)
        feeds["zulu"] = fetch
        live = asyncio.create_task(orchestrator.trigger("zulu", GLOBAL_SCOPE))
        await started.wait()

        await orchestrator.reset("zulu", GLOBAL_SCOPE, force=True)
        release.set()
        await live

        status = await orchestrator.status("zulu", GLOBAL_SCOPE)
        assert status.last_outcome == SyncState.FAILED
        assert status.last_error == RESET_MESSAGE
        assert await store.get_snapshot("zulu", GLOBAL_SCOPE) is None
        assert await store.get_record(GLOBAL_SCOPE, "A-1") is None
