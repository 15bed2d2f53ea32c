"""
Sync orchestrator.

Drives one (vendor, scope) run through its states:

    idle -> fetching -> diffing -> reconciling -> committing -> success
                          \\-> skipped
    any in-progress state -> failed

At most one run per pair is in progress; a second trigger fails fast with
AlreadyRunning instead of queueing. Runs for different pairs proceed
concurrently. A run stuck past ``max_run_duration`` stays stuck until an
operator calls ``reset()``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import RetryConfig, SyncConfig, get_config
from ..errors import (
    AlreadyRunning,
    CredentialSchemaError,
    StuckRun,
    SyncTimeout,
    VendorSyncError,
)
from ..fetchers import FeedFetcher, FetcherRegistry, FetchResult, fetcher_registry
from ..models import (
    TRANSITIONS,
    Scope,
    SyncRun,
    SyncState,
    SyncStats,
    SyncStatus,
    TriggerSource,
    utcnow,
)
from ..storage import SyncStore, create_store
from ..vault import CredentialBag, CredentialVault
from ..vendors.config import VendorCatalog, VendorSchema
from .detector import ChangeDetector
from .priority import VendorPriorityCache
from .reconciler import CatalogReconciler

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Sync failed due to an internal error; see server logs"
RESET_MESSAGE = "Run was stuck in progress; manually reset"
CANCELLED_MESSAGE = "Sync was cancelled"


class RunSuperseded(VendorSyncError):
    """The run was reset or replaced while it was still executing."""

    default_message = "Run was reset while in progress"


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, VendorSyncError) and error.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Fetch attempt {retry_state.attempt_number} failed: {error}; retrying"
    )


class SyncOrchestrator:
    """Runs vendor syncs and answers status queries."""

    def __init__(
        self,
        store: SyncStore,
        catalog: VendorCatalog,
        vault: CredentialVault,
        *,
        fetchers: Optional[FetcherRegistry] = None,
        priorities: Optional[VendorPriorityCache] = None,
        config: Optional[SyncConfig] = None,
    ):
        config = config or get_config()
        self.store = store
        self.catalog = catalog
        self.vault = vault
        self.fetchers = fetchers or fetcher_registry
        self.priorities = priorities or VendorPriorityCache(store)
        self.detector = ChangeDetector(store, catalog)
        self.reconciler = CatalogReconciler(store, catalog, self.priorities)

        self.run_timeout = config.run_timeout_sec
        self.max_run_duration = config.max_run_duration_sec
        self.download_timeout = config.download_timeout_sec
        self.retry: RetryConfig = config.retry
        # run_id -> fingerprint of the feed a run is committing
        self._committing: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config: Optional[SyncConfig] = None) -> "SyncOrchestrator":
        """Wire store, vendor catalog and vault from configuration."""
        config = config or get_config()
        store = create_store(config)
        catalog = VendorCatalog.from_dir(config.vendors_dir)
        vault = CredentialVault(store, catalog, keys=config.encryption_key_list)
        return cls(store, catalog, vault, config=config)

    # =========================================================================
    # Triggering
    # =========================================================================

    async def trigger(
        self,
        vendor: str,
        scope: Scope | str,
        trigger: TriggerSource | str = TriggerSource.MANUAL,
    ) -> SyncRun:
        """Run a sync for (vendor, scope) and return the finished SyncRun.

        Failures inside the run are recorded on the returned run rather
        than raised.

        Raises:
            VendorNotFound: the vendor has no declared schema.
            AlreadyRunning: a run for the pair is in progress.
            StuckRun: the in-progress run exceeded max_run_duration.
        """
        scope = Scope.parse(scope)
        schema = self.catalog.get(vendor)
        run = SyncRun(
            vendor=vendor,
            scope=scope,
            trigger=TriggerSource(trigger),
            state=SyncState.FETCHING,
        )

        active = await self.store.begin_run(run)
        if active is not None:
            if active.age_seconds() > self.max_run_duration:
                raise StuckRun(vendor, scope.key, active.run_id)
            raise AlreadyRunning(vendor, scope.key, active.run_id)

        logger.info(f"Sync {run.run_id} started for {vendor} ({scope}), {run.trigger.value}")
        try:
            state = await asyncio.wait_for(self._execute(run, schema), timeout=self.run_timeout)
            await self._finish(run, state)
        except asyncio.TimeoutError:
            await self._interrupted(run, SyncTimeout(self.run_timeout))
        except VendorSyncError as e:
            await self._fail(run, e)
        except asyncio.CancelledError:
            await self._interrupted(run, VendorSyncError(user_message=CANCELLED_MESSAGE))
            raise
        except Exception:
            logger.exception(f"Sync {run.run_id} for {vendor} ({scope}) crashed")
            await self._fail(run, VendorSyncError(user_message=GENERIC_FAILURE))
        finally:
            self._committing.pop(run.run_id, None)
        return run

    async def trigger_many(
        self,
        pairs: Iterable[Tuple[str, Scope | str]],
        trigger: TriggerSource | str = TriggerSource.MANUAL,
    ) -> List[SyncRun | BaseException]:
        """Trigger several pairs concurrently; errors are returned, not raised."""
        return await asyncio.gather(
            *(self.trigger(vendor, scope, trigger) for vendor, scope in pairs),
            return_exceptions=True,
        )

    async def _execute(self, run: SyncRun, schema: VendorSchema) -> SyncState:
        """Fetch, diff and reconcile; returns the terminal state to record."""
        credentials = await self._credentials(schema, run.scope)
        fetcher = self.fetchers.create(schema, timeout=self.download_timeout)
        result = await self._fetch(fetcher, credentials)

        await self._transition(run, SyncState.DIFFING)
        detection = await self.detector.detect(run.vendor, run.scope, result.content)

        if not detection.changed:
            run.stats = SyncStats(
                total_rows=detection.previous_rows, skipped=detection.previous_rows
            )
            return SyncState.SKIPPED

        await self._transition(run, SyncState.RECONCILING)

        async def mark_committing() -> None:
            await self._transition(run, SyncState.COMMITTING)
            self._committing[run.run_id] = detection.fingerprint

        run.stats = await self.reconciler.reconcile(
            run.vendor,
            run.scope,
            detection.delta,
            snapshot=detection.snapshot,
            before_commit=mark_committing,
        )
        return SyncState.SUCCESS

    async def _credentials(self, schema: VendorSchema, scope: Scope) -> CredentialBag:
        if not schema.credentials:
            return CredentialBag(schema.code, scope, {})
        bag = await self.vault.get(schema.code, scope)
        missing = []
        for name in schema.required_fields:
            # Raises FieldDecryptError for a required field that is unreadable
            if name not in bag or not bag[name]:
                missing.append(name)
        if missing:
            raise CredentialSchemaError(
                f"Missing required credential field(s) for {schema.code}: "
                f"{', '.join(missing)}"
            )
        return bag

    async def _fetch(self, fetcher: FeedFetcher, credentials: CredentialBag) -> FetchResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.retry.max_attempts)),
            wait=wait_exponential(
                multiplier=self.retry.base_delay, max=self.retry.max_delay
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await fetcher.fetch(credentials)
        raise AssertionError("unreachable")

    # =========================================================================
    # Run bookkeeping
    # =========================================================================

    async def _transition(self, run: SyncRun, state: SyncState) -> None:
        if state not in TRANSITIONS[run.state]:
            raise RuntimeError(f"Invalid sync transition {run.state.value} -> {state.value}")
        previous = run.state
        run.state = state
        if state.terminal:
            run.finished_at = utcnow()
        if not await self.store.update_run(run):
            run.state = previous
            raise RunSuperseded()
        logger.debug(f"Sync {run.run_id}: {previous.value} -> {state.value}")

    async def _finish(self, run: SyncRun, state: SyncState) -> None:
        await self._transition(run, state)
        stats = run.stats
        logger.info(
            f"Sync {run.run_id} for {run.vendor} ({run.scope}) {state.value}: "
            f"processed={stats.processed} added={stats.added} updated={stats.updated} "
            f"removed={stats.removed} skipped={stats.skipped} failed={stats.failed}"
        )

    async def _interrupted(self, run: SyncRun, error: VendorSyncError) -> None:
        """Record a timed out or cancelled run.

        A run stopped after its transaction committed already changed the
        catalog, so it is recorded as a success.
        """
        fingerprint = self._committing.get(run.run_id)
        if run.state == SyncState.COMMITTING and fingerprint is not None:
            snapshot = await self.store.get_snapshot(run.vendor, run.scope)
            if snapshot is not None and snapshot.fingerprint == fingerprint:
                logger.warning(
                    f"Sync {run.run_id} for {run.vendor} ({run.scope}) was interrupted "
                    f"after commit: {error}"
                )
                try:
                    await self._finish(run, SyncState.SUCCESS)
                except RunSuperseded:
                    logger.warning(f"Sync {run.run_id} was reset before it could record success")
                return
        await self._fail(run, error)

    async def _fail(self, run: SyncRun, error: VendorSyncError) -> None:
        if run.state.terminal:
            return
        if isinstance(error, RunSuperseded):
            logger.warning(f"Sync {run.run_id} for {run.vendor} ({run.scope}) was reset")
            return
        run.error = error.user_message
        try:
            await self._transition(run, SyncState.FAILED)
        except RunSuperseded:
            logger.warning(f"Sync {run.run_id} was reset before it could record failure")
        logger.error(f"Sync {run.run_id} for {run.vendor} ({run.scope}) failed: {error}")

    # =========================================================================
    # Status and operator actions
    # =========================================================================

    async def status(self, vendor: str, scope: Scope | str) -> SyncStatus:
        scope = Scope.parse(scope)
        run = await self.store.get_run(vendor, scope)
        if run is None:
            return SyncStatus(vendor=vendor, scope=scope, state=SyncState.IDLE)
        return self._status_of(run)

    @staticmethod
    def _status_of(run: SyncRun) -> SyncStatus:
        return SyncStatus(
            vendor=run.vendor,
            scope=run.scope,
            state=run.state if run.in_progress else SyncState.IDLE,
            last_run_at=run.finished_at or run.started_at,
            last_outcome=run.state if run.state.terminal else None,
            stats=run.stats,
            last_error=run.error,
        )

    async def list_status(self) -> List[SyncStatus]:
        """Status for every pair that has run or is scheduled."""
        statuses = {
            (run.vendor, run.scope.key): self._status_of(run)
            for run in await self.store.list_runs()
        }
        for schema in self.catalog:
            for schedule in schema.schedules:
                scope = Scope.parse(schedule.scope)
                statuses.setdefault(
                    (schema.code, scope.key),
                    SyncStatus(vendor=schema.code, scope=scope, state=SyncState.IDLE),
                )
        return [statuses[key] for key in sorted(statuses)]

    async def reset(
        self, vendor: str, scope: Scope | str, *, force: bool = False
    ) -> Optional[SyncRun]:
        """Mark a stuck run failed so the pair can be triggered again.

        Returns the reset run, or None when nothing is in progress.

        Raises:
            AlreadyRunning: the run is younger than max_run_duration and
                ``force`` is not set.
        """
        scope = Scope.parse(scope)
        run = await self.store.get_run(vendor, scope)
        if run is None or not run.in_progress:
            return None
        if not force and run.age_seconds() <= self.max_run_duration:
            raise AlreadyRunning(vendor, scope.key, run.run_id)

        run.error = RESET_MESSAGE
        await self._transition(run, SyncState.FAILED)
        logger.warning(
            f"Sync {run.run_id} for {vendor} ({scope}) reset after "
            f"{run.age_seconds():.0f}s"
        )
        return run


__all__ = ["SyncOrchestrator", "RunSuperseded", "GENERIC_FAILURE", "RESET_MESSAGE"]
