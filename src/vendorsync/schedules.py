"""
Scheduled vendor syncs.

Each ``[[vendor.schedules]]`` entry in a vendor TOML becomes one APScheduler
cron job for its (vendor, scope). A scheduled tick that finds the pair
already running is logged and dropped; it is never queued. A second job
periodically reports stuck runs (it does not reset them).

Usage:
    # CLI
    python -m vendorsync schedule list
    python -m vendorsync schedule run

    # Python
    scheduler = SyncScheduler(orchestrator)
    scheduler.start()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .errors import AlreadyRunning, VendorSyncError
from .jobs.stuck import find_stuck_runs
from .models import Scope, TriggerSource
from .vendors.config import VendorCatalog

logger = logging.getLogger(__name__)

STUCK_CHECK_JOB_ID = "stuck-run-check"


@dataclass
class ScheduleConfig:
    """One cron schedule for a (vendor, scope)."""

    schedule_id: str
    vendor: str
    scope: Scope
    cron: str
    description: str = ""


def build_schedules(catalog: VendorCatalog) -> List[ScheduleConfig]:
    """Enabled schedules declared by every vendor in the catalog."""
    schedules = []
    for schema in catalog:
        for spec in schema.schedules:
            if not spec.enabled:
                continue
            scope = Scope.parse(spec.scope)
            schedules.append(
                ScheduleConfig(
                    schedule_id=f"sync:{schema.code}:{scope.key}",
                    vendor=schema.code,
                    scope=scope,
                    cron=spec.cron,
                    description=f"Sync {schema.name} ({scope.key})",
                )
            )
    return schedules


class SyncScheduler:
    """Runs scheduled syncs in-process with APScheduler."""

    def __init__(
        self,
        orchestrator,
        *,
        stuck_check_interval: Optional[int] = 900,
        timezone: str = "UTC",
    ):
        self.orchestrator = orchestrator
        self.stuck_check_interval = stuck_check_interval
        self.timezone = timezone
        self.scheduler = AsyncIOScheduler(timezone=timezone)

    def add_schedule(self, schedule: ScheduleConfig) -> None:
        self.scheduler.add_job(
            self._run_sync,
            trigger=CronTrigger.from_crontab(schedule.cron, timezone=self.timezone),
            args=[schedule.vendor, schedule.scope.key],
            id=schedule.schedule_id,
            name=schedule.description,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"Scheduled {schedule.schedule_id}: {schedule.cron}")

    def load(self) -> int:
        """Register every schedule from the orchestrator's vendor catalog."""
        schedules = build_schedules(self.orchestrator.catalog)
        for schedule in schedules:
            self.add_schedule(schedule)

        if self.stuck_check_interval:
            self.scheduler.add_job(
                self._check_stuck,
                trigger=IntervalTrigger(seconds=self.stuck_check_interval),
                id=STUCK_CHECK_JOB_ID,
                name="Report stuck sync runs",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        return len(schedules)

    def start(self) -> None:
        """Load schedules and start the scheduler (needs a running loop)."""
        count = self.load()
        self.scheduler.start()
        logger.info(f"Sync scheduler started with {count} vendor schedule(s)")

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Sync scheduler stopped")

    def list_jobs(self) -> List[dict]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "trigger": str(job.trigger),
                "next_run_time": getattr(job, "next_run_time", None),
            }
            for job in self.scheduler.get_jobs()
        ]

    async def _run_sync(self, vendor: str, scope: str) -> None:
        try:
            run = await self.orchestrator.trigger(vendor, scope, TriggerSource.SCHEDULED)
        except AlreadyRunning as e:
            logger.warning(f"Scheduled sync skipped: {e.user_message}")
            return
        except VendorSyncError as e:
            logger.error(f"Scheduled sync for {vendor} ({scope}) not started: {e}")
            return
        logger.info(f"Scheduled sync {run.run_id} for {vendor} ({scope}): {run.state.value}")

    async def _check_stuck(self) -> None:
        stuck = await find_stuck_runs(
            self.orchestrator.store, self.orchestrator.max_run_duration
        )
        for run in stuck:
            logger.warning(
                f"Sync {run.run_id} for {run.vendor} ({run.scope}) stuck in "
                f"{run.state.value} for {run.age_seconds():.0f}s; reset required"
            )


# CLI entry point
async def run_scheduler(orchestrator, stuck_check_interval: Optional[int] = 900) -> None:
    """Run the scheduler until cancelled or interrupted."""
    scheduler = SyncScheduler(orchestrator, stuck_check_interval=stuck_check_interval)
    scheduler.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await scheduler.stop()


__all__ = ["ScheduleConfig", "SyncScheduler", "build_schedules", "run_scheduler"]
