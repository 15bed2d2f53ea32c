"""Stuck sync run detection and reset.

A run whose process died (deploy, OOM, lost connection) stays in an
in-progress state forever and blocks its (vendor, scope) pair. The
orchestrator never clears those by itself; this job lists them and, when
asked, resets them through ``SyncOrchestrator.reset``.

Usage:
    # From code
    from vendorsync.jobs.stuck import reset_stuck_runs

    result = await reset_stuck_runs(orchestrator, dry_run=True)

    # Standalone (CLI)
    python -m vendorsync.jobs.stuck --dry-run
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from ..errors import AlreadyRunning
from ..models import SyncRun, utcnow
from ..storage.base import SyncStore

logger = logging.getLogger(__name__)


async def find_stuck_runs(
    store: SyncStore,
    max_duration_sec: float,
    *,
    now: Optional[datetime] = None,
) -> List[SyncRun]:
    """In-progress runs older than ``max_duration_sec``, oldest first."""
    now = now or utcnow()
    stuck = [
        run
        for run in await store.list_runs()
        if run.in_progress and run.age_seconds(now) > max_duration_sec
    ]
    return sorted(stuck, key=lambda run: run.started_at)


async def reset_stuck_runs(
    orchestrator: Any,
    *,
    force: bool = False,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Reset stuck runs.

    Args:
        orchestrator: SyncOrchestrator whose store and limits are used.
        force: Reset every in-progress run regardless of age.
        dry_run: Only report what would be reset.

    Returns:
        Dict with the runs found, the runs reset, and the dry_run flag.
    """
    max_duration = 0.0 if force else orchestrator.max_run_duration
    stuck = await find_stuck_runs(orchestrator.store, max_duration)
    logger.info(
        "Stuck run check: %d run(s) in progress longer than %.0fs",
        len(stuck),
        max_duration,
    )

    reset: list[dict[str, Any]] = []
    for run in stuck:
        if dry_run:
            logger.info(
                "DRY RUN: would reset %s (%s) run %s, state=%s, age=%.0fs",
                run.vendor,
                run.scope,
                run.run_id,
                run.state.value,
                run.age_seconds(),
            )
            continue
        try:
            done = await orchestrator.reset(run.vendor, run.scope, force=force)
        except AlreadyRunning as e:
            logger.warning("Skipped reset of %s (%s): %s", run.vendor, run.scope, e)
            continue
        if done is not None:
            reset.append(done.to_dict())

    result = {
        "found": [run.to_dict() for run in stuck],
        "reset": reset,
        "dry_run": dry_run,
        "timestamp": utcnow().isoformat(),
    }
    logger.info("Stuck run check complete: found=%d reset=%d", len(stuck), len(reset))
    return result


# ── CLI entry point ──


async def _cli_main():
    """CLI entry point for the stuck run job."""
    import argparse

    parser = argparse.ArgumentParser(description="Find and reset stuck sync runs")
    parser.add_argument("--force", action="store_true", help="Reset all in-progress runs")
    parser.add_argument("--dry-run", action="store_true", help="Report only, no resets")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from ..sync.orchestrator import SyncOrchestrator

    orchestrator = SyncOrchestrator.from_config()
    await orchestrator.store.open()
    try:
        result = await reset_stuck_runs(orchestrator, force=args.force, dry_run=args.dry_run)
    finally:
        await orchestrator.store.close()

    import json

    print(json.dumps(result, indent=2))


def main():
    import asyncio

    asyncio.run(_cli_main())


if __name__ == "__main__":
    main()


__all__ = ["find_stuck_runs", "reset_stuck_runs"]
