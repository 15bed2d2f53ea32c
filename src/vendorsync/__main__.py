"""vendorsync command line.

Run a sync now:
    python -m vendorsync sync bill_hicks --scope global
    python -m vendorsync sync --all

Inspect and operate:
    python -m vendorsync status
    python -m vendorsync reset bill_hicks --scope tenant:42 --force
    python -m vendorsync stuck --dry-run

Scheduler (long-running):
    python -m vendorsync schedule run

Credentials and vendor priority:
    python -m vendorsync credentials set bill_hicks host=ftp.example.com password=...
    python -m vendorsync priority set global firearms bill_hicks sports_south
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable

from dotenv import load_dotenv

logger = logging.getLogger("vendorsync")


def setup_logging(level: str = "INFO"):
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_fields(pairs: list[str]) -> dict[str, str]:
    fields = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise SystemExit(f"Expected field=value, got {pair!r}")
        fields[name.strip()] = value
    return fields


# =========================================================================
# Commands
# =========================================================================


async def cmd_sync(orchestrator, args) -> int:
    from .schedules import build_schedules

    if args.all:
        pairs = [(s.vendor, s.scope) for s in build_schedules(orchestrator.catalog)]
    elif args.vendor:
        pairs = [(args.vendor, args.scope)]
    else:
        raise SystemExit("Give a vendor code or --all")

    results = await orchestrator.trigger_many(pairs)
    failed = False
    output = []
    for (vendor, scope), result in zip(pairs, results):
        if isinstance(result, BaseException):
            failed = True
            message = getattr(result, "user_message", None) or str(result)
            output.append({"vendor": vendor, "scope": str(scope), "error": message})
        else:
            failed = failed or result.state.value == "failed"
            output.append(result.to_dict())
    _print(output)
    return 1 if failed else 0


async def cmd_status(orchestrator, args) -> int:
    if args.vendor:
        statuses = [await orchestrator.status(args.vendor, args.scope)]
    else:
        statuses = await orchestrator.list_status()
    _print([s.to_dict() for s in statuses])
    return 0


async def cmd_reset(orchestrator, args) -> int:
    run = await orchestrator.reset(args.vendor, args.scope, force=args.force)
    if run is None:
        print(f"No run in progress for {args.vendor} ({args.scope})")
        return 0
    _print(run.to_dict())
    return 0


async def cmd_stuck(orchestrator, args) -> int:
    from .jobs.stuck import reset_stuck_runs

    result = await reset_stuck_runs(orchestrator, force=args.force, dry_run=args.dry_run)
    _print(result)
    return 0


async def cmd_schedule(orchestrator, args) -> int:
    from .config import get_config
    from .schedules import build_schedules, run_scheduler

    if args.action == "list":
        _print(
            [
                {
                    "id": s.schedule_id,
                    "vendor": s.vendor,
                    "scope": s.scope.key,
                    "cron": s.cron,
                }
                for s in build_schedules(orchestrator.catalog)
            ]
        )
        return 0

    await run_scheduler(orchestrator, get_config().stuck_check_interval_sec)
    return 0


async def cmd_credentials(orchestrator, args) -> int:
    from .models import Scope

    vault = orchestrator.vault
    scope = Scope.parse(args.scope)

    if args.action == "set":
        written = await vault.put(args.vendor, scope, _parse_fields(args.fields))
        _print({"vendor": args.vendor, "scope": scope.key, "updated": written})
    elif args.action == "show":
        bag = await vault.get(args.vendor, scope)
        _print(bag.masked())
    elif args.action == "missing":
        _print(await vault.missing_required(args.vendor, scope))
    elif args.action == "rotate":
        count = await vault.rotate(args.vendor, scope)
        _print({"vendor": args.vendor, "scope": scope.key, "rotated": count})
    return 0


async def cmd_priority(orchestrator, args) -> int:
    from .models import Scope
    from .sync.priority import resequence, validate_priority_entries

    cache = orchestrator.priorities
    if args.action == "show":
        _print(await cache.get(Scope.parse(args.scope), args.category))
        return 0
    if args.action == "set":
        await cache.update(Scope.parse(args.scope), args.category, args.vendors)
        _print(await cache.get(Scope.parse(args.scope), args.category))
        return 0

    entries = await orchestrator.store.list_priorities()
    validation = validate_priority_entries(entries)
    _print({"valid": validation.valid, "issues": validation.issues})
    if validation.valid or not args.fix:
        return 0 if validation.valid else 1

    groups: dict[tuple, list] = {}
    for entry in resequence(entries):
        groups.setdefault((entry.scope, entry.category), []).append(entry.vendor)
    for (scope, category), vendors in groups.items():
        await cache.update(scope, category, vendors)
    logger.info(f"Resequenced {len(groups)} priority list(s)")
    return 0


# =========================================================================
# Entry point
# =========================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vendorsync", description="Differential vendor feed sync"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: VENDORSYNC_LOG_LEVEL or INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="Run a sync now")
    p.add_argument("vendor", nargs="?")
    p.add_argument("--scope", default="global", help="global or tenant:<id>")
    p.add_argument("--all", action="store_true", help="Every scheduled pair")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("status", help="Show sync status")
    p.add_argument("vendor", nargs="?")
    p.add_argument("--scope", default="global")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("reset", help="Reset a stuck run")
    p.add_argument("vendor")
    p.add_argument("--scope", default="global")
    p.add_argument("--force", action="store_true", help="Reset even if not yet stuck")
    p.set_defaults(func=cmd_reset)

    p = sub.add_parser("stuck", help="Find and reset stuck runs")
    p.add_argument("--force", action="store_true", help="Reset all in-progress runs")
    p.add_argument("--dry-run", action="store_true", help="Report only")
    p.set_defaults(func=cmd_stuck)

    p = sub.add_parser("schedule", help="Scheduled syncs")
    p.add_argument("action", choices=["list", "run"])
    p.set_defaults(func=cmd_schedule)

    p = sub.add_parser("credentials", help="Vendor credentials")
    p.add_argument("action", choices=["set", "show", "missing", "rotate"])
    p.add_argument("vendor")
    p.add_argument("fields", nargs="*", help="field=value pairs (set only)")
    p.add_argument("--scope", default="global")
    p.set_defaults(func=cmd_credentials)

    p = sub.add_parser("priority", help="Vendor priority per scope and category")
    p.add_argument("action", choices=["show", "set", "check"])
    p.add_argument("scope", nargs="?", default="global")
    p.add_argument("category", nargs="?", default="default")
    p.add_argument("vendors", nargs="*", help="Vendors, highest priority first (set)")
    p.add_argument("--fix", action="store_true", help="Resequence lists (check)")
    p.set_defaults(func=cmd_priority)

    return parser


async def _run(command: Callable[..., Awaitable[int]], args) -> int:
    from .sync.orchestrator import SyncOrchestrator

    orchestrator = SyncOrchestrator.from_config()
    await orchestrator.store.open()
    try:
        return await command(orchestrator, args)
    finally:
        await orchestrator.store.close()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    from .config import get_config
    from .errors import VendorSyncError

    setup_logging(args.log_level or get_config().log_level)

    try:
        return asyncio.run(_run(args.func, args))
    except VendorSyncError as e:
        logger.error(e.user_message)
        return 1
    except ValueError as e:
        logger.error(str(e))
        return 2
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
