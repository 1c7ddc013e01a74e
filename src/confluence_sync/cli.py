"""Command line entry point: ``confluence-sync``."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from . import __version__
from .bootstrap import SyncContext, logging_settings, sync_lifespan
from .config import parse_space_keys
from .config_loader import ensure_config
from .core.async_utils import run_sync
from .errors import ConfluenceSyncError
from .logger import setup_logging
from .sync.models import SyncOptions
from .sync.reporter import (
    format_drift_report,
    format_run_history,
    format_run_report,
    report_to_json,
)

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_sync(ctx: SyncContext, args: argparse.Namespace) -> int:
    """Run one sync pass; exit 1 only when the run itself failed."""
    keys = parse_space_keys(args.collections) or None
    if not (keys or ctx.config.space_keys):
        _stderr_print(
            "ERROR: No spaces to sync. Set CONFLUENCE_SPACE_KEYS or pass "
            "--collections."
        )
        return 1

    options = SyncOptions(
        force_full_sync=args.force_full, collection_keys=keys
    )
    result = await ctx.orchestrator().run(options)

    if args.json:
        print(json.dumps(report_to_json(result), indent=2))
    else:
        print(format_run_report(result))
    return 0 if result.success else 1


async def cmd_status(ctx: SyncContext, args: argparse.Namespace) -> int:
    """Show the last run, recent history and stalled runs."""
    last = ctx.ledger.last_run()
    stats = await run_sync(ctx.artifacts.stats)

    print(f"Records: {ctx.store.count()}")
    print(
        f"Artifacts: {stats['total_files']} files, "
        f"{stats['total_size_mb']} MB in {stats['content_dir']}"
    )
    index_ref = ctx.store.get_index_ref()
    if index_ref is not None:
        print(f"Index: {index_ref.display_name} ({index_ref.name})")
    if last is not None:
        print(
            f"Last run: #{last.id} {last.status.value} "
            f"(started {last.started_at})"
        )
    print()
    print(format_run_history(ctx.ledger.history(limit=args.limit)))

    stalled = ctx.ledger.stalled_runs()
    if stalled:
        print()
        print(
            f"WARNING: {len(stalled)} run(s) still marked running: "
            + ", ".join(f"#{r.id}" for r in stalled)
        )
    return 0


async def cmd_drift(ctx: SyncContext, args: argparse.Namespace) -> int:
    """Report record/artifact drift and optionally delete orphans."""
    report = await run_sync(ctx.detector.find_artifact_drift)
    print(format_drift_report(report))

    if args.clean_orphans and report.orphaned_artifacts:
        removed = 0
        for location in report.orphaned_artifacts:
            if ctx.artifacts.delete(location):
                removed += 1
        print()
        print(f"Removed {removed} orphaned artifacts.")
    return 0


async def cmd_test_connection(
    ctx: SyncContext, args: argparse.Namespace
) -> int:
    """Check that the Confluence API answers with the configured account."""
    ok = await run_sync(ctx.client.test_connection)
    if ok:
        print(f"Connected to {ctx.config.confluence_base_url}")
        return 0
    _stderr_print(
        f"ERROR: Cannot connect to {ctx.config.confluence_base_url}. "
        "Check CONFLUENCE_BASE_URL, CONFLUENCE_EMAIL, CONFLUENCE_API_TOKEN."
    )
    return 1


COMMANDS = {
    "sync": cmd_sync,
    "status": cmd_status,
    "drift": cmd_drift,
    "test-connection": cmd_test_connection,
}


async def main(
    args: argparse.Namespace,
    config_overrides: dict[str, Any] | None = None,
) -> int:
    async with sync_lifespan(config_overrides) as ctx:
        return await COMMANDS[args.command](ctx, args)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="confluence-sync",
        description="Mirror Confluence spaces into Markdown files and a "
        "Gemini File Search store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Incremental sync of the configured spaces
  confluence-sync sync

  # Re-process every page of two spaces
  confluence-sync sync --force-full --collections DEV,OPS

  # Show the last runs and warn about abandoned ones
  confluence-sync status --limit 5

  # Find (and remove) artifacts no record points to
  confluence-sync drift --clean-orphans

  # Write a commented starter config to .confluence_sync/config.yml
  confluence-sync init-config
        """,
    )
    parser.add_argument(
        "--url",
        help="Override Confluence URL (takes precedence over "
        "CONFLUENCE_BASE_URL env var and config files)",
    )
    parser.add_argument(
        "--email",
        help="Override Confluence account email",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        help="Also append log records to this file",
    )
    parser.add_argument(
        "--debug-format",
        choices=["text", "json"],
        default="text",
        help="Log record format (default: text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"confluence-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run one sync pass")
    sync.add_argument(
        "--force-full",
        action="store_true",
        help="Process every page regardless of version",
    )
    sync.add_argument(
        "--collections",
        help="Comma-separated space keys (default: configured spaces)",
    )
    sync.add_argument(
        "--json",
        action="store_true",
        help="Print the run result as JSON",
    )

    status = sub.add_parser("status", help="Show run history")
    status.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Number of runs to show (default: 10)",
    )

    drift = sub.add_parser(
        "drift", help="Compare records with artifacts on disk"
    )
    drift.add_argument(
        "--clean-orphans",
        action="store_true",
        help="Delete artifacts no record references",
    )

    sub.add_parser("test-connection", help="Check Confluence access")
    sub.add_parser(
        "init-config", help="Write a starter config file if none exists"
    )
    return parser


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init-config":
        print(f"Config file: {ensure_config()}")
        sys.exit(0)

    file_logging = logging_settings()
    setup_logging(
        debug=args.debug,
        log_file=args.log_file or file_logging.file,
        debug_format=args.debug_format,
        level=file_logging.level,
    )

    config_overrides: dict[str, Any] = {}
    if args.url:
        config_overrides["base_url"] = args.url
    if args.email:
        config_overrides["email"] = args.email
    if args.debug:
        config_overrides["debug"] = True

    try:
        code = asyncio.run(main(args, config_overrides or None))
    except ValueError as e:
        _stderr_print(f"ERROR: Configuration error: {e}")
        sys.exit(1)
    except ConfluenceSyncError as e:
        _stderr_print(f"ERROR: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        _stderr_print("\nInterrupted.")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    run()
