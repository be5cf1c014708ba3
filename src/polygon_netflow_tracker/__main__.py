"""Command-line entry point.

Usage::

    polygon-netflow run       # poll until SIGINT/SIGTERM
    polygon-netflow once      # run a single ingest + aggregate cycle
    polygon-netflow show      # print the net_flow table
    polygon-netflow init-db   # create tables without Alembic
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from polygon_netflow_tracker.config import Settings, get_settings
from polygon_netflow_tracker.pipeline import Pipeline
from polygon_netflow_tracker.storage.database import DatabaseManager
from polygon_netflow_tracker.storage.store import PersistenceError, TransferStore
from polygon_netflow_tracker.watchlist import NATIVE_ASSET, TrackedAsset, WatchlistError, load_watchlist_file

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CYCLE_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polygon-netflow",
        description="Track net inflow/outflow of watched entities on Polygon.",
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Poll the ledger until interrupted")
    sub.add_parser("once", help="Run a single ingestion and aggregation cycle")
    sub.add_parser("show", help="Print per-entity net flow")
    sub.add_parser("init-db", help="Create database tables")
    return parser


def _configure_logging(settings: Settings, override: str | None) -> None:
    level = getattr(logging, override.upper(), None) if override else None
    logging.basicConfig(
        level=level if isinstance(level, int) else settings.get_logging_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def _run(settings: Settings) -> int:
    pipeline = Pipeline(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:
            logger.debug("Signal handlers are not supported on this platform; use Ctrl+C")
            break
    await pipeline.run()
    stats = pipeline.stats
    logger.info(
        "Exiting after %d cycles (%d failed), %d transfers inserted",
        stats.cycles_run,
        stats.cycles_failed,
        stats.transfers_inserted,
    )
    return EXIT_OK


async def _once(settings: Settings) -> int:
    pipeline = Pipeline(settings)
    result = await pipeline.run_once()
    if not result.succeeded:
        logger.error("Cycle failed in %s: %s", result.failed_in.value if result.failed_in else "?", result.error)
        return EXIT_CYCLE_FAILED
    return EXIT_OK


def _asset_labels(settings: Settings) -> dict[str, TrackedAsset]:
    assets: tuple[TrackedAsset, ...] = (NATIVE_ASSET,)
    if settings.watchlist.path is not None and settings.watchlist.path.exists():
        assets = load_watchlist_file(settings.watchlist.path).assets
    return {asset.address: asset for asset in assets}


async def _show(settings: Settings) -> int:
    labels = _asset_labels(settings)
    db = DatabaseManager(settings.database.url)
    try:
        entries = await TransferStore(db).list_net_flows()
    finally:
        await db.dispose_async()

    if not entries:
        print("No net flow recorded yet.")
        return EXIT_OK

    print(f"{'ENTITY':<24} {'ASSET':<12} {'NET FLOW':>32}  LAST UPDATED")
    for entry in entries:
        asset = labels.get(entry.asset_address)
        symbol = asset.symbol if asset else entry.asset_address[:10]
        print(
            f"{entry.entity_name:<24} {symbol:<12} {entry.cumulative_amount:>32}  "
            f"{entry.last_updated.isoformat()}"
        )
    return EXIT_OK


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    return EXIT_OK


_COMMANDS = {
    "run": _run,
    "once": _once,
    "show": _show,
    "init-db": _init_db,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    _configure_logging(settings, args.log_level)
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        settings.validate_requirements(command=args.command)
        return asyncio.run(_COMMANDS[args.command](settings))
    except (ValueError, WatchlistError) as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR
    except PersistenceError as e:
        logger.error("Storage error: %s", e)
        return EXIT_CYCLE_FAILED


if __name__ == "__main__":
    sys.exit(main())
