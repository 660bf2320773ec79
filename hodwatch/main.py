"""Command-line entry point: one process per component.

Usage::

    hodwatch snapshots          # bulk snapshot ingestor, every 15 s
    hodwatch metadata [--limit N]
    hodwatch stream             # live trade streamer
    hodwatch scan               # HOD scanner, every 5 s
    hodwatch low-float          # low-float watch-list filter, every 15 s
    hodwatch avg-volume [--limit N]
    hodwatch news
    hodwatch ipos
    hodwatch init-db

Perpetual components stop cleanly on SIGINT/SIGTERM. A missing or invalid
configuration exits with status 2 before anything connects.
"""

import argparse
import asyncio
import signal
import sys
from typing import Protocol

from loguru import logger
from pydantic import ValidationError

from hodwatch.config.settings import Settings, get_settings
from hodwatch.data.polygon import PolygonClient
from hodwatch.data.streaming import LiveTradeStreamer
from hodwatch.database.connection import dispose_engine, get_async_engine, init_db
from hodwatch.database.store import Store
from hodwatch.ingest.avg_volume import AvgVolumeCalculator
from hodwatch.ingest.ipos import IpoIngestor
from hodwatch.ingest.low_float import LowFloatFilter
from hodwatch.ingest.metadata import MetadataIngestor
from hodwatch.ingest.news import NewsIngestor
from hodwatch.ingest.snapshot import SnapshotIngestor
from hodwatch.monitoring.logger import setup_logging
from hodwatch.scanner.hod_scanner import HodScanner
from hodwatch.scheduler import FixedIntervalLoop

EXIT_CONFIG_ERROR = 2


class Stoppable(Protocol):
    async def shutdown(self) -> None: ...


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hodwatch",
        description="Market-data ingestion and high-of-day alerting services",
    )
    sub = parser.add_subparsers(dest="component", required=True)
    sub.add_parser("snapshots", help="Poll the bulk snapshot endpoint into market_data")
    metadata = sub.add_parser("metadata", help="Fetch reference data into ticker_metadata")
    metadata.add_argument("--limit", type=int, default=None, help="Process at most N symbols")
    sub.add_parser("stream", help="Stream live trades into market_data")
    sub.add_parser("scan", help="Scan the low-float watch-list for new intraday highs")
    sub.add_parser("low-float", help="Rebuild the low-float watch-list from market_data")
    avg_volume = sub.add_parser(
        "avg-volume", help="Compute average daily volume for the low-float watch-list"
    )
    avg_volume.add_argument("--limit", type=int, default=None, help="Process at most N symbols")
    sub.add_parser("news", help="Fetch ticker-tagged news")
    sub.add_parser("ipos", help="Fetch recent and upcoming IPO listings")
    sub.add_parser("init-db", help="Create all tables")
    return parser


def handle_signals(component: Stoppable, loop: asyncio.AbstractEventLoop) -> None:
    """Set up signal handlers for graceful shutdown."""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        asyncio.run_coroutine_threadsafe(component.shutdown(), loop)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


# ----------------------------------------------------------------------
# Component runners
# ----------------------------------------------------------------------


async def run_loop(loop_runner: FixedIntervalLoop) -> None:
    handle_signals(loop_runner, asyncio.get_running_loop())
    await loop_runner.run()


async def run_snapshots(settings: Settings, store: Store) -> None:
    async with PolygonClient() as client:
        ingestor = SnapshotIngestor(store, client)
        await run_loop(
            FixedIntervalLoop("snapshots", ingestor.run_cycle, settings.snapshot_interval_seconds)
        )


async def run_metadata(store: Store, limit: int | None) -> None:
    async with PolygonClient() as client:
        total = await MetadataIngestor(store, client).run(limit=limit)
    logger.info(f"Metadata job finished: {total} tickers upserted")


async def run_stream(store: Store) -> None:
    streamer = LiveTradeStreamer(store)
    handle_signals(streamer, asyncio.get_running_loop())
    try:
        await streamer.run()
    finally:
        logger.info(f"Trade stream health: {streamer.get_health_status()}")


async def run_scan(settings: Settings, store: Store) -> None:
    scanner = HodScanner(store, restart_policy=settings.hod_restart_policy)
    await scanner.prepare()
    await run_loop(FixedIntervalLoop("scan", scanner.run_cycle, settings.hod_scan_interval_seconds))
    logger.info(
        f"HOD scanner stopped: {scanner.alerts_emitted} alerts stored, "
        f"{scanner.alerts_lost} lost, {len(scanner.high_water_marks)} marks held"
    )


async def run_low_float(settings: Settings, store: Store) -> None:
    low_float = LowFloatFilter(store)
    await run_loop(
        FixedIntervalLoop("low-float", low_float.run_cycle, settings.low_float_interval_seconds)
    )


async def run_avg_volume(store: Store, limit: int | None) -> None:
    async with PolygonClient() as client:
        processed, updated, errors = await AvgVolumeCalculator(store, client).run(limit=limit)
    logger.info(
        f"Average volume job finished. Processed: {processed}, updated: {updated}, "
        f"errors: {errors}"
    )


async def run_news(store: Store) -> None:
    async with PolygonClient() as client:
        fetched, with_tickers, saved = await NewsIngestor(store, client).run()
    logger.info(
        f"News job finished. Fetched: {fetched}, with tickers: {with_tickers}, saved: {saved}"
    )


async def run_ipos(store: Store) -> None:
    async with PolygonClient() as client:
        fetched, saved, updated = await IpoIngestor(store, client).run()
    logger.info(f"IPO job finished. Fetched: {fetched}, saved: {saved}, updated: {updated}")


async def dispatch(args: argparse.Namespace, settings: Settings) -> None:
    if args.component == "init-db":
        await init_db()
        logger.info("Database tables created")
        return

    store = Store(get_async_engine())
    if args.component == "snapshots":
        await run_snapshots(settings, store)
    elif args.component == "metadata":
        await run_metadata(store, args.limit)
    elif args.component == "stream":
        await run_stream(store)
    elif args.component == "scan":
        await run_scan(settings, store)
    elif args.component == "low-float":
        await run_low_float(settings, store)
    elif args.component == "avg-volume":
        await run_avg_volume(store, args.limit)
    elif args.component == "news":
        await run_news(store)
    elif args.component == "ipos":
        await run_ipos(store)
    else:
        raise ValueError(f"Unknown component: {args.component}")


def load_settings() -> Settings:
    """Load settings, exiting with status 2 when the configuration is invalid."""
    try:
        return get_settings()
    except ValidationError as e:
        missing = ", ".join(str(err["loc"][0]).upper() for err in e.errors() if err["loc"])
        logger.error(f"Invalid configuration ({missing or 'see details'}): {e}")
        sys.exit(EXIT_CONFIG_ERROR)


async def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = load_settings()
    setup_logging(component=args.component)

    logger.info("=" * 60)
    logger.info(f"HODWATCH - {args.component}")
    logger.info(f"Polygon REST: {settings.polygon_base_url}")
    logger.info("=" * 60)

    try:
        await dispatch(args, settings)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        await dispose_engine()


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
