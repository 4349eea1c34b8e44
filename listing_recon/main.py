"""Command-line entry point for aggregation runs."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from listing_recon.db.session import engine, init_db
from listing_recon.ingest.registry import SourceRegistry
from listing_recon.logging_config import setup_logging
from listing_recon.worker.aggregator import Aggregator
from listing_recon.worker.scheduler import setup_scheduler

logger = logging.getLogger(__name__)


def parse_sources(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [name.strip() for name in value.split(",") if name.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile marketplace listings against the component catalog")
    parser.add_argument(
        "--sources",
        default=None,
        help=f"Comma-separated source names (default: all of {','.join(SourceRegistry.list_sources())})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Match and validate without writing to the database",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Keep running and aggregate on the configured interval",
    )
    return parser


async def run_once(sources: Optional[List[str]], dry_run: bool) -> int:
    await init_db()
    aggregator = Aggregator()
    try:
        summary = await aggregator.run(sources, dry_run=dry_run, trigger="manual")
    finally:
        await aggregator.run_lock.close()
        await SourceRegistry.cleanup()
        await engine.dispose()
    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if summary.succeeded else 1


async def run_scheduled(sources: Optional[List[str]]) -> int:
    await init_db()
    aggregator = Aggregator()
    scheduler = setup_scheduler(aggregator, sources)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    scheduler.start()
    logger.info("Scheduler started")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        aggregator.cancel()
        scheduler.shutdown(wait=False)
        await aggregator.run_lock.close()
        await SourceRegistry.cleanup()
        await engine.dispose()
        logger.info("Shutdown complete")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    sources = parse_sources(args.sources)

    if args.schedule:
        return asyncio.run(run_scheduled(sources))
    return asyncio.run(run_once(sources, args.dry_run))


if __name__ == "__main__":
    sys.exit(main())
