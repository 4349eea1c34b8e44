"""APScheduler job definitions."""

import logging
from typing import Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from listing_recon.config import settings
from listing_recon.worker.aggregator import Aggregator

logger = logging.getLogger(__name__)


def setup_scheduler(
    aggregator: Aggregator,
    sources: Optional[Iterable[str]] = None,
    interval_minutes: Optional[int] = None,
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Args:
        aggregator: Aggregator used for every scheduled run
        sources: Sources to aggregate (defaults to all registered)
        interval_minutes: Run interval (defaults to settings.aggregation_interval_minutes)

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    interval = max(1, int(interval_minutes or settings.aggregation_interval_minutes))
    source_list = list(sources) if sources else None

    scheduler.add_job(
        aggregator.run,
        IntervalTrigger(minutes=interval),
        kwargs={"sources": source_list, "dry_run": False, "trigger": "scheduled"},
        id="listing_aggregation",
        name="Aggregate marketplace listings",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    logger.info(
        f"Scheduler configured: aggregation every {interval} minutes "
        f"(sources: {','.join(source_list) if source_list else 'all'})"
    )
    return scheduler
