"""Staleness and retention sweeps."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from listing_recon import metrics
from listing_recon.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    expired: int = 0
    archived: int = 0


async def archive_stale(
    repository,
    now: Optional[datetime] = None,
    stale_after_days: Optional[int] = None,
    archive_after_days: Optional[int] = None,
    dry_run: bool = False,
) -> ArchiveResult:
    """
    Expire listings past the staleness window and archive rows past retention.

    Args:
        repository: ListingRepository
        now: Reference time (naive UTC)
        stale_after_days: Available listings older than this become expired
        archive_after_days: Listings older than this move to the archive table
        dry_run: Log the cutoffs without writing

    Returns:
        ArchiveResult with expired and archived counts
    """
    now = now or datetime.utcnow()
    stale_cutoff = now - timedelta(days=stale_after_days or settings.stale_after_days)
    archive_cutoff = now - timedelta(days=archive_after_days or settings.archive_after_days)

    if dry_run:
        logger.info(
            f"Dry run: would expire listings before {stale_cutoff.isoformat()} "
            f"and archive listings before {archive_cutoff.isoformat()}"
        )
        return ArchiveResult()

    result = ArchiveResult()
    result.expired = await repository.expire_stale(stale_cutoff)
    result.archived = await repository.archive_older_than(archive_cutoff)

    metrics.sweep_rows_total.labels(sweep="expire").inc(result.expired)
    metrics.sweep_rows_total.labels(sweep="archive").inc(result.archived)
    logger.info(f"Archive sweep: {result.expired} expired, {result.archived} archived")
    return result
