"""Duplicate listing sweep.

Two kinds of duplicates are removed from the live listings table:

- exact duplicates: rows sharing (url, component_id); the newest row wins
- near duplicates: reposts of the same item under a different URL (same
  component, price within tolerance, same condition, same seller, similar
  title); the better-reputed seller's row wins, then the newer one

Bundle legs are only removed as exact duplicates.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from listing_recon import metrics
from listing_recon.config import settings

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"[a-z0-9]+")


def title_words(title: Optional[str]) -> set:
    return set(_WORD_PATTERN.findall((title or "").lower()))


def title_overlap(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard overlap of the two titles' word sets."""
    words_a = title_words(a)
    words_b = title_words(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def prices_close(a: Optional[int], b: Optional[int], tolerance: float) -> bool:
    if a is None or b is None:
        return a is None and b is None
    high = max(a, b)
    if high == 0:
        return True
    return abs(a - b) / high <= tolerance


def _same_text(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


def similarity_score(a, b, price_tolerance: Optional[float] = None) -> float:
    """
    Weighted similarity of two listings in [0, 1].

    Used for logging merge decisions; the duplicate rule itself is
    ``is_near_duplicate``.
    """
    tolerance = price_tolerance if price_tolerance is not None else settings.dedupe_price_tolerance
    score = 0.0
    if a.component_id is not None and a.component_id == b.component_id:
        score += 0.3
    if prices_close(a.price, b.price, tolerance):
        score += 0.2
    if _same_text(a.condition, b.condition):
        score += 0.1
    if a.seller and _same_text(a.seller, b.seller):
        score += 0.2
    score += title_overlap(a.title, b.title) * 0.2
    return round(min(score, 1.0), 3)


def is_near_duplicate(
    a,
    b,
    price_tolerance: Optional[float] = None,
    min_title_overlap: Optional[float] = None,
) -> bool:
    tolerance = price_tolerance if price_tolerance is not None else settings.dedupe_price_tolerance
    overlap = min_title_overlap if min_title_overlap is not None else settings.dedupe_title_overlap
    if a.url == b.url:
        return False
    if a.component_id is None or a.component_id != b.component_id:
        return False
    if not a.seller or not _same_text(a.seller, b.seller):
        return False
    return (
        prices_close(a.price, b.price, tolerance)
        and _same_text(a.condition, b.condition)
        and title_overlap(a.title, b.title) >= overlap
    )


def _recency_key(listing):
    return (listing.created_at, listing.id)


def choose_better_listing(a, b):
    """Higher seller reputation wins; ties go to the newer listing."""
    if (a.seller_reputation or 0) != (b.seller_reputation or 0):
        return a if (a.seller_reputation or 0) > (b.seller_reputation or 0) else b
    return a if _recency_key(a) >= _recency_key(b) else b


@dataclass
class DedupePlan:
    url_duplicate_ids: List[int] = field(default_factory=list)
    near_duplicate_ids: List[int] = field(default_factory=list)

    @property
    def ids(self) -> List[int]:
        return sorted(set(self.url_duplicate_ids) | set(self.near_duplicate_ids))

    def __len__(self) -> int:
        return len(self.ids)


def plan_dedupe(listings: Iterable) -> DedupePlan:
    """
    Decide which rows to delete.

    Args:
        listings: Live listing rows (objects with the listing columns)

    Returns:
        DedupePlan naming the ids to remove
    """
    plan = DedupePlan()

    newest = {}
    for listing in listings:
        key = (listing.url, listing.component_id)
        current = newest.get(key)
        if current is None:
            newest[key] = listing
        elif _recency_key(listing) > _recency_key(current):
            plan.url_duplicate_ids.append(current.id)
            newest[key] = listing
        else:
            plan.url_duplicate_ids.append(listing.id)

    by_component = {}
    for listing in newest.values():
        if listing.component_id is not None and not listing.is_bundle:
            by_component.setdefault(listing.component_id, []).append(listing)

    removed = set()
    for group in by_component.values():
        group.sort(key=lambda row: row.id)
        for i, first in enumerate(group):
            if first.id in removed:
                continue
            for second in group[i + 1 :]:
                if second.id in removed or not is_near_duplicate(first, second):
                    continue
                keep = choose_better_listing(first, second)
                drop = second if keep is first else first
                logger.debug(
                    f"Near duplicate: keeping {keep.id}, dropping {drop.id} "
                    f"(similarity {similarity_score(first, second)})"
                )
                removed.add(drop.id)
                if drop is first:
                    break

    plan.near_duplicate_ids = sorted(removed)
    return plan


async def dedupe_listings(repository, dry_run: bool = False) -> int:
    """
    Remove duplicate rows from the live listings table.

    Returns:
        Number of rows removed (or that would be removed in dry-run)
    """
    listings: Sequence = await repository.available_listings()
    plan = plan_dedupe(listings)
    if not plan.ids:
        return 0

    logger.info(
        f"Dedup sweep: {len(plan.url_duplicate_ids)} URL duplicates, "
        f"{len(plan.near_duplicate_ids)} near duplicates"
        + (" (dry run)" if dry_run else "")
    )
    if dry_run:
        return len(plan)

    removed = await repository.delete_listings(plan.ids)
    metrics.sweep_rows_total.labels(sweep="dedupe").inc(removed)
    return removed
