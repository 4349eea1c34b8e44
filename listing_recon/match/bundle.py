"""Bundle (multi-item) listing decomposition."""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from listing_recon.match.catalog import CatalogEntry
from listing_recon.match.matcher import CatalogMatcher, MatchCandidate, Rejected
from listing_recon.normalize.price import extract_line_price, extract_price
from listing_recon.normalize.segments import Segment, split_segments

logger = logging.getLogger(__name__)


@dataclass
class BundleItem:
    """One distinct catalog component found in a listing."""

    entry: CatalogEntry
    segment: str
    score: float
    quantity: int = 1
    position: int = 1
    ambiguous: bool = False
    individual_price: Optional[int] = None
    candidate: Optional[MatchCandidate] = None


@dataclass
class BundleExtraction:
    """Result of decomposing a listing into catalog items."""

    items: List[BundleItem] = field(default_factory=list)
    bundle_id: Optional[str] = None
    total_price: Optional[int] = None
    segments: List[Segment] = field(default_factory=list)
    rejections: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def is_bundle(self) -> bool:
        return len(self.items) >= 2

    @property
    def matched(self) -> bool:
        return bool(self.items)

    @property
    def component_count(self) -> int:
        return len(self.items)


def generate_bundle_id(url: str, component_ids: List[int]) -> str:
    """Stable id for a listing's bundle: same URL and components give the same id."""
    key = f"{url}|{','.join(str(i) for i in sorted(component_ids))}"
    return f"bundle_{hashlib.sha1(key.encode('utf-8')).hexdigest()[:16]}"


def _merge_repeats(items: List[BundleItem]) -> List[BundleItem]:
    """Collapse repeated sightings of one catalog entry into a single item."""
    merged: List[BundleItem] = []
    by_id = {}
    for item in items:
        existing = by_id.get(item.entry.id)
        if existing is None:
            by_id[item.entry.id] = item
            merged.append(item)
            continue
        existing.quantity += item.quantity
        existing.ambiguous = existing.ambiguous or item.ambiguous
        if item.score > existing.score:
            existing.score = item.score
            existing.candidate = item.candidate
    return merged


def extract_bundle(
    title: str,
    body: str,
    source: str,
    matcher: CatalogMatcher,
    url: str = "",
) -> BundleExtraction:
    """
    Decompose a listing into matched catalog items.

    Args:
        title: Listing title
        body: Listing body (used for prices only)
        source: Source identifier
        matcher: Catalog matcher for this run
        url: Listing URL, keys the bundle id

    Returns:
        BundleExtraction; bundle_id is set only when two or more distinct
        components were found
    """
    segments = split_segments(title, source)
    full_text = f"{title}\n{body or ''}"
    total_price = extract_price(full_text)
    extraction = BundleExtraction(segments=segments, total_price=total_price)

    if len(segments) <= 1:
        result = matcher.match(title, title=title, source=source)
        if isinstance(result, Rejected):
            extraction.rejections.append((title, result.reason))
            return extraction
        candidate = result.candidate
        price = extract_line_price(body, candidate.entry.label) or total_price
        extraction.items.append(
            BundleItem(
                entry=candidate.entry,
                segment=title,
                score=candidate.score,
                ambiguous=result.ambiguous,
                individual_price=price,
                candidate=candidate,
            )
        )
        return extraction

    raw_items: List[BundleItem] = []
    for segment in segments:
        result = matcher.match(segment.text, title=title, source=source)
        if isinstance(result, Rejected):
            extraction.rejections.append((segment.text, result.reason))
            continue
        candidate = result.candidate
        raw_items.append(
            BundleItem(
                entry=candidate.entry,
                segment=segment.text,
                score=candidate.score,
                quantity=segment.quantity,
                ambiguous=result.ambiguous,
                candidate=candidate,
            )
        )

    items = _merge_repeats(raw_items)
    for position, item in enumerate(items, start=1):
        item.position = position

    if len(items) >= 2:
        extraction.bundle_id = generate_bundle_id(url, [item.entry.id for item in items])
        labels = [item.entry.label for item in items]
        for item in items:
            competing = [label for label in labels if label != item.entry.label]
            item.individual_price = extract_line_price(body, item.entry.label, competing)
        logger.info(
            f"Bundle {extraction.bundle_id}: {len(items)} components, total {total_price}"
        )
    elif items:
        item = items[0]
        item.individual_price = extract_line_price(body, item.entry.label) or total_price

    extraction.items = items
    return extraction
