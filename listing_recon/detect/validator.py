"""Post-match listing validation.

Checks run after a listing has been matched to a catalog entry. Each check
returns accept / flag / reject; the aggregate is the most severe of them.
Rejection is a result value: rejected listings are still persisted with
action "reject" so they stay auditable.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from listing_recon import metrics
from listing_recon.config import settings
from listing_recon.match.catalog import CatalogEntry, CatalogIndex

logger = logging.getLogger(__name__)

ACCEPT = "accept"
FLAG = "flag"
REJECT = "reject"

_SEVERITY = {ACCEPT: "info", FLAG: "warning", REJECT: "error"}
_RANK = {ACCEPT: 0, FLAG: 1, REJECT: 2}


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single validation check."""

    name: str
    action: str
    reason: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.action != REJECT

    @property
    def severity(self) -> str:
        return _SEVERITY[self.action]


@dataclass(frozen=True)
class ValidationResult:
    """Aggregate of all checks for one listing/component pair."""

    valid: bool
    severity: str
    reason: Optional[str]
    action: str
    checks: Tuple[CheckResult, ...] = ()

    @property
    def flags(self) -> List[Dict[str, str]]:
        """Non-accepting checks, shaped for the listing's JSON flags column."""
        return [
            {"check": c.name, "action": c.action, "reason": c.reason or ""}
            for c in self.checks
            if c.action != ACCEPT
        ]


@dataclass(frozen=True)
class CategoryConflict:
    category: str
    conflict_category: str
    keywords: Tuple[str, ...]
    exceptions: Tuple[str, ...] = ()


CATEGORY_CONFLICTS: Tuple[CategoryConflict, ...] = (
    CategoryConflict("headphone", "iem", (r"\biems?\b", r"\bin[\s-]ear\b")),
    CategoryConflict("iem", "headphone", (r"\bheadphones?\b", r"\bover[\s-]ear\b")),
    CategoryConflict(
        "dac", "amp", (r"\bamps?\b", r"\bamplifier\b"),
        exceptions=("dac/amp", "dac amp", "combo", "stack"),
    ),
    CategoryConflict(
        "amp", "dac", (r"\bdacs?\b",),
        exceptions=("dac/amp", "dac amp", "combo", "stack"),
    ),
)


def validate_price(
    price: Optional[float],
    price_new: Optional[float],
    is_bundle_leg: bool = False,
    bundle_total_price: Optional[float] = None,
) -> CheckResult:
    """
    Check a listing price against the catalog new price.

    Args:
        price: Extracted listing (or per-item) price
        price_new: Catalog reference new price
        is_bundle_leg: Listing row is one component of a bundle
        bundle_total_price: Bundle-level total, if known

    Returns:
        CheckResult named "price"
    """
    if is_bundle_leg and not price:
        note = "bundle component, individual price unknown"
        if bundle_total_price:
            note = f"bundle component of ${bundle_total_price:.0f} bundle"
        return CheckResult("price", ACCEPT, note)

    if not price:
        return CheckResult("price", FLAG, "price extraction failed")

    if not price_new:
        return CheckResult("price", ACCEPT, "no reference price")

    ratio = price / price_new
    pct = f"{ratio * 100:.0f}%"
    if ratio > settings.validation_reject_ratio:
        return CheckResult("price", REJECT, f"price too high: ${price:.0f} vs new ${price_new:.0f} ({pct})")
    if ratio > settings.validation_overpriced_ratio:
        return CheckResult("price", FLAG, f"potentially overpriced: ${price:.0f} vs new ${price_new:.0f} ({pct})")
    if ratio < settings.validation_underpriced_ratio:
        return CheckResult(
            "price", FLAG, f"unusually low: ${price:.0f} vs new ${price_new:.0f} ({pct}), possible accessory"
        )
    return CheckResult("price", ACCEPT)


def validate_category(text: str, category: str) -> CheckResult:
    """Reject when the listing text implies a different category than matched."""
    lowered = (text or "").lower()
    for conflict in CATEGORY_CONFLICTS:
        if conflict.category != category:
            continue
        if any(exc in lowered for exc in conflict.exceptions):
            continue
        for keyword in conflict.keywords:
            if re.search(keyword, lowered):
                return CheckResult(
                    "category",
                    REJECT,
                    f"category conflict: matched {category} but listing mentions {conflict.conflict_category}",
                )
    return CheckResult("category", ACCEPT)


def aggregate(checks: Sequence[CheckResult]) -> ValidationResult:
    """Reject if any check rejects, flag if any flags, else accept."""
    worst = max(checks, key=lambda c: _RANK[c.action]) if checks else None
    if worst is None or worst.action == ACCEPT:
        return ValidationResult(True, "info", None, ACCEPT, tuple(checks))
    reasons = "; ".join(c.reason or c.name for c in checks if c.action == worst.action)
    return ValidationResult(worst.valid, worst.severity, reasons, worst.action, tuple(checks))


def validate_listing(
    text: str,
    entry: CatalogEntry,
    price: Optional[float],
    is_bundle_leg: bool = False,
    bundle_total_price: Optional[float] = None,
) -> ValidationResult:
    """
    Run all post-match checks for one listing/component pair.

    Args:
        text: Listing title, or the item's segment for bundle legs
        entry: Matched catalog entry
        price: Price attributed to this item
        is_bundle_leg: Row belongs to a bundle
        bundle_total_price: Bundle-level total

    Returns:
        ValidationResult with the aggregate action
    """
    checks = (
        validate_price(price, entry.price_new, is_bundle_leg, bundle_total_price),
        validate_category(text, entry.category),
    )
    result = aggregate(checks)
    metrics.validation_actions_total.labels(action=result.action).inc()
    if result.action != ACCEPT:
        logger.info(f"Validation {result.action} for {entry.label}: {result.reason}")
    return result


# ----------------------------------------------------------------------------
# Re-validation of recent listings
# ----------------------------------------------------------------------------


@dataclass(frozen=True)
class UsedPriceCheck:
    valid: bool
    variance: Optional[int] = None
    warning: Optional[str] = None


def check_used_price(price: Optional[float], entry: Optional[CatalogEntry]) -> Optional[UsedPriceCheck]:
    """Compare a price with the entry's used range; None when there is nothing to compare."""
    if not price or entry is None or not entry.price_used_min or not entry.price_used_max:
        return None

    expected_min, expected_max = entry.price_used_min, entry.price_used_max
    expected_avg = (expected_min + expected_max) / 2
    variance = round((price - expected_avg) / expected_avg * 100)

    if price < expected_min * 0.2:
        return UsedPriceCheck(False, variance, "price unusually low, verify authenticity")
    if price > expected_max * 3:
        return UsedPriceCheck(False, variance, "price significantly above market value")
    if variance < -50:
        return UsedPriceCheck(True, variance, "well below typical used range")
    if variance > 100:
        return UsedPriceCheck(True, variance, "above typical range, may include extras")
    return UsedPriceCheck(True, variance)


@dataclass
class RevalidationSummary:
    checked: int = 0
    price_flagged: int = 0
    probed: int = 0
    deactivated: int = 0
    errors: List[str] = field(default_factory=list)


async def revalidate_recent(
    repository,
    catalog: CatalogIndex,
    url_checker=None,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> RevalidationSummary:
    """
    Re-check listings created inside the revalidation window.

    Re-runs the used-price sanity check and probes a deterministic sample
    of URLs; inaccessible listings are marked expired.

    Args:
        repository: ListingRepository
        catalog: Catalog index for this run
        url_checker: UrlChecker, or None to skip probing
        now: Reference time
        dry_run: Compute without writing

    Returns:
        RevalidationSummary
    """
    now = now or datetime.utcnow()
    since = now - timedelta(hours=settings.revalidate_window_hours)
    summary = RevalidationSummary()

    for listing in await repository.recent_listings(since):
        summary.checked += 1
        try:
            entry = catalog.get(listing.component_id) if listing.component_id else None
            check = check_used_price(listing.price, entry)
            if check is not None and check.warning:
                summary.price_flagged += 1
                if not dry_run:
                    await repository.add_flag(
                        listing.id,
                        {"check": "used_price", "action": FLAG if check.valid else REJECT, "reason": check.warning},
                    )

            if url_checker is not None and url_checker.in_sample(listing.url):
                summary.probed += 1
                if not await url_checker.is_accessible(listing.url):
                    summary.deactivated += 1
                    if not dry_run:
                        await repository.update_status(listing.url, "expired")
        except Exception as e:
            logger.error(f"Error revalidating listing {listing.id}: {e}", exc_info=True)
            summary.errors.append(f"revalidate {listing.id}: {e}")

    logger.info(
        f"Revalidated {summary.checked} listings: {summary.price_flagged} price warnings, "
        f"{summary.deactivated}/{summary.probed} probed URLs inaccessible"
    )
    return summary
