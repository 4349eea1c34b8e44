"""Listing signals: sold status, sell-post detection, location and condition."""

import re
from typing import Any, Dict, Mapping, Optional

EXCELLENT = "excellent"
VERY_GOOD = "very_good"
GOOD = "good"
FAIR = "fair"
PARTS_ONLY = "parts_only"

CONDITIONS = (EXCELLENT, VERY_GOOD, GOOD, FAIR, PARTS_ONLY)

# Per-source vocabularies for structured condition fields
CONDITION_MAPS: Dict[str, Dict[str, str]] = {
    "reddit_avexchange": {
        "mint": EXCELLENT,
        "like new": EXCELLENT,
        "like-new": EXCELLENT,
        "excellent": EXCELLENT,
        "very good": VERY_GOOD,
        "very-good": VERY_GOOD,
        "great": VERY_GOOD,
        "good": GOOD,
        "used": GOOD,
        "fair": FAIR,
        "worn": FAIR,
        "parts": PARTS_ONLY,
        "parts only": PARTS_ONLY,
        "for parts": PARTS_ONLY,
        "broken": PARTS_ONLY,
    },
    "reverb": {
        "brand new": EXCELLENT,
        "brand-new": EXCELLENT,
        "mint": EXCELLENT,
        "excellent": EXCELLENT,
        "very good": VERY_GOOD,
        "good": GOOD,
        "fair": FAIR,
        "poor": FAIR,
        "non functioning": PARTS_ONLY,
    },
    "head_fi": {
        "10/10": EXCELLENT,
        "9/10": EXCELLENT,
        "8/10": VERY_GOOD,
        "7/10": GOOD,
        "6/10": FAIR,
        "5/10": FAIR,
        "mint": EXCELLENT,
        "excellent": EXCELLENT,
        "very good": VERY_GOOD,
        "good": GOOD,
        "fair": FAIR,
        "parts": PARTS_ONLY,
    },
}

# Free-text keywords, checked in order (most specific first)
_TEXT_CONDITION_KEYWORDS = (
    (PARTS_ONLY, ("parts only", "for parts", "broken", "not working", "needs repair")),
    (VERY_GOOD, ("very good", "great condition", "near mint", "barely used")),
    (EXCELLENT, ("excellent", "mint", "like new", "brand new", "pristine", "bnib", "lnib")),
    (FAIR, ("fair condition", "some wear", "used condition", "worn")),
    (GOOD, ("good condition", "well maintained", "gently used")),
)

_SELL_INDICATORS = (
    "[wts]", "wts:", "want to sell", "for sale", "selling",
    "fs:", "price drop", "shipped", "obo",
)
_BUY_ONLY = re.compile(r"^\s*\[(?:wtb)\]", re.IGNORECASE)
_PRICE_HINT = re.compile(r"\$\d+")

_SOLD_FLAIR_WORDS = ("closed", "sold", "complete")
_SOLD_TITLE_MARKERS = ("[sold]", "(sold)", "sold to", " spf")
_SOLD_BODY_MARKERS = ("sold to", "**sold**", "~~sold~~")

_LOCATION_TAG = re.compile(r"\[([A-Z]{2,3}(?:-[A-Z]{2})?)\]")
_NON_LOCATION_TAGS = {"WTS", "WTB", "WTT", "FS", "FT"}


def is_sold(
    title: str,
    body: str = "",
    flair: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> bool:
    """
    Detect whether a listing has been marked sold.

    Args:
        title: Listing title
        body: Listing body
        flair: Source flair/label, if any
        metadata: Adapter metadata; an explicit ``sold`` flag wins

    Returns:
        True if any sold signal is present
    """
    if metadata and metadata.get("sold") is not None:
        return bool(metadata.get("sold"))

    flair_lower = (flair or "").lower()
    if any(word in flair_lower for word in _SOLD_FLAIR_WORDS):
        return True

    title_lower = (title or "").lower()
    if any(marker in title_lower for marker in _SOLD_TITLE_MARKERS):
        return True

    body_lower = (body or "").lower()
    return any(marker in body_lower for marker in _SOLD_BODY_MARKERS)


def is_sell_post(title: str) -> bool:
    """True for posts offering items for sale (not want-to-buy posts)."""
    if not title or _BUY_ONLY.match(title):
        return False
    title_lower = title.lower()
    return any(indicator in title_lower for indicator in _SELL_INDICATORS) or bool(
        _PRICE_HINT.search(title)
    )


def extract_location(title: str) -> Optional[str]:
    """Return the first region tag ("US-CA", "EU") in a title, or None."""
    for match in _LOCATION_TAG.finditer(title or ""):
        code = match.group(1)
        if code not in _NON_LOCATION_TAGS:
            return code
    return None


def map_condition(condition: Optional[str], source: str = "reddit_avexchange") -> Optional[str]:
    """
    Map a source condition label onto the standard condition set.

    Args:
        condition: Raw condition string from the source
        source: Source identifier selecting the vocabulary

    Returns:
        Standard condition, or None when no condition was given
    """
    if not condition:
        return None

    normalized = condition.lower().strip()
    source_map = CONDITION_MAPS.get(source, CONDITION_MAPS["reddit_avexchange"])
    if normalized in source_map:
        return source_map[normalized]

    if "parts" in normalized or "broken" in normalized:
        return PARTS_ONLY
    if "very good" in normalized or "great" in normalized:
        return VERY_GOOD
    if "mint" in normalized or "new" in normalized or "excellent" in normalized:
        return EXCELLENT
    if "good" in normalized:
        return GOOD
    if "fair" in normalized or "worn" in normalized:
        return FAIR
    return GOOD


def condition_from_text(title: str, body: str = "") -> str:
    """Infer condition from free text; defaults to good."""
    text = f"{title or ''} {body or ''}".lower()
    for condition, keywords in _TEXT_CONDITION_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return condition
    return GOOD
