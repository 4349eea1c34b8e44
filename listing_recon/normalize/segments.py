"""Text normalization and bundle segment splitting.

Listings are reduced to their for-sale span before anything else so that
terms from the counter-offer span ("[W] PayPal, or trade for Focal Clear")
never reach the matcher.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpanLocation:
    """Character offsets of the for-sale span inside the original text."""

    start: int
    end: int

    def contains(self, position: int) -> bool:
        return self.start <= position < self.end


@dataclass(frozen=True)
class Segment:
    """One item segment of a (possibly bundled) listing."""

    text: str
    position: int  # 1-based order in the listing
    quantity: int = 1


_HAVE_WANT = re.compile(r"\[H\]\s*(.+?)\s*\[W\]", re.IGNORECASE)
_HAVE_ONLY = re.compile(r"\[H\]\s*(.+)$", re.IGNORECASE)
_FOR_SALE_LABEL = re.compile(
    r"\b(?:for sale|selling|wts)\s*[:\-]\s*(.+?)(?:\s*\b(?:looking for|want(?:ed)?|wtb|trade for)\b|$)",
    re.IGNORECASE,
)

# Source -> ordered span patterns; group 1 is the for-sale span.
SPAN_RULES: Dict[str, Tuple[re.Pattern, ...]] = {
    "reddit_avexchange": (_HAVE_WANT, _HAVE_ONLY),
    "head_fi": (_HAVE_WANT, _FOR_SALE_LABEL),
    "reverb": (),
}
DEFAULT_SPAN_RULES: Tuple[re.Pattern, ...] = (_HAVE_WANT,)

_STRUCTURAL_TAGS = re.compile(r"\[\s*(?:WTS|WTB|WTT|FS|FT|H|W|SOLD|PRICE DROP)\s*\]", re.IGNORECASE)
_REGION_TAGS = re.compile(r"\[\s*(?:USA?|CAN?|EU|UK|AU)(?:\s*-\s*[A-Z]{2,3})?\s*\]|\[[A-Z]{2}-[A-Z]{2}\]", re.IGNORECASE)

_CURRENCY_AMOUNTS = (
    re.compile(
        r"\s*[-–—]\s*\$?\d{2,5}(?:,\d{3})*(?:\.\d{2})?\s*(?:shipped|obo|firm|paypal|usd)?",
        re.IGNORECASE,
    ),
    re.compile(r"\$\s?\d{1,5}(?:,\d{3})*(?:\.\d{2})?"),
    re.compile(r"\b\d{2,5}\s*(?:usd|dollars?)\b", re.IGNORECASE),
)

_TRAILING_NOISE = (
    re.compile(
        r"\s*[-–—|]\s*(?:brand new|like new|mint|lnib|bnib|excellent|great|good|fair|used)\b.*$",
        re.IGNORECASE,
    ),
    re.compile(r"\(\s*(?:brand new|like new|mint|lnib|bnib|excellent|great|good|fair|used)\b[^)]*\)", re.IGNORECASE),
    re.compile(
        r"\b(?:shipped|shipping included|free shipping|obo|or best offer|firm|paypal|pp|venmo|zelle|"
        r"g&s|g and s|goods and services|f&f|conus|local pickup|local only|local)\b",
        re.IGNORECASE,
    ),
    # Bare condition qualifier between separators: "HD 800 S, excellent condition"
    re.compile(
        r"[,/]\s*(?:brand new|like new|mint|lnib|bnib|excellent|great|good|fair|used)"
        r"(?:\s+(?:condition|cond\.?|shape))?\s*(?=[,/]|$)",
        re.IGNORECASE,
    ),
)

_SEPARATORS = re.compile(r",|\s+\+\s+|\s+and\s+|\s+&\s+|\s+/\s+|/(?!\d)", re.IGNORECASE)
_QUANTITY_PREFIX = re.compile(r"^\s*(?:(\d{1,2})\s*x|x\s*(\d{1,2}))\s+", re.IGNORECASE)
_QUANTITY_SUFFIX = re.compile(r"\s+(?:x\s*(\d{1,2})|\((\d{1,2})\s*x?\))\s*$", re.IGNORECASE)

MIN_SEGMENT_LENGTH = 4


def locate_for_sale_span(text: str, source: str = "") -> Optional[SpanLocation]:
    """
    Find the bounded for-sale region of a listing title.

    Args:
        text: Listing title
        source: Source identifier selecting the span rules

    Returns:
        SpanLocation of the for-sale region, or None if the text has no
        recognizable structure
    """
    if not text:
        return None
    rules = SPAN_RULES.get(source, DEFAULT_SPAN_RULES)
    for pattern in rules:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return SpanLocation(start=match.start(1), end=match.end(1))
    return None


def for_sale_span(text: str, source: str = "") -> str:
    """Return the for-sale portion of a title, or the whole title if unstructured."""
    location = locate_for_sale_span(text, source)
    if location is None:
        return text or ""
    return text[location.start:location.end].strip()


def strip_structural_tags(text: str) -> str:
    """Remove listing-type tags and region codes."""
    text = _STRUCTURAL_TAGS.sub(" ", text or "")
    text = _REGION_TAGS.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def strip_listing_noise(text: str) -> str:
    """Remove tags, region codes, currency amounts and trailing condition/shipping phrases."""
    text = strip_structural_tags(text)
    for pattern in _CURRENCY_AMOUNTS:
        text = pattern.sub(" ", text)
    for pattern in _TRAILING_NOISE:
        text = pattern.sub(" ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip(" -–—:|;,")


def _parse_quantity(segment: str) -> Tuple[str, int]:
    match = _QUANTITY_PREFIX.match(segment)
    if match:
        quantity = int(match.group(1) or match.group(2))
        return segment[match.end():].strip(), max(quantity, 1)
    match = _QUANTITY_SUFFIX.search(segment)
    if match:
        quantity = int(match.group(1) or match.group(2))
        return segment[:match.start()].strip(), max(quantity, 1)
    return segment, 1


def split_segments(text: str, source: str = "") -> List[Segment]:
    """
    Split a listing title into item segments.

    Args:
        text: Listing title
        source: Source identifier (selects the for-sale span rules)

    Returns:
        Ordered segments; zero or one segment means a single-item listing
    """
    items_text = strip_listing_noise(for_sale_span(text, source))

    segments: List[Segment] = []
    for raw in _SEPARATORS.split(items_text):
        cleaned = raw.strip(" -–—:|;()")
        cleaned, quantity = _parse_quantity(cleaned)
        if len(cleaned) < MIN_SEGMENT_LENGTH:
            continue
        segments.append(Segment(text=cleaned, position=len(segments) + 1, quantity=quantity))

    logger.debug(f"Split {text!r} into {len(segments)} segment(s)")
    return segments
