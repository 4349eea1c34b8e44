"""Price extraction from free-text marketplace listings.

Prices are pulled out with an ordered table of rules. Each rule carries a
priority tier (0 is the most trusted). All matches inside the configured
bounds are collected, ranked by tier and then by a bundle heuristic, and the
top one wins.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from listing_recon.config import settings

logger = logging.getLogger(__name__)

_AMOUNT = r"(\d{1,5}(?:,\d{3})*)"


@dataclass(frozen=True)
class PriceRule:
    """One entry of the price pattern table."""

    name: str
    pattern: re.Pattern
    tier: int


@dataclass(frozen=True)
class PriceMatch:
    """A price candidate found in text."""

    price: int
    tier: int
    rule: str
    raw: str
    position: int


PRICE_RULES: Tuple[PriceRule, ...] = (
    PriceRule(
        "offer_span",
        re.compile(r"\[W\][^\[\n]*?\$?\b" + _AMOUNT + r"\b", re.IGNORECASE),
        0,
    ),
    PriceRule(
        "bundle_phrase",
        re.compile(
            r"\b(?:asking|price:?|selling)\s*\$?" + _AMOUNT
            + r"\s*(?:for\s+)?(?:all|total|together|both|everything|bundle)\b",
            re.IGNORECASE,
        ),
        1,
    ),
    PriceRule("dollar_sign", re.compile(r"\$\s?" + _AMOUNT + r"(?:\.\d{2})?"), 2),
    PriceRule(
        "asking",
        re.compile(
            r"\b(?:asking(?:\s+price)?(?:\s+is)?|price:?|selling\s*(?:for|at)?)\s*\$?" + _AMOUNT,
            re.IGNORECASE,
        ),
        3,
    ),
    PriceRule(
        "shipped",
        re.compile(r"\b(\d{2,5})\s*(?:shipped|obo|or best offer|firm)\b", re.IGNORECASE),
        4,
    ),
    PriceRule(
        "currency_word",
        re.compile(r"\b(\d{2,5})\s*(?:usd|dollars?)\b", re.IGNORECASE),
        5,
    ),
)

BUNDLE_CUE_PATTERN = re.compile(
    r"\b(?:all|bundle|total|together|everything|both|combo)\b", re.IGNORECASE
)

_DISCOUNT_AFTER = re.compile(r"^\s*(?:off|discount|savings)\b", re.IGNORECASE)
_DISCOUNT_BEFORE = re.compile(r"\b(?:save|savings|discount)\s*\$?\s*$", re.IGNORECASE)

_RANGE_PATTERNS = (
    re.compile(r"\$(\d{2,5})\s*-\s*\$?(\d{2,5})\b"),
    re.compile(r"\$(\d{2,5})\s+to\s+\$?(\d{2,5})\b", re.IGNORECASE),
    re.compile(r"between\s+\$?(\d{2,5})\s+and\s+\$?(\d{2,5})\b", re.IGNORECASE),
)

_TOKEN_PATTERN = re.compile(r"[a-z]+|\d+")


def _in_bounds(price: int) -> bool:
    return settings.price_min <= price <= settings.price_max


def _is_discount(text: str, start: int, end: int) -> bool:
    """True when the amount is a discount ("$50 off") rather than an asking price."""
    return bool(_DISCOUNT_AFTER.match(text[end:end + 12])) or bool(
        _DISCOUNT_BEFORE.search(text[max(0, start - 12):start])
    )


def find_prices(text: str, rules: Sequence[PriceRule] = PRICE_RULES) -> List[PriceMatch]:
    """Collect every in-bounds, non-discount price match from text."""
    matches: List[PriceMatch] = []
    if not text:
        return matches

    for rule in rules:
        for m in rule.pattern.finditer(text):
            try:
                price = int(m.group(1).replace(",", ""))
            except (TypeError, ValueError):
                continue
            if not _in_bounds(price):
                continue
            if _is_discount(text, m.start(1), m.end()):
                continue
            matches.append(
                PriceMatch(price=price, tier=rule.tier, rule=rule.name, raw=m.group(0), position=m.start())
            )
    return matches


def rank_prices(matches: Iterable[PriceMatch], prefer_highest: bool) -> List[PriceMatch]:
    """Order matches by tier, then by amount (highest first on a bundle cue, lowest otherwise), then by position."""
    if prefer_highest:
        return sorted(matches, key=lambda m: (m.tier, -m.price, m.position))
    return sorted(matches, key=lambda m: (m.tier, m.price, m.position))


def has_bundle_cue(text: str) -> bool:
    return bool(text and BUNDLE_CUE_PATTERN.search(text))


def extract_price(text: str) -> Optional[int]:
    """
    Extract the most likely asking price from listing text.

    Args:
        text: Title and/or body text

    Returns:
        Integer price inside the configured bounds, or None
    """
    matches = find_prices(text)
    if not matches:
        return None

    prefer_highest = settings.price_bundle_prefers_highest and has_bundle_cue(text)
    best = rank_prices(matches, prefer_highest)[0]
    logger.debug(f"Price {best.price} from rule '{best.rule}' ({best.raw!r})")
    return best.price


def extract_price_range(text: str) -> Optional[Tuple[int, int]]:
    """Extract a "$300-400" / "300 to 400" style range, or None."""
    if not text:
        return None
    for pattern in _RANGE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        low, high = int(match.group(1)), int(match.group(2))
        if low < high and _in_bounds(low) and _in_bounds(high):
            return low, high
    return None


def _tokens(text: str) -> List[str]:
    return _TOKEN_PATTERN.findall((text or "").lower())


def token_coverage(line: str, label: str) -> float:
    """Fraction of the label's tokens present in a line (spacing-insensitive)."""
    wanted = _tokens(label)
    if not wanted:
        return 0.0
    line_tokens = set(_tokens(line))
    compact_line = "".join(_tokens(line))
    present = sum(1 for tok in wanted if tok in line_tokens or (len(tok) > 2 and tok in compact_line))
    return present / len(wanted)


def extract_line_price(
    text: str,
    label: str,
    competing_labels: Sequence[str] = (),
) -> Optional[int]:
    """
    Extract a per-component price from the text line that mentions it.

    A line qualifies when it covers the component label (brand + model) at
    the configured overlap threshold and no competing label qualifies on the
    same line.

    Returns:
        Price from the matching line, or None if no line qualifies
    """
    if not text:
        return None

    threshold = settings.price_line_overlap_threshold
    for line in text.splitlines():
        if token_coverage(line, label) < threshold:
            continue
        if any(token_coverage(line, other) >= threshold for other in competing_labels):
            continue
        price = extract_price(line)
        if price is not None:
            return price
    return None
