"""Fuzzy catalog matching with calibrated confidence scores.

Each catalog entry is scored against a text segment as a weighted sum of a
brand term (hard gate), a name term (soft gate) and a category term, then
adjusted for where the terms sit in the title, accessory context and
genericness. Scores are clamped into [0, 1].
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

from listing_recon import metrics
from listing_recon.config import Settings, settings
from listing_recon.match.catalog import CatalogEntry, CatalogIndex
from listing_recon.match.vocabulary import (
    ACCESSORY_CONTEXT_PHRASES,
    ACCESSORY_KEYWORDS,
    BRAND_ALIASES,
    CATEGORY_KEYWORDS,
    GEAR_KEYWORDS,
    GENERIC_WORDS,
    STRONG_ACCESSORY_PATTERNS,
    STRONG_GENERIC_WORDS,
    VARIANT_ALIASES,
    alias_pattern,
    contains_phrase,
    extract_model_numbers,
    has_keyword,
    normalize_text,
    phrase_pattern,
    strip_edition_words,
)
from listing_recon.normalize.segments import SpanLocation, locate_for_sale_span

logger = logging.getLogger(__name__)

_WORDS = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-term contributions to a match score."""

    brand: float = 0.0
    name: float = 0.0
    category: float = 0.0
    position: float = 0.0
    accessory_context: float = 0.0
    generic_penalty: float = 0.0
    exclusivity_penalty: float = 0.0


@dataclass(frozen=True)
class MatchCandidate:
    """A scored catalog entry for one segment."""

    entry: CatalogEntry
    score: float
    breakdown: ScoreBreakdown
    ambiguous: bool = False
    runner_up: Optional["MatchCandidate"] = None


@dataclass(frozen=True)
class Accepted:
    candidate: MatchCandidate
    runner_up: Optional[MatchCandidate] = None
    reason: str = "matched"
    matched = True
    ambiguous = False


@dataclass(frozen=True)
class Ambiguous:
    """Top two candidates are too close to trust; the best guess is kept."""

    candidate: MatchCandidate
    runner_up: MatchCandidate
    reason: str = "ambiguous"
    matched = True
    ambiguous = True


@dataclass(frozen=True)
class Rejected:
    reason: str
    best: Optional[MatchCandidate] = None
    matched = False
    ambiguous = False

    @property
    def candidate(self) -> None:
        return None


MatchResult = Union[Accepted, Ambiguous, Rejected]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def brand_aliases(brand_key: str) -> Tuple[str, ...]:
    return BRAND_ALIASES.get(brand_key) or BRAND_ALIASES.get(brand_key.replace(" ", "-")) or ()


def find_brands(text: str, brands: Sequence[str]) -> List[str]:
    """
    Recognize brands in text, longest match first.

    Matched regions are masked so a brand inside a longer brand ("audio" in
    "64 audio") is not counted twice.

    Args:
        text: Normalized text
        brands: Candidate brands ordered multi-word first

    Returns:
        Canonical brands in order of recognition
    """
    remaining = normalize_text(text)
    found: List[str] = []
    for brand in brands:
        patterns = [phrase_pattern(brand)] + [alias_pattern(a) for a in brand_aliases(brand)]
        for pattern in patterns:
            match = pattern.search(remaining)
            if match:
                found.append(brand)
                remaining = remaining[:match.start()] + " " * (match.end() - match.start()) + remaining[match.end():]
                break
    return found


def first_brand_position(text: str, brands: Sequence[str]) -> int:
    """Offset of the earliest brand/alias mention, or -1."""
    positions = []
    for brand in brands:
        for pattern in [phrase_pattern(brand)] + [alias_pattern(a) for a in brand_aliases(brand)]:
            match = pattern.search(text)
            if match:
                positions.append(match.start())
    return min(positions) if positions else -1


def is_accessory_only(text: str, brands: Sequence[str]) -> bool:
    """
    Detect segments that sell accessories rather than gear.

    Explicit patterns ("tips only", "eartips (10 pairs)") win unless a brand
    is mentioned before them. Otherwise accessory words with no gear keyword
    and no recognizable brand mean accessory-only.
    """
    text = normalize_text(text)
    brand_pos = first_brand_position(text, brands)
    for pattern in STRONG_ACCESSORY_PATTERNS:
        match = pattern.search(text)
        if match and (brand_pos < 0 or match.start() < brand_pos):
            return True

    if has_keyword(text, ACCESSORY_KEYWORDS) and not has_keyword(text, GEAR_KEYWORDS):
        return brand_pos < 0
    return False


class CatalogMatcher:
    """Scores text segments against the catalog."""

    def __init__(self, catalog: CatalogIndex, config: Settings = settings):
        self.catalog = catalog
        self.config = config
        self._generic_cache: Dict[int, float] = {}

    # ------------------------------------------------------------------
    # Term scores
    # ------------------------------------------------------------------

    def brand_score(self, text: str, entry: CatalogEntry) -> float:
        brand = entry.brand_key
        if contains_phrase(text, brand):
            return 1.0
        for alias in brand_aliases(brand):
            if alias_pattern(alias).search(text):
                return 1.0

        words = [w for w in re.split(r"[\s\-]+", brand) if len(w) > 2]
        if len(words) >= 2:
            hits = sum(1 for w in words if contains_phrase(text, w))
            if hits and hits >= len(words) * self.config.match_partial_brand_ratio:
                return 0.7
        return 0.0

    def name_score(self, text: str, entry: CatalogEntry) -> float:
        name = entry.name_key
        if contains_phrase(text, name):
            return 1.0
        # Very short names ("T3", "K5") only match as whole words
        if len(name.replace(" ", "")) <= 3:
            return 0.0

        for alias in VARIANT_ALIASES.get(name, ()):
            if contains_phrase(text, alias):
                return 0.95

        stripped = strip_edition_words(name)
        if stripped and contains_phrase(strip_edition_words(text), stripped):
            return 0.9

        name_numbers = extract_model_numbers(name)
        if name_numbers:
            text_numbers = set(extract_model_numbers(text))
            if not any(number in text_numbers for number in name_numbers):
                return 0.0

        words = [w for w in _WORDS.findall(name) if len(w) > 2 and not w.isdigit()]
        if not words:
            return 0.8 if name_numbers else 0.0

        hits = sum(1 for w in words if contains_phrase(text, w))
        ratio = hits / len(words)
        if ratio < self.config.match_word_overlap_required:
            return 0.0
        return ratio * 0.9

    def category_score(self, text: str, entry: CatalogEntry) -> float:
        return 1.0 if has_keyword(text, CATEGORY_KEYWORDS.get(entry.category, ())) else 0.0

    # ------------------------------------------------------------------
    # Adjustments
    # ------------------------------------------------------------------

    def _brand_positions(self, title: str, entry: CatalogEntry) -> List[int]:
        patterns = [phrase_pattern(entry.brand_key)] + [alias_pattern(a) for a in brand_aliases(entry.brand_key)]
        return [m.start() for p in patterns for m in p.finditer(title)]

    def _name_positions(self, title: str, entry: CatalogEntry) -> List[int]:
        name = entry.name_key
        phrases = [name, strip_edition_words(name)]
        phrases.extend(VARIANT_ALIASES.get(name, ()))
        phrases.extend(extract_model_numbers(name))
        return [m.start() for p in phrases if p for m in phrase_pattern(p).finditer(title)]

    def position_adjustment(
        self,
        entry: CatalogEntry,
        title: str,
        span: Optional[SpanLocation],
    ) -> float:
        if not title:
            return 0.0
        brand_positions = self._brand_positions(title, entry)
        name_positions = self._name_positions(title, entry)

        if span is not None:
            brand_in = any(span.contains(p) for p in brand_positions)
            name_in = any(span.contains(p) for p in name_positions)
            if brand_in and name_in:
                return self.config.match_span_bonus
            if name_positions and not name_in:
                return -self.config.match_outside_span_penalty
            if brand_positions and not brand_in and not name_positions:
                return -self.config.match_outside_span_penalty
            return 0.0

        if brand_positions and name_positions:
            return self.config.match_title_both_bonus
        if brand_positions or name_positions:
            return self.config.match_title_either_bonus
        return 0.0

    def has_accessory_context(self, text: str, entry: CatalogEntry) -> bool:
        """True when the name is introduced by "for"/"with"/"compatible with" etc."""
        brand_patterns = [entry.brand_key] + [a for a in brand_aliases(entry.brand_key) if len(a) > 2]
        for match in phrase_pattern(entry.name_key).finditer(text):
            before = text[max(0, match.start() - 48):match.start()].rstrip()
            for brand in brand_patterns:
                trailing = re.search(phrase_pattern(brand).pattern + r"\s*$", before, re.IGNORECASE)
                if trailing:
                    before = before[:trailing.start()].rstrip()
                    break
            before = re.sub(r"\b(?:the|my|your|a)$", "", before).rstrip()
            for phrase in ACCESSORY_CONTEXT_PHRASES:
                if re.search(r"(?<![a-z0-9])" + re.escape(phrase) + r"$", before):
                    return True
        return False

    def generic_penalty(self, entry: CatalogEntry) -> float:
        cached = self._generic_cache.get(entry.id)
        if cached is not None:
            return cached

        cfg = self.config
        penalty = 0.0
        for word in entry.brand_key.split() + entry.name_key.split():
            if word in STRONG_GENERIC_WORDS:
                penalty += cfg.match_generic_strong_word_penalty
            elif word in GENERIC_WORDS:
                penalty += cfg.match_generic_word_penalty

        short = cfg.match_generic_short_length
        if penalty and len(entry.brand_key) <= short and len(entry.name_key) <= short:
            penalty *= cfg.match_generic_short_multiplier

        penalty = min(penalty, cfg.match_generic_penalty_cap)
        self._generic_cache[entry.id] = penalty
        return penalty

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_entry(
        self,
        text: str,
        entry: CatalogEntry,
        title: str = "",
        span: Optional[SpanLocation] = None,
    ) -> MatchCandidate:
        """
        Score one catalog entry against normalized text.

        Args:
            text: Normalized segment text
            entry: Catalog entry
            title: Normalized full title (for position adjustments)
            span: For-sale span inside the title, if structured

        Returns:
            MatchCandidate with the clamped score and its breakdown
        """
        cfg = self.config
        brand = self.brand_score(text, entry)
        if brand == 0.0:
            return MatchCandidate(entry=entry, score=0.0, breakdown=ScoreBreakdown())

        name = self.name_score(text, entry)
        if name < cfg.match_name_soft_gate:
            return MatchCandidate(entry=entry, score=0.0, breakdown=ScoreBreakdown(brand=brand, name=name))

        category = self.category_score(text, entry)
        position = self.position_adjustment(entry, title, span)
        accessory = cfg.match_accessory_context_penalty if self.has_accessory_context(text, entry) else 0.0
        generic = self.generic_penalty(entry)

        raw = (
            brand * cfg.match_brand_weight
            + name * cfg.match_name_weight
            + category * cfg.match_category_weight
            + position
            - accessory
            - generic
        )
        breakdown = ScoreBreakdown(
            brand=brand,
            name=name,
            category=category,
            position=position,
            accessory_context=accessory,
            generic_penalty=generic,
        )
        return MatchCandidate(entry=entry, score=_clamp(raw), breakdown=breakdown)

    def _apply_exclusivity(self, candidates: List[MatchCandidate]) -> List[MatchCandidate]:
        cfg = self.config
        if len(candidates) < cfg.match_exclusivity_threshold:
            return candidates

        penalty = min(
            cfg.match_exclusivity_step * (len(candidates) - cfg.match_exclusivity_free_candidates),
            cfg.match_exclusivity_cap,
        )
        logger.debug(f"{len(candidates)} entries cleared the threshold; exclusivity penalty {penalty:.2f}")
        adjusted = [
            replace(
                c,
                score=_clamp(c.score - penalty),
                breakdown=replace(c.breakdown, exclusivity_penalty=penalty),
            )
            for c in candidates
        ]
        return [c for c in adjusted if c.score >= cfg.match_min_score]

    @staticmethod
    def _rank_key(candidate: MatchCandidate):
        return (-candidate.score, -len(candidate.entry.name_key), candidate.entry.id)

    def match(self, text: str, title: Optional[str] = None, source: str = "") -> MatchResult:
        """
        Match a segment against the catalog.

        Args:
            text: Segment (or whole title for single-item listings)
            title: Full listing title, used for position adjustments
            source: Source identifier (selects for-sale span rules)

        Returns:
            Accepted, Ambiguous or Rejected
        """
        norm_text = normalize_text(text)
        if not norm_text:
            metrics.record_match("rejected", None)
            return Rejected(reason="empty")

        if is_accessory_only(norm_text, self.catalog.brands):
            metrics.record_match("accessory", None)
            return Rejected(reason="accessory")

        norm_title = normalize_text(title if title is not None else text)
        span = locate_for_sale_span(norm_title, source)

        scored = [self.score_entry(norm_text, entry, norm_title, span) for entry in self.catalog]
        scored = [c for c in scored if c.score > 0.0]
        scored.sort(key=self._rank_key)

        passing = [c for c in scored if c.score >= self.config.match_min_score]
        passing = sorted(self._apply_exclusivity(passing), key=self._rank_key)

        if not passing:
            best = scored[0] if scored else None
            metrics.record_match("rejected", best.score if best else None)
            return Rejected(reason="no_match", best=best)

        best = passing[0]
        runner_up = passing[1] if len(passing) > 1 else None
        if runner_up is not None and best.score - runner_up.score < self.config.match_ambiguity_margin:
            best = replace(best, ambiguous=True, runner_up=runner_up)
            logger.info(
                f"Ambiguous match for {text[:60]!r}: {best.entry.label} ({best.score:.2f}) "
                f"vs {runner_up.entry.label} ({runner_up.score:.2f})"
            )
            metrics.record_match("ambiguous", best.score)
            return Ambiguous(candidate=best, runner_up=runner_up)

        best = replace(best, runner_up=runner_up)
        metrics.record_match("accepted", best.score)
        return Accepted(candidate=best, runner_up=runner_up)
