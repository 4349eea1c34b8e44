"""Unseen-product candidate extraction and the run-scoped candidate ledger."""

import asyncio
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from listing_recon.match.catalog import CatalogIndex
from listing_recon.match.matcher import brand_aliases, find_brands, is_accessory_only
from listing_recon.match.vocabulary import (
    ACCESSORY_KEYWORDS,
    CATEGORY_KEYWORDS,
    has_keyword,
    phrase_pattern,
)
from listing_recon.normalize.price import extract_price_range
from listing_recon.normalize.segments import for_sale_span, strip_listing_noise, strip_structural_tags

logger = logging.getLogger(__name__)

# Ordered vocabulary battery stripped from the for-sale span to leave the model
MODEL_CLEANUP_RULES: Tuple[Tuple[str, re.Pattern], ...] = (
    ("condition", re.compile(r"\b(?:brand new|like new|new|mint|excellent|good|fair|poor|condition|lnib|bnib)\b", re.I)),
    ("contents", re.compile(r"\b(?:comes with|with|includes|box|original|accessories)\b", re.I)),
    ("listing", re.compile(r"\b(?:for sale|fs|wts|wtt|trade|sell|selling)\b", re.I)),
    ("price_change", re.compile(r"\b(?:price drop|reduced|obo|or best offer)\b", re.I)),
    ("payment", re.compile(
        r"\b(?:paypal|pp|venmo|zelle|cashapp|cash app|wire transfer|bank transfer|wire|local cash|"
        r"cash only|money order)\b", re.I)),
    ("payment_terms", re.compile(r"(?:\bg&s\b|\bg and s\b|\bgoods and services\b|\bf&f\b|\bfriends and family\b)", re.I)),
    ("shipping", re.compile(r"\b(?:shipped|shipping|usps|ups|fedex|priority)\b", re.I)),
    ("shipping_region", re.compile(r"\b(?:conus|international|local pickup|local only)\b", re.I)),
    ("structure", re.compile(r"\[(?:WTS|WTB|WTT|USA?|H|W)\]", re.I)),
    ("region", re.compile(r"\bUSA?-[A-Z]{2}\b", re.I)),
    ("price", re.compile(r"\$\s?\d+(?:,\d{3})*(?:\.\d{2})?")),
    ("score", re.compile(r"\b\d+/\d+\b")),
    ("brackets", re.compile(r"[\[\](){}]")),
    ("dash", re.compile(r"\s+[-–—]\s+|\s+[-–—]$|^[-–—]\s+")),
)

_BUNDLE_SEPARATORS = (",", " + ", " and ", " & ", " / ", " with ")
_MODEL_NUMBER_TOKEN = re.compile(r"\b[a-z]{0,4}\d{2,4}[a-z]{0,3}\b", re.I)

MODEL_MIN_LENGTH = 2
MODEL_MAX_LENGTH = 50


@dataclass
class CandidateDraft:
    """Brand/model pulled out of one unmatched listing."""

    brand: str
    model: str
    category: Optional[str]
    price: Optional[int] = None
    price_range: Optional[Tuple[int, int]] = None


@dataclass
class CandidateRecord:
    """Run-local state of one (brand, model) candidate."""

    brand: str
    model: str
    category: Optional[str] = None
    price_observed_min: Optional[int] = None
    price_observed_max: Optional[int] = None
    price_estimate_new: Optional[int] = None
    price_used_min: Optional[int] = None
    price_used_max: Optional[int] = None
    listing_ids: List[str] = field(default_factory=list)
    listing_count: int = 0
    quality_score: int = 0
    status: str = "pending"
    specs: Dict[str, Any] = field(default_factory=dict)
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str]:
        return candidate_key(self.brand, self.model)


def candidate_key(brand: str, model: str) -> Tuple[str, str]:
    return (brand.strip().lower(), re.sub(r"\s+", " ", model.strip().lower()))


def calculate_quality_score(record: CandidateRecord) -> int:
    """Data-completeness score (0-100)."""
    score = 0
    if record.brand:
        score += 20
    if record.model and len(record.model) >= 3:
        score += 20
    if record.category:
        score += 15
    if record.price_observed_min:
        score += 15
    if record.price_estimate_new:
        score += 10
    if record.specs.get("impedance"):
        score += 5
    if record.specs.get("driver_type"):
        score += 5
    if record.specs.get("asr_sinad") or record.specs.get("crin_rank"):
        score += 10
    return min(100, score)


def infer_category(text: str) -> Optional[str]:
    """First category whose keywords appear; combo phrasing checked first."""
    for category in ("dac_amp", "headphone", "iem", "dac", "amp"):
        if has_keyword(text, CATEGORY_KEYWORDS[category]):
            return category
    return None


class CandidateExtractor:
    """Derives (brand, model) candidates from listings the catalog does not know."""

    def __init__(self, catalog: CatalogIndex):
        self.catalog = catalog

    def _display_brand(self, brand_key: str) -> str:
        entries = self.catalog.for_brand(brand_key)
        if entries:
            return entries[0].brand
        return " ".join(word.capitalize() for word in brand_key.split(" "))

    def is_bundle_listing(self, span: str) -> bool:
        """Too many items in the for-sale span for a single candidate."""
        if len(find_brands(span, self.catalog.brands)) >= 2:
            return True
        lowered = span.lower()
        if not any(sep in lowered for sep in _BUNDLE_SEPARATORS):
            return False
        return len(_MODEL_NUMBER_TOKEN.findall(strip_listing_noise(span))) >= 3

    def extract_model(self, span: str, brand_key: str) -> Optional[str]:
        """
        Strip brand and listing vocabulary from the for-sale span.

        Returns:
            Model string, or None if the remainder is not plausible
        """
        model = strip_structural_tags(span)
        for phrase in (brand_key,) + tuple(a for a in brand_aliases(brand_key) if len(a) > 2):
            model = phrase_pattern(phrase).sub(" ", model)

        for _, pattern in MODEL_CLEANUP_RULES:
            model = pattern.sub(" ", model)

        model = re.sub(r"\s+", " ", model).strip(" -–—:|,;.")
        if not MODEL_MIN_LENGTH <= len(model) <= MODEL_MAX_LENGTH:
            return None
        return model

    def extract(self, listing, price: Optional[int]) -> Optional[CandidateDraft]:
        """
        Derive a candidate from an unmatched single-item listing.

        Args:
            listing: RawListing
            price: Price already extracted for the listing

        Returns:
            CandidateDraft, or None on accessory/bundle/unknown-brand/known-component
        """
        title = listing.title or ""
        span = for_sale_span(title, listing.source)

        if is_accessory_only(span, self.catalog.brands):
            logger.debug(f"Candidate skipped (accessory): {title[:60]!r}")
            return None

        if self.is_bundle_listing(span):
            logger.debug(f"Candidate skipped (bundle): {title[:60]!r}")
            return None

        brands = find_brands(span, self.catalog.brands)
        if not brands:
            return None
        brand_key = brands[0]

        model = self.extract_model(span, brand_key)
        if model is None:
            return None
        if has_keyword(model, ACCESSORY_KEYWORDS):
            logger.debug(f"Candidate skipped (accessory model): {model!r}")
            return None

        brand = self._display_brand(brand_key)
        if self.catalog.has_component(brand, model):
            logger.debug(f"Candidate skipped, component exists: {brand} {model}")
            return None

        return CandidateDraft(
            brand=brand,
            model=model,
            category=infer_category(span),
            price=price,
            price_range=extract_price_range(f"{title}\n{listing.body or ''}"),
        )


class CandidateLedger:
    """
    Run-scoped cache of component candidates keyed by (brand, model).

    Loaded once per run; repeat sightings merge in memory under a per-key
    lock and dirty entries are flushed through the repository.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, str], CandidateRecord] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._dirty: Set[Tuple[str, str]] = set()
        self.loaded = False

    def __len__(self) -> int:
        return len(self._records)

    def load(self, records: Iterable[CandidateRecord]) -> None:
        for record in records:
            self._records[record.key] = record
        self.loaded = True
        logger.info(f"Candidate ledger loaded: {len(self._records)} candidates")

    def get(self, brand: str, model: str) -> Optional[CandidateRecord]:
        return self._records.get(candidate_key(brand, model))

    @property
    def dirty(self) -> List[CandidateRecord]:
        return [self._records[key] for key in sorted(self._dirty)]

    async def record(
        self,
        draft: CandidateDraft,
        listing_ref: str,
        seen_at: Optional[datetime] = None,
    ) -> CandidateRecord:
        """
        Merge one sighting into the ledger.

        Args:
            draft: Extracted candidate
            listing_ref: Contributing listing identifier (URL or row id)
            seen_at: Sighting time

        Returns:
            The merged record
        """
        seen_at = seen_at or datetime.utcnow()
        key = candidate_key(draft.brand, draft.model)
        observed = [p for p in (draft.price,) if p]
        if draft.price_range:
            observed.extend(draft.price_range)

        async with self._locks[key]:
            record = self._records.get(key)
            if record is None:
                record = self._new_record(draft, observed, seen_at)
                record.listing_ids.append(listing_ref)
                record.listing_count = 1
                self._records[key] = record
                logger.info(f"New candidate: {record.brand} {record.model}")
            elif listing_ref not in record.listing_ids:
                record.listing_ids.append(listing_ref)
                record.listing_count += 1
                record.last_seen_at = seen_at
                if observed:
                    low, high = min(observed), max(observed)
                    record.price_observed_min = min(low, record.price_observed_min or low)
                    record.price_observed_max = max(high, record.price_observed_max or high)
                if not record.category and draft.category:
                    record.category = draft.category
                logger.debug(f"Merged candidate {record.brand} {record.model} ({record.listing_count} listings)")
            record.quality_score = calculate_quality_score(record)
            self._dirty.add(key)
        return record

    @staticmethod
    def _new_record(draft: CandidateDraft, observed: List[int], seen_at: datetime) -> CandidateRecord:
        price = draft.price
        return CandidateRecord(
            brand=draft.brand,
            model=draft.model,
            category=draft.category,
            price_observed_min=min(observed) if observed else None,
            price_observed_max=max(observed) if observed else None,
            price_estimate_new=round(price / 0.7) if price else None,
            price_used_min=round(price * 0.85) if price else None,
            price_used_max=round(price * 1.15) if price else None,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
        )

    async def flush(self, repository) -> int:
        """Persist dirty records through the repository; returns the number written."""
        written = 0
        for key in sorted(self._dirty):
            record = self._records[key]
            async with self._locks[key]:
                await repository.merge_candidate(record)
            written += 1
        self._dirty.clear()
        return written
