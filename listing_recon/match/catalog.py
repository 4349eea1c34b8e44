"""Immutable per-run catalog index."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from listing_recon.match.vocabulary import (
    BRAND_ALIASES,
    KNOWN_BRANDS,
    brands_by_specificity,
    normalize_category,
    normalize_text,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    """A curated, known audio product."""

    id: int
    brand: str
    name: str
    category: str
    price_new: Optional[float] = None
    price_used_min: Optional[float] = None
    price_used_max: Optional[float] = None
    specs: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def label(self) -> str:
        return f"{self.brand} {self.name}"

    @property
    def brand_key(self) -> str:
        return normalize_text(self.brand)

    @property
    def name_key(self) -> str:
        return normalize_text(self.name)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CatalogEntry":
        """Build an entry from a row/dict, normalizing the category."""
        def _num(value):
            return float(value) if value is not None else None

        return cls(
            id=int(data["id"]),
            brand=str(data["brand"]).strip(),
            name=str(data["name"]).strip(),
            category=normalize_category(data.get("category") or ""),
            price_new=_num(data.get("price_new")),
            price_used_min=_num(data.get("price_used_min")),
            price_used_max=_num(data.get("price_used_max")),
            specs=dict(data.get("specs") or {}),
        )


class CatalogIndex:
    """
    Read-only lookup structure over the curated catalog.

    Built once per run and shared by every matcher/extractor call in that run.
    """

    def __init__(self, entries: Iterable[CatalogEntry]):
        self._entries: Tuple[CatalogEntry, ...] = tuple(entries)
        self._by_id: Dict[int, CatalogEntry] = {e.id: e for e in self._entries}
        by_brand: Dict[str, List[CatalogEntry]] = {}
        for entry in self._entries:
            by_brand.setdefault(entry.brand_key, []).append(entry)
        self._by_brand = {k: tuple(v) for k, v in by_brand.items()}

        brands = set(KNOWN_BRANDS) | set(BRAND_ALIASES) | set(self._by_brand)
        self._brands: Tuple[str, ...] = tuple(brands_by_specificity(tuple(brands)))
        logger.debug(f"Catalog index built with {len(self._entries)} entries, {len(self._brands)} brands")

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    @property
    def entries(self) -> Tuple[CatalogEntry, ...]:
        return self._entries

    @property
    def brands(self) -> Tuple[str, ...]:
        """Every known brand, multi-word and longest first."""
        return self._brands

    def get(self, entry_id: int) -> Optional[CatalogEntry]:
        return self._by_id.get(entry_id)

    def for_brand(self, brand: str) -> Tuple[CatalogEntry, ...]:
        return self._by_brand.get(normalize_text(brand), ())

    def has_component(self, brand: str, model: str) -> bool:
        """True when an entry of this brand already covers the model."""
        model_key = normalize_text(model)
        if not model_key:
            return False
        for entry in self.for_brand(brand):
            if entry.name_key == model_key or model_key in entry.name_key:
                return True
        return False

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "CatalogIndex":
        return cls(CatalogEntry.from_mapping(row) for row in rows)
