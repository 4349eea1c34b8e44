"""Source adapter reading exported listing dumps (JSON array or JSON lines)."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from listing_recon.errors import SourceFetchError
from listing_recon.ingest.base import RawListing, SourceAdapter

logger = logging.getLogger(__name__)

# Dump field -> RawListing field; first present key wins
_FIELD_ALIASES = {
    "title": ("title",),
    "url": ("url", "permalink", "link"),
    "body": ("body", "selftext", "description", "content"),
    "seller": ("seller", "author", "seller_username", "username"),
    "posted_at": ("posted_at", "date_posted", "created_utc", "created_at"),
}
_METADATA_ALIASES = {
    "flair": ("flair", "link_flair_text"),
    "condition": ("condition",),
    "seller_confirmed_trades": ("seller_confirmed_trades", "confirmed_trades", "author_flair_text"),
    "seller_feedback_score": ("seller_feedback_score", "feedback_score"),
    "sold": ("sold", "is_sold"),
    "price": ("price",),
}


def _first(record: Mapping[str, Any], keys) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch seconds or ISO-8601 into a naive UTC datetime."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class JsonFileSource(SourceAdapter):
    """
    Reads listings from a JSON or JSONL export.

    Records without a title or URL are skipped; duplicate URLs inside one
    dump are yielded once.
    """

    def __init__(self, source_name: str, path: str | Path):
        self.source_name = source_name
        self.path = Path(path)

    def _load_records(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            raise SourceFetchError(self.source_name, f"dump not found: {self.path}", retryable=False)
        text = self.path.read_text(encoding="utf-8")
        try:
            if self.path.suffix == ".jsonl":
                return [json.loads(line) for line in text.splitlines() if line.strip()]
            data = json.loads(text) if text.strip() else []
        except json.JSONDecodeError as e:
            raise SourceFetchError(self.source_name, f"invalid JSON in {self.path}: {e}", retryable=False) from e
        if isinstance(data, dict):
            data = data.get("listings") or data.get("children") or []
        return [item.get("data", item) if isinstance(item, dict) else item for item in data]

    def to_raw_listing(self, record: Mapping[str, Any]) -> Optional[RawListing]:
        title = _first(record, _FIELD_ALIASES["title"])
        url = _first(record, _FIELD_ALIASES["url"])
        if not title or not url:
            return None

        metadata = {}
        for name, keys in _METADATA_ALIASES.items():
            value = _first(record, keys)
            if value is not None:
                metadata[name] = value

        return RawListing(
            source=self.source_name,
            title=str(title).strip(),
            url=str(url).strip(),
            body=str(_first(record, _FIELD_ALIASES["body"]) or ""),
            posted_at=parse_timestamp(_first(record, _FIELD_ALIASES["posted_at"])),
            seller=_first(record, _FIELD_ALIASES["seller"]),
            metadata=metadata,
        )

    async def fetch_listings(self) -> AsyncIterator[RawListing]:
        records = await asyncio.to_thread(self._load_records)
        logger.info(f"Loaded {len(records)} records from {self.path}")

        seen_urls = set()
        for record in records:
            if not isinstance(record, dict):
                continue
            listing = self.to_raw_listing(record)
            if listing is None or listing.url in seen_urls:
                continue
            seen_urls.add(listing.url)
            yield listing
