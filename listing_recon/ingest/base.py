"""Source adapter interface for marketplace listing sources."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Mapping, Optional

from listing_recon.config import settings


@dataclass(frozen=True)
class RawListing:
    """One marketplace post as yielded by a source adapter."""

    source: str
    title: str
    url: str
    body: str = ""
    posted_at: Optional[datetime] = None
    seller: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def flair(self) -> Optional[str]:
        return self.metadata.get("flair")

    @property
    def condition(self) -> Optional[str]:
        return self.metadata.get("condition")

    @property
    def seller_reputation(self) -> int:
        """Confirmed trades, falling back to feedback score."""
        value = self.metadata.get("seller_confirmed_trades") or self.metadata.get("seller_feedback_score") or 0
        if isinstance(value, (int, float)):
            return int(value)
        match = re.search(r"\d+", str(value))  # flair text such as "Trades: 12"
        return int(match.group()) if match else 0

    @property
    def text(self) -> str:
        return f"{self.title}\n{self.body or ''}"


@dataclass
class RateLimitConfig:
    """Rate limiting configuration for a source."""

    min_interval: float = 1.0
    max_interval: float = 2.0
    jitter: float = 0.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0


class SourceAdapter(ABC):
    """Abstract base class for listing sources."""

    source_name: str = ""

    @abstractmethod
    def fetch_listings(self) -> AsyncIterator[RawListing]:
        """
        Yield raw listings from the source.

        URLs must be unique within one source.

        Raises:
            SourceFetchError: If the source cannot be read
        """
        pass

    def rate_limit(self) -> RateLimitConfig:
        """Rate limiting configuration; defaults come from settings."""
        limits = settings.source_rate_limits.get(self.source_name, {})
        return RateLimitConfig(
            min_interval=limits.get("min_interval", settings.min_fetch_delay_seconds),
            max_interval=limits.get("max_interval", settings.max_fetch_delay_seconds),
            jitter=limits.get("jitter", 0.0),
            max_backoff_seconds=settings.source_backoff_max_seconds,
        )

    async def close(self) -> None:
        """Release adapter resources."""
        return None
