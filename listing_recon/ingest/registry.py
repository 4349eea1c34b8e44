"""Source adapter registry."""

import logging
from pathlib import Path
from typing import Callable, Dict

from listing_recon.config import settings
from listing_recon.ingest.base import SourceAdapter
from listing_recon.ingest.file_source import JsonFileSource

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[], SourceAdapter]


def _dump_source(name: str) -> AdapterFactory:
    def factory() -> SourceAdapter:
        base = Path(settings.source_dump_dir)
        jsonl = base / f"{name}.jsonl"
        return JsonFileSource(name, jsonl if jsonl.exists() else base / f"{name}.json")

    return factory


class SourceRegistry:
    """Registry of source adapters by source name."""

    _factories: Dict[str, AdapterFactory] = {
        "reddit_avexchange": _dump_source("reddit_avexchange"),
        "head_fi": _dump_source("head_fi"),
        "reverb": _dump_source("reverb"),
    }

    _instances: Dict[str, SourceAdapter] = {}

    @classmethod
    def get_adapter(cls, source: str) -> SourceAdapter:
        """
        Get or create the adapter for a source.

        Raises:
            ValueError: If the source is not registered
        """
        if source not in cls._factories:
            raise ValueError(f"Unknown source: {source}. Available: {list(cls._factories.keys())}")

        if source not in cls._instances:
            cls._instances[source] = cls._factories[source]()
            logger.info(f"Initialized adapter for source: {source}")
        return cls._instances[source]

    @classmethod
    def register_adapter(cls, source: str, factory: AdapterFactory) -> None:
        cls._factories[source] = factory
        cls._instances.pop(source, None)
        logger.info(f"Registered adapter for source: {source}")

    @classmethod
    def list_sources(cls) -> list[str]:
        return list(cls._factories.keys())

    @classmethod
    async def cleanup(cls) -> None:
        """Close all adapter instances."""
        for source, adapter in cls._instances.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"Error closing adapter for {source}: {e}")
        cls._instances.clear()
