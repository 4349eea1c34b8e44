"""Persistence operations used by the aggregation pipeline."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_recon.db.models import (
    AggregationRun,
    Component,
    ComponentCandidate,
    Listing,
    ListingArchive,
)
from listing_recon.errors import CatalogLoadError, PersistenceConflict
from listing_recon.match.candidates import CandidateRecord
from listing_recon.match.catalog import CatalogEntry, CatalogIndex

logger = logging.getLogger(__name__)


@dataclass
class ListingRecord:
    """Values written for one (url, component) listing row."""

    url: str
    source: str
    title: str
    component_id: Optional[int] = None
    segment: Optional[str] = None
    price: Optional[int] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    seller: Optional[str] = None
    seller_reputation: int = 0
    status: str = "available"
    is_bundle: bool = False
    bundle_group_id: Optional[str] = None
    bundle_position: Optional[int] = None
    bundle_component_count: Optional[int] = None
    bundle_total_price: Optional[int] = None
    quantity: int = 1
    match_score: Optional[float] = None
    match_ambiguous: bool = False
    validation_action: str = "accept"
    validation_flags: List[Dict[str, Any]] = field(default_factory=list)
    posted_at: Optional[datetime] = None


# Columns copied from a live listing into the archive
_ARCHIVE_COLUMNS = tuple(c.name for c in ListingArchive.__table__.columns if c.name not in ("id", "original_id", "archived_at"))


class ListingRepository:
    """Async repository over the catalog, listings, candidates and runs."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from listing_recon.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Catalog / candidates
    # ------------------------------------------------------------------

    async def load_catalog(self) -> CatalogIndex:
        """
        Bulk-load the curated catalog.

        Raises:
            CatalogLoadError: If the catalog cannot be read
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(Component))
                components = result.scalars().all()
        except SQLAlchemyError as e:
            raise CatalogLoadError(f"Failed to load catalog: {e}") from e

        entries = [
            CatalogEntry.from_mapping(
                {
                    "id": c.id,
                    "brand": c.brand,
                    "name": c.name,
                    "category": c.category,
                    "price_new": c.price_new,
                    "price_used_min": c.price_used_min,
                    "price_used_max": c.price_used_max,
                    "specs": c.specs,
                }
            )
            for c in components
        ]
        logger.info(f"Loaded catalog: {len(entries)} components")
        return CatalogIndex(entries)

    async def load_candidates(self) -> List[CandidateRecord]:
        async with self.session_factory() as db:
            result = await db.execute(select(ComponentCandidate))
            rows = result.scalars().all()
        return [
            CandidateRecord(
                id=row.id,
                brand=row.brand,
                model=row.model,
                category=row.category,
                price_observed_min=row.price_observed_min,
                price_observed_max=row.price_observed_max,
                price_estimate_new=row.price_estimate_new,
                price_used_min=row.price_used_min,
                price_used_max=row.price_used_max,
                listing_ids=list(row.listing_ids or []),
                listing_count=row.listing_count,
                quality_score=row.quality_score,
                status=row.status,
                specs=dict(row.specs or {}),
                first_seen_at=row.first_seen_at,
                last_seen_at=row.last_seen_at,
            )
            for row in rows
        ]

    async def merge_candidate(self, record: CandidateRecord) -> int:
        """
        Insert or update a candidate keyed by (brand, model).

        The record already holds the merged state, so existing rows are
        overwritten with it. Curator-set status is never touched.
        """
        values = {
            "category": record.category,
            "price_observed_min": record.price_observed_min,
            "price_observed_max": record.price_observed_max,
            "price_estimate_new": record.price_estimate_new,
            "price_used_min": record.price_used_min,
            "price_used_max": record.price_used_max,
            "listing_ids": list(record.listing_ids),
            "listing_count": record.listing_count,
            "quality_score": record.quality_score,
            "specs": dict(record.specs),
            "last_seen_at": record.last_seen_at or datetime.utcnow(),
        }
        async with self.session_factory() as db:
            result = await db.execute(
                select(ComponentCandidate).where(
                    ComponentCandidate.brand == record.brand,
                    ComponentCandidate.model == record.model,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = ComponentCandidate(
                    brand=record.brand,
                    model=record.model,
                    status=record.status,
                    first_seen_at=record.first_seen_at or datetime.utcnow(),
                    **values,
                )
                db.add(row)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise PersistenceConflict(f"Candidate {record.brand} {record.model}: {e}") from e
            record.id = row.id
            return row.id

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def seen_urls(self, source: str) -> Set[str]:
        """URLs already persisted for a source."""
        async with self.session_factory() as db:
            result = await db.execute(select(Listing.url).where(Listing.source == source).distinct())
            return set(result.scalars().all())

    @staticmethod
    async def _find_listing(db: AsyncSession, url: str, component_id: Optional[int]) -> Optional[Listing]:
        query = select(Listing).where(Listing.url == url)
        if component_id is None:
            query = query.where(Listing.component_id.is_(None))
        else:
            query = query.where(Listing.component_id == component_id)
        result = await db.execute(query)
        return result.scalars().first()

    async def upsert_listing(self, record: ListingRecord) -> Tuple[int, bool]:
        """
        Insert or update the row keyed by (url, component_id).

        Runs in one transaction. A concurrent insert of the same key is
        retried once as an update.

        Returns:
            (listing id, created)

        Raises:
            PersistenceConflict: If the row cannot be written
        """
        values = asdict(record)
        for attempt in (1, 2):
            async with self.session_factory() as db:
                existing = await self._find_listing(db, record.url, record.component_id)
                created = existing is None
                if created:
                    row = Listing(**values)
                    db.add(row)
                else:
                    row = existing
                    for key, value in values.items():
                        setattr(row, key, value)
                    row.updated_at = datetime.utcnow()
                try:
                    await db.commit()
                    return row.id, created
                except IntegrityError as e:
                    await db.rollback()
                    if attempt == 2:
                        raise PersistenceConflict(
                            f"Listing {record.url} / component {record.component_id}: {e}"
                        ) from e
                    logger.debug(f"Upsert conflict for {record.url}, retrying as update")
        raise PersistenceConflict(f"Listing {record.url} could not be written")

    async def update_status(self, url: str, status: str) -> int:
        """Set the status of every row for a URL (all legs of a bundle)."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Listing)
                .where(Listing.url == url, Listing.status != status)
                .values(status=status, updated_at=datetime.utcnow())
            )
            await db.commit()
            return result.rowcount or 0

    async def add_flag(self, listing_id: int, flag: Dict[str, Any]) -> None:
        async with self.session_factory() as db:
            row = await db.get(Listing, listing_id)
            if row is None:
                return
            row.validation_flags = list(row.validation_flags or []) + [flag]
            if flag.get("action") == "flag" and row.validation_action == "accept":
                row.validation_action = "flag"
            await db.commit()

    async def recent_listings(self, since: datetime) -> List[Listing]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Listing).where(Listing.created_at >= since, Listing.status == "available")
            )
            return list(result.scalars().all())

    async def listings_for_url(self, url: str) -> List[Listing]:
        async with self.session_factory() as db:
            result = await db.execute(select(Listing).where(Listing.url == url).order_by(Listing.id))
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def available_listings(self) -> List[Listing]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Listing).where(Listing.status == "available").order_by(Listing.id)
            )
            return list(result.scalars().all())

    async def delete_listings(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        async with self.session_factory() as db:
            result = await db.execute(delete(Listing).where(Listing.id.in_(ids)))
            await db.commit()
            return result.rowcount or 0

    async def expire_stale(self, cutoff: datetime) -> int:
        """Mark available listings first seen before ``cutoff`` as expired."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Listing)
                .where(Listing.status == "available", Listing.created_at < cutoff)
                .values(status="expired", updated_at=datetime.utcnow())
            )
            await db.commit()
            return result.rowcount or 0

    async def archive_older_than(self, cutoff: datetime) -> int:
        """Move listings created before ``cutoff`` into the archive table."""
        async with self.session_factory() as db:
            result = await db.execute(select(Listing).where(Listing.created_at < cutoff))
            rows = list(result.scalars().all())
            if not rows:
                return 0
            now = datetime.utcnow()
            for row in rows:
                data = {name: getattr(row, name) for name in _ARCHIVE_COLUMNS}
                db.add(ListingArchive(original_id=row.id, archived_at=now, **data))
            await db.execute(delete(Listing).where(Listing.id.in_([row.id for row in rows])))
            await db.commit()
            return len(rows)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def append_run(self, values: Dict[str, Any]) -> int:
        async with self.session_factory() as db:
            run = AggregationRun(**values)
            db.add(run)
            await db.commit()
            return run.id

    async def get_run(self, run_id: str) -> Optional[AggregationRun]:
        async with self.session_factory() as db:
            result = await db.execute(select(AggregationRun).where(AggregationRun.run_id == run_id))
            return result.scalar_one_or_none()
