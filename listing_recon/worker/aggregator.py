"""Aggregation run orchestration."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from listing_recon import metrics
from listing_recon.config import Settings, settings
from listing_recon.db.repository import ListingRecord, ListingRepository
from listing_recon.detect.validator import revalidate_recent, validate_listing
from listing_recon.errors import (
    ExtractionFailure,
    FatalOrchestratorError,
    LockUnavailableError,
    PersistenceConflict,
    RunCancelled,
    SourceFetchError,
)
from listing_recon.ingest.base import RawListing
from listing_recon.ingest.rate_limiter import RateLimiter, rate_limiter
from listing_recon.ingest.registry import SourceRegistry
from listing_recon.ingest.url_checker import UrlChecker
from listing_recon.logging_config import get_logger
from listing_recon.match.bundle import extract_bundle
from listing_recon.match.candidates import CandidateExtractor, CandidateLedger
from listing_recon.match.catalog import CatalogIndex
from listing_recon.match.matcher import CatalogMatcher
from listing_recon.normalize.signals import (
    condition_from_text,
    extract_location,
    is_sell_post,
    is_sold,
    map_condition,
)
from listing_recon.worker.archive import archive_stale
from listing_recon.worker.dedupe import dedupe_listings
from listing_recon.worker.run_lock import get_run_lock, refresh_lock_heartbeat

logger = logging.getLogger(__name__)

# Sources whose titles carry [WTS]/[WTB] tags
_TAGGED_SOURCES = {"reddit_avexchange"}


class RunState(str, Enum):
    INIT = "init"
    PER_SOURCE_INGEST = "per_source_ingest"
    VALIDATE_RECENT = "validate_recent"
    DEDUPLICATE = "deduplicate"
    ARCHIVE_STALE = "archive_stale"
    RECORD_STATS = "record_stats"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SourceStats:
    """Per-source counters for one run."""

    status: str = "pending"  # pending | ok | errored
    fetched: int = 0
    skipped_seen: int = 0
    sold_updates: int = 0
    not_for_sale: int = 0
    matched: int = 0
    bundles: int = 0
    ambiguous: int = 0
    rows_created: int = 0
    rows_updated: int = 0
    rejected: int = 0
    candidates: int = 0
    unmatched: int = 0
    errors: int = 0
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class RunSummary:
    """Outcome of one aggregation run."""

    run_id: str
    trigger: str
    dry_run: bool
    state: RunState = RunState.INIT
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    sources: Dict[str, SourceStats] = field(default_factory=dict)
    revalidated: int = 0
    price_flagged: int = 0
    urls_deactivated: int = 0
    duplicates_removed: int = 0
    expired: int = 0
    archived: int = 0
    candidates_recorded: int = 0
    error_message: Optional[str] = None
    errors: Deque[str] = field(default_factory=lambda: deque(maxlen=settings.max_recent_errors))

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE

    @property
    def listings_processed(self) -> int:
        return sum(s.fetched - s.skipped_seen for s in self.sources.values())

    @property
    def listings_created(self) -> int:
        return sum(s.rows_created for s in self.sources.values())

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "dry_run": self.dry_run,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "sources": {name: asdict(stats) for name, stats in self.sources.items()},
            "listings_processed": self.listings_processed,
            "listings_created": self.listings_created,
            "candidates_recorded": self.candidates_recorded,
            "revalidated": self.revalidated,
            "price_flagged": self.price_flagged,
            "urls_deactivated": self.urls_deactivated,
            "duplicates_removed": self.duplicates_removed,
            "expired": self.expired,
            "archived": self.archived,
            "error_message": self.error_message,
            "errors": list(self.errors),
        }


@dataclass
class RunContext:
    """Process-scoped state created once per run."""

    catalog: CatalogIndex
    matcher: CatalogMatcher
    extractor: CandidateExtractor
    ledger: CandidateLedger
    dry_run: bool


class Aggregator:
    """
    Runs the reconciliation pipeline across sources.

    INIT -> PER_SOURCE_INGEST -> VALIDATE_RECENT -> DEDUPLICATE ->
    ARCHIVE_STALE -> RECORD_STATS -> DONE, with FAILED reachable from any
    state.
    """

    def __init__(
        self,
        repository: Optional[ListingRepository] = None,
        run_lock=None,
        registry=SourceRegistry,
        limiter: RateLimiter = rate_limiter,
        url_checker: Optional[UrlChecker] = None,
        config: Settings = settings,
    ):
        self.repository = repository or ListingRepository()
        self.run_lock = run_lock or get_run_lock(config.run_lock_backend)
        self.registry = registry
        self.limiter = limiter
        self.url_checker = url_checker
        self.config = config
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        """Request cancellation; honoured at the next phase boundary."""
        self._cancelled.set()

    def _checkpoint(self, summary: RunSummary, next_state: RunState) -> None:
        if self._cancelled.is_set():
            raise RunCancelled(f"Run cancelled before {next_state.value}")
        logger.debug(f"Run {summary.run_id[:16]}: {summary.state.value} -> {next_state.value}")
        summary.state = next_state

    async def run(
        self,
        sources: Optional[Iterable[str]] = None,
        dry_run: bool = False,
        trigger: str = "manual",
    ) -> RunSummary:
        """
        Execute one aggregation run.

        Args:
            sources: Source names (defaults to every registered source)
            dry_run: Match and validate without writing anything
            trigger: "scheduled" or "manual"

        Returns:
            RunSummary; state is DONE or FAILED
        """
        run_id = uuid4().hex
        source_names = list(sources) if sources else self.registry.list_sources()
        summary = RunSummary(run_id=run_id, trigger=trigger, dry_run=dry_run)
        summary.sources = {name: SourceStats() for name in source_names}
        logger.info(
            f"Starting aggregation run (trigger: {trigger}, dry_run: {dry_run}, "
            f"sources: {','.join(source_names)}, run_id: {run_id[:16]}...)"
        )

        lock_token: Optional[str] = None
        heartbeat_task: Optional[asyncio.Task] = None
        try:
            lock_token = await self.run_lock.acquire_lock(run_id, ttl_seconds=self.config.run_lock_ttl_seconds)
            if not lock_token:
                info = await self.run_lock.get_lock_info()
                raise LockUnavailableError(
                    f"Aggregation already running (lock_run_id: {(info or {}).get('run_id')})"
                )

            heartbeat_task = asyncio.create_task(
                refresh_lock_heartbeat(
                    self.run_lock,
                    run_id=run_id,
                    token=lock_token,
                    interval=self.config.run_lock_heartbeat_interval,
                    ttl=self.config.run_lock_ttl_seconds,
                )
            )

            catalog = await self.repository.load_catalog()
            ledger = CandidateLedger()
            ledger.load(await self.repository.load_candidates())
            ctx = RunContext(
                catalog=catalog,
                matcher=CatalogMatcher(catalog, self.config),
                extractor=CandidateExtractor(catalog),
                ledger=ledger,
                dry_run=dry_run,
            )

            self._checkpoint(summary, RunState.PER_SOURCE_INGEST)
            await self._ingest_all(source_names, ctx, summary)
            if not dry_run:
                summary.candidates_recorded = await ledger.flush(self.repository)
            else:
                summary.candidates_recorded = len(ledger.dirty)

            self._checkpoint(summary, RunState.VALIDATE_RECENT)
            await self._validate_recent(ctx, summary)

            self._checkpoint(summary, RunState.DEDUPLICATE)
            summary.duplicates_removed = await dedupe_listings(self.repository, dry_run=dry_run)

            self._checkpoint(summary, RunState.ARCHIVE_STALE)
            swept = await archive_stale(self.repository, dry_run=dry_run)
            summary.expired = swept.expired
            summary.archived = swept.archived

            self._checkpoint(summary, RunState.RECORD_STATS)
            summary.completed_at = datetime.utcnow()
            summary.state = RunState.DONE
            await self._record_run(summary)

        except FatalOrchestratorError as e:
            self._fail(summary, e)
            logger.error(f"Aggregation run failed in {summary.error_message}")
            await self._record_run(summary)
        except Exception as e:
            self._fail(summary, e)
            logger.error(f"Aggregation run crashed: {e}", exc_info=True)
            await self._record_run(summary)
        finally:
            if heartbeat_task and not heartbeat_task.done():
                heartbeat_task.cancel()
                try:
                    await heartbeat_task
                except asyncio.CancelledError:
                    pass

            if lock_token:
                released = await self.run_lock.safe_unlock(run_id, token=lock_token)
                if not released:
                    logger.warning(f"Failed to release run lock for run_id: {run_id[:16]}...")

        metrics.record_run(trigger, summary.state.value)
        logger.info("Aggregation run summary", extra={"summary": summary.to_dict()})
        return summary

    @staticmethod
    def _fail(summary: RunSummary, error: Exception) -> None:
        failed_in = summary.state.value
        summary.state = RunState.FAILED
        summary.completed_at = datetime.utcnow()
        summary.error_message = f"{failed_in}: {error}"
        summary.add_error(summary.error_message)

    async def _record_run(self, summary: RunSummary) -> None:
        if summary.dry_run:
            return
        try:
            await self.repository.append_run(
                {
                    "run_id": summary.run_id,
                    "trigger": summary.trigger,
                    "status": summary.state.value,
                    "dry_run": summary.dry_run,
                    "started_at": summary.started_at,
                    "completed_at": summary.completed_at,
                    "source_stats": {name: asdict(stats) for name, stats in summary.sources.items()},
                    "listings_processed": summary.listings_processed,
                    "listings_created": summary.listings_created,
                    "candidates_recorded": summary.candidates_recorded,
                    "revalidated_count": summary.revalidated,
                    "duplicates_removed": summary.duplicates_removed,
                    "expired_count": summary.expired,
                    "archived_count": summary.archived,
                    "errors": list(summary.errors),
                    "error_message": summary.error_message,
                }
            )
        except Exception as e:
            logger.error(f"Failed to record aggregation run {summary.run_id[:16]}: {e}", exc_info=True)
            if summary.state == RunState.DONE:
                summary.state = RunState.FAILED
                summary.error_message = f"record_stats: {e}"
                summary.add_error(summary.error_message)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _ingest_all(self, source_names: List[str], ctx: RunContext, summary: RunSummary) -> None:
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_sources))

        async def run_source(name: str) -> None:
            async with semaphore:
                await self._ingest_source(name, ctx, summary)

        await asyncio.gather(*(run_source(name) for name in source_names))

    async def _ingest_source(self, source: str, ctx: RunContext, summary: RunSummary) -> None:
        """Fetch and process one source; failures mark only this source errored."""
        stats = summary.sources[source]
        log = get_logger(__name__, listing_source=source, run_id=summary.run_id)
        started = time.monotonic()

        try:
            adapter = self.registry.get_adapter(source)
        except ValueError as e:
            stats.status = "errored"
            stats.error = str(e)
            summary.add_error(f"{source}: {e}")
            log.error(f"Source {source} unavailable: {e}")
            return

        seen: Set[str] = await self.repository.seen_urls(source)
        processed: Set[str] = set()
        limits = adapter.rate_limit()
        max_attempts = max(1, self.config.source_max_retries)

        for attempt in range(1, max_attempts + 1):
            stats.attempts = attempt
            await self.limiter.acquire_with_interval(
                source, limits.min_interval, limits.max_interval, limits.jitter
            )
            try:
                async for listing in adapter.fetch_listings():
                    if listing.url in processed:
                        continue
                    processed.add(listing.url)
                    stats.fetched += 1
                    metrics.listings_fetched_total.labels(source=source).inc()
                    await self._process_safely(listing, seen, ctx, stats, summary)
                stats.status = "ok"
                break
            except SourceFetchError as e:
                metrics.record_fetch_error(source, "fetch")
                stats.error = str(e)
                if not e.retryable or attempt == max_attempts:
                    stats.status = "errored"
                    summary.add_error(f"{source}: {e}")
                    log.error(f"Source {source} failed after {attempt} attempt(s): {e}")
                    break
                log.warning(f"Fetch failed for {source} (attempt {attempt}/{max_attempts}): {e}")
                await self.limiter.wait_for_backoff(
                    source,
                    attempt,
                    multiplier=limits.backoff_multiplier,
                    max_seconds=limits.max_backoff_seconds,
                )
            except Exception as e:
                metrics.record_fetch_error(source, type(e).__name__)
                stats.status = "errored"
                stats.error = str(e)
                summary.add_error(f"{source}: {e}")
                log.error(f"Unexpected error ingesting {source}: {e}", exc_info=True)
                break

        metrics.source_duration_seconds.labels(source=source).observe(time.monotonic() - started)
        log.info(
            f"Source {source} {stats.status}: {stats.fetched} fetched, {stats.skipped_seen} seen, "
            f"{stats.matched} matched ({stats.bundles} bundles), {stats.candidates} candidates, "
            f"{stats.errors} errors"
        )

    async def _process_safely(
        self,
        listing: RawListing,
        seen: Set[str],
        ctx: RunContext,
        stats: SourceStats,
        summary: RunSummary,
    ) -> None:
        try:
            outcome = await self.process_listing(listing, seen, ctx, stats)
        except ExtractionFailure as e:
            outcome = "unextractable"
            stats.unmatched += 1
            logger.debug(f"Skipping {listing.url}: {e}")
        except PersistenceConflict as e:
            outcome = "conflict"
            stats.errors += 1
            summary.add_error(f"{listing.source} {listing.url}: {e}")
            logger.warning(f"Persistence conflict for {listing.url}: {e}")
        except Exception as e:
            outcome = "error"
            stats.errors += 1
            summary.add_error(f"{listing.source} {listing.url}: {e}")
            logger.error(f"Error processing listing {listing.url}: {e}", exc_info=True)
        metrics.record_listing_outcome(listing.source, outcome)

    async def process_listing(
        self,
        listing: RawListing,
        seen: Set[str],
        ctx: RunContext,
        stats: SourceStats,
    ) -> str:
        """
        Reconcile one raw listing and persist its rows.

        Returns:
            Outcome label used for metrics
        """
        if not (listing.title or "").strip():
            raise ExtractionFailure(f"Listing has no title: {listing.url}")
        sold = is_sold(listing.title, listing.body, listing.flair, listing.metadata)

        if listing.url in seen:
            stats.skipped_seen += 1
            if sold:
                stats.sold_updates += 1
                if not ctx.dry_run:
                    await self.repository.update_status(listing.url, "sold")
                return "sold_update"
            return "seen"
        seen.add(listing.url)

        if listing.source in _TAGGED_SOURCES and not is_sell_post(listing.title):
            stats.not_for_sale += 1
            return "not_for_sale"

        status = "sold" if sold else "available"
        condition = map_condition(listing.condition, listing.source) or condition_from_text(
            listing.title, listing.body
        )
        base = {
            "url": listing.url,
            "source": listing.source,
            "title": listing.title,
            "condition": condition,
            "location": extract_location(listing.title),
            "seller": listing.seller,
            "seller_reputation": listing.seller_reputation,
            "status": status,
            "posted_at": listing.posted_at,
        }

        extraction = extract_bundle(
            listing.title, listing.body, listing.source, ctx.matcher, url=listing.url
        )

        if not extraction.matched:
            draft = ctx.extractor.extract(listing, extraction.total_price)
            if draft is None:
                stats.unmatched += 1
                return "unmatched"
            await ctx.ledger.record(draft, listing.url, listing.posted_at)
            stats.candidates += 1
            if not ctx.dry_run:
                await self._persist(
                    ListingRecord(**base, component_id=None, price=extraction.total_price), stats
                )
            return "candidate"

        stats.matched += 1
        if extraction.is_bundle:
            stats.bundles += 1

        rejected = False
        for item in extraction.items:
            text = item.segment if extraction.is_bundle else listing.title
            validation = validate_listing(
                text,
                item.entry,
                item.individual_price,
                is_bundle_leg=extraction.is_bundle,
                bundle_total_price=extraction.total_price,
            )
            if item.ambiguous:
                stats.ambiguous += 1
            if validation.action == "reject":
                rejected = True

            record = ListingRecord(
                **base,
                component_id=item.entry.id,
                segment=item.segment if extraction.is_bundle else None,
                price=item.individual_price,
                is_bundle=extraction.is_bundle,
                bundle_group_id=extraction.bundle_id,
                bundle_position=item.position if extraction.is_bundle else None,
                bundle_component_count=extraction.component_count if extraction.is_bundle else None,
                bundle_total_price=extraction.total_price if extraction.is_bundle else None,
                quantity=item.quantity,
                match_score=item.score,
                match_ambiguous=item.ambiguous,
                validation_action=validation.action,
                validation_flags=validation.flags,
            )
            if not ctx.dry_run:
                await self._persist(record, stats)

        if rejected:
            stats.rejected += 1
            return "rejected"
        return "bundle" if extraction.is_bundle else "matched"

    async def _persist(self, record: ListingRecord, stats: SourceStats) -> None:
        _, created = await self.repository.upsert_listing(record)
        if created:
            stats.rows_created += 1
        else:
            stats.rows_updated += 1

    # ------------------------------------------------------------------
    # Post-ingest phases
    # ------------------------------------------------------------------

    async def _validate_recent(self, ctx: RunContext, summary: RunSummary) -> None:
        checker = self.url_checker
        owns_checker = checker is None
        if owns_checker:
            checker = UrlChecker()
        try:
            result = await revalidate_recent(self.repository, ctx.catalog, checker, dry_run=ctx.dry_run)
        finally:
            if owns_checker:
                await checker.close()
        summary.revalidated = result.checked
        summary.price_flagged = result.price_flagged
        summary.urls_deactivated = result.deactivated
        for error in result.errors:
            summary.add_error(error)
