"""End-to-end tests for the aggregation run against a sqlite database."""

from datetime import datetime

import pytest
from sqlalchemy import func, select

from listing_recon.db.models import ComponentCandidate, Listing
from listing_recon.db.repository import ListingRepository
from listing_recon.errors import SourceFetchError
from listing_recon.ingest.base import RateLimitConfig, RawListing, SourceAdapter
from listing_recon.ingest.rate_limiter import RateLimiter
from listing_recon.worker.aggregator import Aggregator, RunState
from listing_recon.worker.run_lock import InMemoryRunLock

SOURCE = "reddit_avexchange"


def _post(slug, title, body="", **metadata):
    return RawListing(
        source=SOURCE,
        title=title,
        url=f"https://reddit.com/r/AVexchange/comments/{slug}",
        body=body,
        posted_at=datetime(2026, 1, 1, 12, 0),
        seller=f"seller_{slug}",
        metadata=metadata,
    )


LISTINGS = [
    _post("hd600", "[WTS][USA-CA][H] Sennheiser HD600 [W] PayPal", "Asking $300 shipped"),
    _post("bundle", "[WTS][H] Focal Clear MG + Moondrop Blessing 2 [W] $1500 PayPal"),
    _post("lyr3", "[WTS][H] Schiit Lyr 3 [W] $350 PayPal G&S"),
    _post("tips", "[WTS][H] eartips (10 pairs) [W] $15"),
    _post("wtb", "[WTB] Focal Utopia"),
]


class ListAdapter(SourceAdapter):
    def __init__(self, name, listings):
        self.source_name = name
        self.listings = listings

    async def fetch_listings(self):
        for listing in self.listings:
            yield listing

    def rate_limit(self):
        return RateLimitConfig(min_interval=0.0, max_interval=0.0)


class BrokenAdapter(ListAdapter):
    async def fetch_listings(self):
        raise SourceFetchError(self.source_name, "dump missing", retryable=False)
        yield  # pragma: no cover


class FakeRegistry:
    def __init__(self, adapters):
        self.adapters = {adapter.source_name: adapter for adapter in adapters}

    def get_adapter(self, source):
        if source not in self.adapters:
            raise ValueError(f"Unknown source: {source}")
        return self.adapters[source]

    def list_sources(self):
        return list(self.adapters)


class NoProbe:
    def in_sample(self, url):
        return False

    async def is_accessible(self, url):
        return True


def _aggregator(factory, adapters, lock=None):
    return Aggregator(
        repository=ListingRepository(factory),
        run_lock=lock or InMemoryRunLock(),
        registry=FakeRegistry(adapters),
        limiter=RateLimiter(),
        url_checker=NoProbe(),
    )


async def _count(factory, model):
    async with factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_run_persists_matches_bundles_and_candidates(seeded_factory):
    aggregator = _aggregator(seeded_factory, [ListAdapter(SOURCE, LISTINGS)])
    summary = await aggregator.run([SOURCE])

    assert summary.state == RunState.DONE
    stats = summary.sources[SOURCE]
    assert stats.status == "ok"
    assert stats.fetched == 5
    assert stats.not_for_sale == 1
    assert stats.matched == 2
    assert stats.bundles == 1
    assert stats.candidates == 1
    assert stats.unmatched == 1
    assert stats.rows_created == 4
    assert summary.candidates_recorded == 1

    repo = ListingRepository(seeded_factory)
    hd600 = await repo.listings_for_url("https://reddit.com/r/AVexchange/comments/hd600")
    assert len(hd600) == 1
    assert hd600[0].component_id == 1
    assert hd600[0].price == 300
    assert hd600[0].location == "USA-CA"
    assert hd600[0].validation_action == "accept"

    legs = await repo.listings_for_url("https://reddit.com/r/AVexchange/comments/bundle")
    assert sorted(leg.component_id for leg in legs) == [3, 5]
    assert all(leg.is_bundle for leg in legs)
    assert len({leg.bundle_group_id for leg in legs}) == 1
    assert {leg.bundle_total_price for leg in legs} == {1500}

    unresolved = await repo.listings_for_url("https://reddit.com/r/AVexchange/comments/lyr3")
    assert unresolved[0].component_id is None
    assert unresolved[0].price == 350

    candidates = await repo.load_candidates()
    assert [(c.brand, c.model, c.listing_count) for c in candidates] == [("Schiit", "Lyr 3", 1)]

    run = await repo.get_run(summary.run_id)
    assert run.status == "done"
    assert run.listings_created == 4
    assert await aggregator.run_lock.get_lock_info() is None


@pytest.mark.asyncio
async def test_rerun_is_idempotent_and_applies_sold_updates(seeded_factory):
    lock = InMemoryRunLock()
    await _aggregator(seeded_factory, [ListAdapter(SOURCE, LISTINGS)], lock).run([SOURCE])

    sold = _post("hd600", "[WTS][USA-CA][H] Sennheiser HD600 [W] PayPal", "Asking $300 shipped", sold=True)
    second = await _aggregator(seeded_factory, [ListAdapter(SOURCE, [sold] + LISTINGS[1:])], lock).run([SOURCE])

    assert second.state == RunState.DONE
    stats = second.sources[SOURCE]
    assert stats.skipped_seen == 3
    assert stats.sold_updates == 1
    assert stats.rows_created == 0
    assert await _count(seeded_factory, Listing) == 4
    assert await _count(seeded_factory, ComponentCandidate) == 1

    rows = await ListingRepository(seeded_factory).listings_for_url(sold.url)
    assert rows[0].status == "sold"


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(seeded_factory):
    aggregator = _aggregator(seeded_factory, [ListAdapter(SOURCE, LISTINGS)])
    summary = await aggregator.run([SOURCE], dry_run=True)

    assert summary.state == RunState.DONE
    assert summary.sources[SOURCE].matched == 2
    assert summary.candidates_recorded == 1
    assert await _count(seeded_factory, Listing) == 0
    assert await _count(seeded_factory, ComponentCandidate) == 0
    assert await ListingRepository(seeded_factory).get_run(summary.run_id) is None


@pytest.mark.asyncio
async def test_held_lock_fails_run(seeded_factory):
    lock = InMemoryRunLock()
    await lock.acquire_lock("other-run")

    summary = await _aggregator(seeded_factory, [ListAdapter(SOURCE, LISTINGS)], lock).run([SOURCE])

    assert summary.state == RunState.FAILED
    assert summary.error_message.startswith("init:")
    assert "other-run" in summary.error_message
    assert await _count(seeded_factory, Listing) == 0
    run = await ListingRepository(seeded_factory).get_run(summary.run_id)
    assert run.status == "failed"
    assert (await lock.get_lock_info())["run_id"] == "other-run"


@pytest.mark.asyncio
async def test_failing_source_is_isolated(seeded_factory):
    adapters = [ListAdapter(SOURCE, LISTINGS), BrokenAdapter("head_fi", [])]
    summary = await _aggregator(seeded_factory, adapters).run([SOURCE, "head_fi", "unknown"])

    assert summary.state == RunState.DONE
    assert summary.sources[SOURCE].status == "ok"
    assert summary.sources["head_fi"].status == "errored"
    assert summary.sources["head_fi"].attempts == 1
    assert summary.sources["unknown"].status == "errored"
    assert len(summary.errors) == 2
    assert await _count(seeded_factory, Listing) == 4


@pytest.mark.asyncio
async def test_cancelled_run_releases_lock(seeded_factory):
    lock = InMemoryRunLock()
    aggregator = _aggregator(seeded_factory, [ListAdapter(SOURCE, LISTINGS)], lock)
    aggregator.cancel()
    summary = await aggregator.run([SOURCE])

    assert summary.state == RunState.FAILED
    assert "cancelled" in summary.error_message
    assert await lock.get_lock_info() is None


@pytest.mark.asyncio
async def test_summary_is_serializable(seeded_factory):
    summary = await _aggregator(seeded_factory, [ListAdapter(SOURCE, LISTINGS[:1])]).run([SOURCE], dry_run=True)
    data = summary.to_dict()
    assert data["state"] == "done"
    assert data["sources"][SOURCE]["fetched"] == 1
    assert data["listings_processed"] == 1


@pytest.mark.asyncio
async def test_untitled_listing_counted_not_fatal(seeded_factory):
    untitled = _post("blank", "   ")
    summary = await _aggregator(seeded_factory, [ListAdapter(SOURCE, [untitled] + LISTINGS[:1])]).run(
        [SOURCE], dry_run=True
    )
    stats = summary.sources[SOURCE]
    assert summary.state == RunState.DONE
    assert stats.unmatched == 1
    assert stats.errors == 0
    assert stats.matched == 1


@pytest.mark.asyncio
async def test_qualified_single_item_titles_become_candidates(seeded_factory):
    listings = [
        _post("hd800s", "[USA-CA][WTS][H] Sennheiser HD 800 S, excellent condition [W] PayPal"),
        _post("hd800s_box", "[WTS][H] Sennheiser HD 800 S, original box [W] $1100 PayPal"),
    ]
    summary = await _aggregator(seeded_factory, [ListAdapter(SOURCE, listings)]).run([SOURCE])

    stats = summary.sources[SOURCE]
    assert stats.candidates == 2
    assert stats.unmatched == 0
    candidates = await ListingRepository(seeded_factory).load_candidates()
    assert [(c.brand, c.model, c.listing_count) for c in candidates] == [("Sennheiser", "HD 800 S", 2)]
