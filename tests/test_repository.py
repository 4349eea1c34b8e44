"""Tests for the listing repository against a sqlite database."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from listing_recon.db.models import Listing, ListingArchive
from listing_recon.db.repository import ListingRecord, ListingRepository
from listing_recon.match.candidates import CandidateRecord


def _record(url="https://example.com/1", component_id=1, **overrides):
    values = {
        "url": url,
        "source": "reddit_avexchange",
        "title": "[WTS] Sennheiser HD600",
        "component_id": component_id,
        "price": 300,
    }
    values.update(overrides)
    return ListingRecord(**values)


async def _age_listing(factory, listing_id, days):
    async with factory() as db:
        await db.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(created_at=datetime.utcnow() - timedelta(days=days))
        )
        await db.commit()


@pytest.mark.asyncio
async def test_load_catalog(seeded_factory):
    catalog = await ListingRepository(seeded_factory).load_catalog()
    assert len(catalog) == 7
    hd600 = catalog.get(1)
    assert hd600.label == "Sennheiser HD 600"
    assert hd600.price_new == 400.0
    assert hd600.specs["impedance"] == 300


@pytest.mark.asyncio
async def test_upsert_is_idempotent(seeded_factory):
    repo = ListingRepository(seeded_factory)
    first_id, created = await repo.upsert_listing(_record())
    assert created

    second_id, created = await repo.upsert_listing(_record(price=280))
    assert not created
    assert second_id == first_id

    rows = await repo.listings_for_url("https://example.com/1")
    assert len(rows) == 1
    assert rows[0].price == 280


@pytest.mark.asyncio
async def test_bundle_legs_are_separate_rows(seeded_factory):
    repo = ListingRepository(seeded_factory)
    await repo.upsert_listing(_record(component_id=1, is_bundle=True, bundle_group_id="bundle_x", bundle_position=1))
    await repo.upsert_listing(_record(component_id=3, is_bundle=True, bundle_group_id="bundle_x", bundle_position=2))
    rows = await repo.listings_for_url("https://example.com/1")
    assert [row.component_id for row in rows] == [1, 3]
    assert {row.bundle_group_id for row in rows} == {"bundle_x"}


@pytest.mark.asyncio
async def test_upsert_unresolved_listing(seeded_factory):
    repo = ListingRepository(seeded_factory)
    first_id, _ = await repo.upsert_listing(_record(url="https://example.com/lyr", component_id=None))
    second_id, created = await repo.upsert_listing(_record(url="https://example.com/lyr", component_id=None))
    assert not created
    assert first_id == second_id


@pytest.mark.asyncio
async def test_seen_urls_per_source(seeded_factory):
    repo = ListingRepository(seeded_factory)
    await repo.upsert_listing(_record(url="https://example.com/a"))
    await repo.upsert_listing(_record(url="https://example.com/b", source="head_fi"))
    assert await repo.seen_urls("reddit_avexchange") == {"https://example.com/a"}


@pytest.mark.asyncio
async def test_update_status_covers_all_rows(seeded_factory):
    repo = ListingRepository(seeded_factory)
    await repo.upsert_listing(_record(component_id=1))
    await repo.upsert_listing(_record(component_id=3))

    assert await repo.update_status("https://example.com/1", "sold") == 2
    assert await repo.update_status("https://example.com/1", "sold") == 0
    rows = await repo.listings_for_url("https://example.com/1")
    assert {row.status for row in rows} == {"sold"}


@pytest.mark.asyncio
async def test_add_flag_upgrades_action(seeded_factory):
    repo = ListingRepository(seeded_factory)
    listing_id, _ = await repo.upsert_listing(_record())
    await repo.add_flag(listing_id, {"check": "used_price", "action": "flag", "reason": "well below"})
    row = (await repo.listings_for_url("https://example.com/1"))[0]
    assert row.validation_action == "flag"
    assert row.validation_flags == [{"check": "used_price", "action": "flag", "reason": "well below"}]


@pytest.mark.asyncio
async def test_recent_listings_only_available(seeded_factory):
    repo = ListingRepository(seeded_factory)
    await repo.upsert_listing(_record(url="https://example.com/a"))
    await repo.upsert_listing(_record(url="https://example.com/b", status="sold"))
    recent = await repo.recent_listings(datetime.utcnow() - timedelta(hours=1))
    assert [row.url for row in recent] == ["https://example.com/a"]


@pytest.mark.asyncio
async def test_merge_candidate_inserts_then_updates(seeded_factory):
    repo = ListingRepository(seeded_factory)
    record = CandidateRecord(brand="Schiit", model="Lyr 3", price_observed_min=300, listing_ids=["a"], listing_count=1)
    candidate_id = await repo.merge_candidate(record)
    assert record.id == candidate_id

    record.listing_ids.append("b")
    record.listing_count = 2
    record.price_observed_max = 350
    assert await repo.merge_candidate(record) == candidate_id

    loaded = await repo.load_candidates()
    assert len(loaded) == 1
    assert loaded[0].listing_count == 2
    assert loaded[0].listing_ids == ["a", "b"]
    assert loaded[0].price_observed_max == 350
    assert loaded[0].status == "pending"


@pytest.mark.asyncio
async def test_expire_and_archive(seeded_factory):
    repo = ListingRepository(seeded_factory)
    fresh_id, _ = await repo.upsert_listing(_record(url="https://example.com/fresh"))
    stale_id, _ = await repo.upsert_listing(_record(url="https://example.com/stale"))
    old_id, _ = await repo.upsert_listing(_record(url="https://example.com/old", status="sold"))
    await _age_listing(seeded_factory, stale_id, 40)
    await _age_listing(seeded_factory, old_id, 120)

    now = datetime.utcnow()
    assert await repo.expire_stale(now - timedelta(days=30)) == 1
    assert await repo.archive_older_than(now - timedelta(days=90)) == 1

    remaining = {row.url: row.status for row in await repo.available_listings()}
    assert remaining == {"https://example.com/fresh": "available"}
    assert (await repo.listings_for_url("https://example.com/stale"))[0].status == "expired"
    assert await repo.listings_for_url("https://example.com/old") == []

    async with seeded_factory() as db:
        archived = (await db.execute(select(ListingArchive))).scalars().all()
    assert len(archived) == 1
    assert archived[0].original_id == old_id
    assert archived[0].url == "https://example.com/old"
    assert archived[0].status == "sold"
    assert fresh_id != old_id


@pytest.mark.asyncio
async def test_delete_listings(seeded_factory):
    repo = ListingRepository(seeded_factory)
    listing_id, _ = await repo.upsert_listing(_record())
    assert await repo.delete_listings([]) == 0
    assert await repo.delete_listings([listing_id]) == 1
    assert await repo.available_listings() == []


@pytest.mark.asyncio
async def test_append_and_get_run(seeded_factory):
    repo = ListingRepository(seeded_factory)
    started = datetime(2026, 1, 1, 12, 0)
    await repo.append_run(
        {
            "run_id": "run-1",
            "trigger": "manual",
            "status": "done",
            "started_at": started,
            "completed_at": started + timedelta(minutes=5),
            "source_stats": {"reddit_avexchange": {"fetched": 3}},
            "listings_processed": 3,
            "errors": [],
        }
    )
    run = await repo.get_run("run-1")
    assert run.status == "done"
    assert run.source_stats["reddit_avexchange"]["fetched"] == 3
    assert await repo.get_run("missing") is None
