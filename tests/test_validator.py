"""Tests for post-match validation and re-validation."""

from datetime import datetime
from types import SimpleNamespace

import pytest

from listing_recon.detect.validator import (
    ACCEPT,
    FLAG,
    REJECT,
    aggregate,
    check_used_price,
    revalidate_recent,
    validate_category,
    validate_listing,
    validate_price,
)
from listing_recon.match.catalog import CatalogEntry


class TestValidatePrice:
    def test_reasonable_price_accepted(self):
        assert validate_price(300, 400).action == ACCEPT

    def test_far_above_new_rejected(self):
        result = validate_price(1300, 400)
        assert result.action == REJECT
        assert not result.valid
        assert "too high" in result.reason

    def test_overpriced_flagged(self):
        result = validate_price(700, 400)
        assert result.action == FLAG
        assert result.severity == "warning"

    def test_suspiciously_low_flagged(self):
        result = validate_price(60, 400)
        assert result.action == FLAG
        assert "possible accessory" in result.reason

    def test_missing_price_flagged(self):
        assert validate_price(None, 400).action == FLAG

    def test_bundle_leg_without_price_accepted(self):
        result = validate_price(None, 400, is_bundle_leg=True, bundle_total_price=800)
        assert result.action == ACCEPT
        assert "$800" in result.reason

    def test_no_reference_price(self):
        assert validate_price(300, None).action == ACCEPT


class TestValidateCategory:
    def test_headphone_listing_mentioning_iem(self):
        result = validate_category("Sennheiser HD600 and some IEMs", "headphone")
        assert result.action == REJECT

    def test_dac_amp_exception(self):
        assert validate_category("Topping E30 dac/amp stack", "dac").action == ACCEPT

    def test_dac_listing_mentioning_amp(self):
        assert validate_category("Topping E30 with amp", "dac").action == REJECT

    def test_no_conflict(self):
        assert validate_category("Sennheiser HD600 headphones", "headphone").action == ACCEPT


def test_aggregate_picks_most_severe():
    result = aggregate([validate_price(700, 400), validate_category("HD600 iem", "headphone")])
    assert result.action == REJECT
    assert not result.valid
    assert result.severity == "error"


def test_aggregate_all_accept():
    result = aggregate([validate_price(300, 400)])
    assert result.valid
    assert result.action == ACCEPT
    assert result.reason is None
    assert result.flags == []


def test_validate_listing_flags(hd600):
    result = validate_listing("Sennheiser HD600", hd600, 700)
    assert result.action == FLAG
    assert result.flags == [{"check": "price", "action": FLAG, "reason": result.checks[0].reason}]


def test_validate_bundle_leg_uses_segment(hd600):
    result = validate_listing("HD600", hd600, None, is_bundle_leg=True, bundle_total_price=800)
    assert result.action == ACCEPT


class TestUsedPrice:
    def test_typical_price(self, hd600):
        check = check_used_price(300, hd600)
        assert check.valid
        assert check.warning is None
        assert check.variance == 3

    def test_too_low_invalid(self, hd600):
        check = check_used_price(40, hd600)
        assert not check.valid

    def test_too_high_invalid(self, hd600):
        assert not check_used_price(1000, hd600).valid

    def test_below_range_warns(self, hd600):
        check = check_used_price(130, hd600)
        assert check.valid
        assert check.warning == "well below typical used range"

    def test_above_range_warns(self, hd600):
        check = check_used_price(600, hd600)
        assert check.valid
        assert "above typical range" in check.warning

    def test_no_reference(self, catalog):
        bare = CatalogEntry(id=99, brand="Schiit", name="Lyr 3", category="amp", price_new=500)
        assert check_used_price(300, bare) is None
        assert check_used_price(None, catalog.get(1)) is None


class FakeRepository:
    def __init__(self, listings):
        self.listings = listings
        self.flags = []
        self.statuses = []

    async def recent_listings(self, since):
        return self.listings

    async def add_flag(self, listing_id, flag):
        self.flags.append((listing_id, flag))

    async def update_status(self, url, status):
        self.statuses.append((url, status))
        return 1


class FakeChecker:
    def __init__(self, dead_urls):
        self.dead_urls = dead_urls

    def in_sample(self, url):
        return True

    async def is_accessible(self, url):
        return url not in self.dead_urls


def _recent(listing_id, url, price, component_id=1):
    return SimpleNamespace(id=listing_id, url=url, price=price, component_id=component_id)


@pytest.mark.asyncio
async def test_revalidate_recent_flags_and_deactivates(catalog):
    repo = FakeRepository([
        _recent(1, "https://example.com/ok", 300),
        _recent(2, "https://example.com/cheap", 40),
        _recent(3, "https://example.com/gone", 290),
    ])
    summary = await revalidate_recent(repo, catalog, FakeChecker({"https://example.com/gone"}), now=datetime(2026, 1, 2))

    assert summary.checked == 3
    assert summary.price_flagged == 1
    assert summary.probed == 3
    assert summary.deactivated == 1
    assert repo.flags[0][0] == 2
    assert repo.flags[0][1]["action"] == REJECT
    assert repo.statuses == [("https://example.com/gone", "expired")]


@pytest.mark.asyncio
async def test_revalidate_dry_run_writes_nothing(catalog):
    repo = FakeRepository([_recent(2, "https://example.com/cheap", 40)])
    summary = await revalidate_recent(repo, catalog, FakeChecker({"https://example.com/cheap"}), dry_run=True)
    assert summary.price_flagged == 1
    assert summary.deactivated == 1
    assert repo.flags == []
    assert repo.statuses == []


@pytest.mark.asyncio
async def test_revalidate_collects_errors(catalog):
    class BrokenChecker(FakeChecker):
        async def is_accessible(self, url):
            raise RuntimeError("boom")

    repo = FakeRepository([_recent(1, "https://example.com/a", 300)])
    summary = await revalidate_recent(repo, catalog, BrokenChecker(set()))
    assert summary.errors and "boom" in summary.errors[0]
