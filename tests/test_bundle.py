"""Tests for bundle decomposition."""

from listing_recon.match.bundle import extract_bundle


def _ids(extraction):
    return sorted(item.entry.id for item in extraction.items)


def test_two_item_bundle(matcher):
    extraction = extract_bundle("HD600 + Focal Clear MG - $800", "", "reddit_avexchange", matcher)

    assert len(extraction.segments) == 2
    assert extraction.is_bundle
    assert _ids(extraction) == [1, 3]
    assert extraction.bundle_id is not None
    assert extraction.bundle_id.startswith("bundle_")
    assert extraction.total_price == 800
    assert [item.individual_price for item in extraction.items] == [None, None]
    assert [item.position for item in extraction.items] == [1, 2]


def test_bundle_id_is_stable_per_listing(matcher):
    url = "https://reddit.com/r/AVexchange/comments/abc"
    first = extract_bundle("HD600 + Focal Clear MG - $800", "", "reddit_avexchange", matcher, url=url)
    again = extract_bundle("HD600 + Focal Clear MG - $800", "", "reddit_avexchange", matcher, url=url)
    reordered = extract_bundle("Focal Clear MG + HD600 - $800", "", "reddit_avexchange", matcher, url=url)
    other = extract_bundle("HD600 + Focal Clear MG - $800", "", "reddit_avexchange", matcher, url=url + "2")

    assert _ids(first) == _ids(reordered)
    assert first.bundle_id == again.bundle_id == reordered.bundle_id
    assert first.bundle_id != other.bundle_id


def test_bundle_line_prices_from_body(matcher):
    body = "HD600 - $300\nClear MG - $800"
    extraction = extract_bundle("[WTS][H] HD600, Focal Clear MG [W] PayPal", body, "reddit_avexchange", matcher)
    prices = {item.entry.id: item.individual_price for item in extraction.items}
    assert prices == {1: 300, 3: 800}


def test_single_item_gets_total_price(matcher):
    extraction = extract_bundle("Sennheiser HD600 - $550 PayPal", "", "reddit_avexchange", matcher)
    assert not extraction.is_bundle
    assert extraction.bundle_id is None
    assert _ids(extraction) == [1]
    assert extraction.items[0].individual_price == 550


def test_repeated_component_merges_quantity(matcher):
    extraction = extract_bundle("Moondrop Blessing 2, Moondrop Blessing 2 - $500", "", "", matcher)
    assert len(extraction.items) == 1
    assert extraction.items[0].quantity == 2
    assert extraction.bundle_id is None


def test_unmatched_segments_recorded(matcher):
    extraction = extract_bundle("HD600 + Grado SR80 - $500", "", "", matcher)
    assert _ids(extraction) == [1]
    assert not extraction.is_bundle
    assert any(reason == "no_match" for _, reason in extraction.rejections)
    assert extraction.items[0].individual_price == 500


def test_accessory_listing_has_no_items(matcher):
    extraction = extract_bundle("eartips (10 pairs) $15", "", "", matcher)
    assert not extraction.matched
    assert extraction.rejections[0][1] == "accessory"
