"""Tests for price extraction."""

import pytest

from listing_recon.config import settings
from listing_recon.normalize.price import (
    PRICE_RULES,
    extract_line_price,
    extract_price,
    extract_price_range,
    find_prices,
    token_coverage,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Sennheiser HD600 - $550 PayPal", 550),
        ("[WTS][H] Schiit Lyr 3 [W] $350 PayPal G&S", 350),
        ("Asking 275 shipped", 275),
        ("Price: $1,250 for the pair", 1250),
        ("Moondrop Blessing 2, 220 obo", 220),
        ("HD 650 for 300 usd", 300),
    ],
)
def test_extract_price(text, expected):
    assert extract_price(text) == expected


def test_offer_span_beats_other_amounts():
    text = "[WTS][H] Focal Clear MG, paid $1500 [W] $950 shipped"
    assert extract_price(text) == 950


def test_discount_amounts_are_ignored():
    assert extract_price("$50 off retail, asking $300") == 300


def test_out_of_bounds_prices_rejected():
    assert extract_price("$5 cable clip") is None
    assert extract_price("Summit setup $25000") is None
    assert extract_price("") is None
    assert extract_price("no price here") is None


def test_extracted_prices_always_in_bounds():
    texts = [
        "$9 $10001 $5",
        "asking 3 shipped",
        "[W] $99999",
        "HD600 $300 and Clear MG $900, $1100 for all",
        "1 usd 2 dollars",
        "$10 tips",
        "$10000 system",
    ]
    for text in texts:
        price = extract_price(text)
        assert price is None or settings.price_min <= price <= settings.price_max


def test_lowest_price_wins_without_bundle_cue():
    assert extract_price("Focal Clear MG $900 shipped, or $850 local") == 850
    assert extract_price("HD600 $300, Clear MG $900") == 300


def test_bundle_cue_prefers_highest():
    assert extract_price("HD600 $300, Clear MG $900, or $1100 for all") == 1100


def test_bundle_cue_heuristic_can_be_disabled(monkeypatch):
    monkeypatch.setattr(settings, "price_bundle_prefers_highest", False)
    assert extract_price("HD600 $300, Clear MG $900, or $1100 for all") == 300


def test_find_prices_reports_rule_tiers():
    matches = find_prices("[W] $400 shipped")
    rules = {m.rule for m in matches}
    assert "offer_span" in rules
    assert min(m.tier for m in matches) == 0
    assert [r.tier for r in PRICE_RULES] == sorted(r.tier for r in PRICE_RULES)


def test_extract_price_range():
    assert extract_price_range("Looking for $300-400") == (300, 400)
    assert extract_price_range("$300 to $450 depending on cable") == (300, 450)
    assert extract_price_range("between 200 and 250") == (200, 250)
    assert extract_price_range("$400-300") is None
    assert extract_price_range("HD 600 - $700") is None


def test_token_coverage_ignores_spacing():
    assert token_coverage("HD600 - $300", "HD 600") == 1.0
    assert token_coverage("Clear MG $900", "Focal Clear MG") == pytest.approx(2 / 3)
    assert token_coverage("anything", "") == 0.0


def test_extract_line_price():
    body = "HD600 - $300\nClear MG - $900\nShipping included"
    assert extract_line_price(body, "Sennheiser HD 600", ["Focal Clear MG"]) == 300
    assert extract_line_price(body, "Focal Clear MG", ["Sennheiser HD 600"]) == 900


def test_extract_line_price_skips_shared_lines():
    body = "HD600 and Clear MG - $1100"
    assert extract_line_price(body, "Sennheiser HD 600", ["Focal Clear MG"]) is None
    assert extract_line_price("", "Sennheiser HD 600") is None
