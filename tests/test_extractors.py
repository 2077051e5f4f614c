"""Tests for payload extractors."""

import json
from decimal import Decimal

import pytest

from grocart.ingest import extractors
from grocart.ingest.extractors import JsonLdExtractor, get_extractor, get_path, register_extractor
from grocart.ingest.extractors.embedded import extract_embedded_state, extract_next_data
from grocart.ingest.sources import UnknownSourceError
from helpers import shoprite_page, target_product, target_search_body


def test_get_path_variants():
    doc = {"a": {"b": [{"c": 1}, {"c": 2}]}, "empty": "", "price": {"min": 2.5}}

    assert get_path(doc, "a.b.1.c") == 2
    assert get_path(doc, "a.missing", "dflt") == "dflt"
    assert get_path(doc, ["empty", "price.min"]) == 2.5
    assert get_path(doc, "a.b.9.c") is None


def test_target_search_extraction():
    body = target_search_body(
        target_product("13276131", "Whole Milk - 1gal - Good &#38; Gather", 3.89, barcode="085239077123"),
        target_product("54321", "Cage Free Large Eggs 12ct", 4.29),
        target_product("54321", "Cage Free Large Eggs 12ct", 4.29),
    )

    products = get_extractor("target_search").extract(json.dumps(body))

    assert len(products) == 2
    milk, eggs = products
    assert milk.name == "Whole Milk - 1gal - Good & Gather"
    assert milk.identifier == "085239077123"
    assert milk.price == Decimal("3.89")
    assert milk.source == "target_search"

    assert eggs.identifier == "TGT54321"
    assert eggs.needs_enrichment
    assert eggs.size == "12ct"


def test_target_price_fallback_and_savings():
    body = target_search_body(
        {
            "tcin": "777",
            "item": {"product_description": {"title": "Orange Juice 52 fl oz"}},
            "price": {"current_retail_min": 2.5, "save_percent": 35},
        }
    )

    (juice,) = get_extractor("target_search").extract(json.dumps(body))

    assert juice.price == Decimal("2.50")
    assert juice.deal_type == "clearance"


def test_target_invalid_json_yields_nothing():
    assert get_extractor("target_search").extract("<html>blocked</html>") == []


def test_shoprite_embedded_state():
    html = shoprite_page(
        [
            {"name": "Bread &amp; Butter Pickles", "sku": "041220576463", "price": "$2.99", "promotion": "Digital Coupon"},
            {"name": "Store Bakery Rye", "priceLabel": "$3.49"},
        ]
    )

    pickles, rye = get_extractor("shoprite_search").extract(html)

    assert pickles.name == "Bread & Butter Pickles"
    assert pickles.identifier == "041220576463"
    assert pickles.deal_type == "coupon"
    assert pickles.price == Decimal("2.99")

    assert rye.is_synthetic
    assert rye.price == Decimal("3.49")


def test_shoprite_product_card_dictionary_fallback():
    state = {"search": {"productCardDictionary": {"a1": {"name": "Bananas", "sku": "4011", "price": 0.59}}}}
    html = f"<script>window.__PRELOADED_STATE__ = {json.dumps(state)}</script>"

    (bananas,) = get_extractor("shoprite_search").extract(html)

    assert bananas.name == "Bananas"
    assert bananas.identifier == "4011"
    assert bananas.identifier_kind == "sku"


def test_page_without_state_yields_nothing():
    assert get_extractor("shoprite_search").extract("<html><body>Access denied</body></html>") == []


def test_unknown_extractor():
    with pytest.raises(UnknownSourceError):
        get_extractor("nowhere_search")


def test_registered_extractor_serves_its_source(monkeypatch):
    monkeypatch.setattr(extractors, "_EXTRACTORS", dict(extractors._EXTRACTORS))
    json_ld = JsonLdExtractor("example_search")

    register_extractor(json_ld)

    assert get_extractor("example_search") is json_ld
    assert get_extractor("target_search").source == "target_search"


def test_json_ld_item_list():
    html = """
    <html><head>
    <script type="application/ld+json">
    {"@context": "https://schema.org", "@type": "ItemList", "itemListElement": [
      {"@type": "ListItem", "position": 1, "item": {
        "@type": "Product", "name": "Greek Yogurt 32 oz", "gtin12": "012345678905",
        "brand": {"@type": "Brand", "name": "Fage"},
        "offers": {"@type": "Offer", "price": "5.99"}}},
      {"@type": "ListItem", "position": 2, "item": {
        "@type": "Product", "name": "Honey 12 oz", "sku": "H-12",
        "offers": [{"@type": "AggregateOffer", "lowPrice": 4.5}]}}
    ]}
    </script>
    </head></html>
    """

    yogurt, honey = JsonLdExtractor("example_search").extract(html)

    assert yogurt.identifier == "012345678905"
    assert yogurt.brand == "Fage"
    assert yogurt.price == Decimal("5.99")
    assert yogurt.size == "32 oz"
    assert honey.identifier == "H-12"
    assert honey.price == Decimal("4.50")


def test_embedded_helpers():
    html = '<script>window.__INITIAL_STATE__ = {"x": {"y": 1}}; window.other = 2;</script>'
    assert extract_embedded_state(html, "__INITIAL_STATE__") == {"x": {"y": 1}}
    assert extract_embedded_state(html, "__MISSING__") is None

    next_page = '<script id="__NEXT_DATA__" type="application/json">{"props": {"a": 1}}</script>'
    assert extract_next_data(next_page) == {"props": {"a": 1}}
