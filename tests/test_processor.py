"""Tests for product record post-processing."""

from decimal import Decimal

import pytest

from grocart.normalize.processor import (
    ProductNormalizer,
    clean_product_name,
    deal_type_from_hint,
    deal_type_from_savings,
    extract_brand,
    extract_size,
    is_real_barcode,
    is_synthetic_identifier,
    normalize_barcode,
    normalize_price,
    synthesize_identifier,
)


MESSY_NAMES = [
    "Soup, 10 oz, $2.09Soup, 10 oz",
    "Whole Milk 1 gal Whole Milk 1 gal",
    "  Large   Brown Eggs, 12 ct.  ",
    "Organic Bananas\nOrganic Bananas - each",
    "Peanut Butter, 16 oz $3.49",
    "Bread",
    "Sparkling Water 12 pk Sparkling Water 12 pk $5.99",
]


def test_clean_name_strips_price_and_duplicate():
    assert clean_product_name("Soup, 10 oz, $2.09Soup, 10 oz") == "Soup, 10 oz"


def test_clean_name_collapses_repeated_words():
    assert clean_product_name("Whole Milk 1 gal Whole Milk 1 gal") == "Whole Milk 1 gal"


def test_clean_name_tidies_whitespace_and_trailing_punctuation():
    assert clean_product_name("  Large   Brown Eggs, 12 ct.  ") == "Large Brown Eggs, 12 ct"


def test_clean_name_keeps_prefix_duplicate_once():
    assert clean_product_name("Organic Bananas\nOrganic Bananas - each") == "Organic Bananas"


@pytest.mark.parametrize(
    "name,expected",
    [
        ("whole milk gallonWhole Milk Gallon", "whole milk gallon"),
        ("Cheerios Cereal 12 ozCheerios Cereal", "Cheerios Cereal 12 oz"),
        ("Greek Yogurt, 32 oz, $5.49Greek Yogurt, 32", "Greek Yogurt, 32 oz"),
    ],
)
def test_clean_name_collapses_glued_copy(name, expected):
    assert clean_product_name(name) == expected


def test_clean_name_keeps_short_repetitive_names():
    assert clean_product_name("Bar Bar Bar") == "Bar Bar Bar"
    assert clean_product_name("Mahi Mahi Fillets") == "Mahi Mahi Fillets"


@pytest.mark.parametrize("name", MESSY_NAMES)
def test_clean_name_is_idempotent(name):
    once = clean_product_name(name)
    assert clean_product_name(once) == once


def test_clean_name_empty():
    assert clean_product_name(None) == ""
    assert clean_product_name("   ") == ""


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("$3.99", Decimal("3.99")),
        ("1,299.00", Decimal("1299.00")),
        ("$ 2", Decimal("2.00")),
        (3.999, Decimal("4.00")),
        (5, Decimal("5.00")),
        (Decimal("0.5"), Decimal("0.50")),
    ],
)
def test_normalize_price_valid(raw, expected):
    assert normalize_price(raw) == expected


@pytest.mark.parametrize("raw", [None, True, "abc", "3.99/lb", "-1.00", -2, float("nan"), float("inf"), ""])
def test_normalize_price_rejects(raw):
    assert normalize_price(raw) is None


def test_extract_brand_requires_short_lead_before_comma():
    assert extract_brand("Campbell's, Chicken Noodle Soup") == "Campbell's"
    assert extract_brand("Chicken Noodle Soup") is None
    assert extract_brand("A Very Long Store Brand Name, Soup") is None


@pytest.mark.parametrize(
    "name,size",
    [
        ("Whole Milk 1 gal", "1 gal"),
        ("Spaghetti 16oz box", "16oz"),
        ("Tomato Soup 10.5 oz", "10.5 oz"),
        ("Sparkling Water 12 pk", "12 pk"),
        ("Olive Oil 500 ml", "500 ml"),
        ("Bananas", None),
    ],
)
def test_extract_size(name, size):
    assert extract_size(name) == size


def test_normalize_barcode():
    assert normalize_barcode("0012345678905") == "012345678905"
    assert normalize_barcode("012345678905") == "012345678905"
    assert normalize_barcode("0-12345-67890-5") == "012345678905"
    assert normalize_barcode("4006381333931") == "4006381333931"
    assert normalize_barcode("12345") is None
    assert normalize_barcode(None) is None


def test_barcode_and_synthetic_predicates():
    assert is_real_barcode("012345678905")
    assert not is_real_barcode("TGT13276131")
    assert not is_real_barcode(None)

    synthetic = synthesize_identifier("Bread", "shoprite_search")
    assert is_synthetic_identifier(synthetic)
    assert not is_synthetic_identifier("012345678905")


def test_synthetic_identifier_is_deterministic_per_source():
    first = synthesize_identifier("Store Brand Bread", "shoprite_search")
    assert first == synthesize_identifier("store brand bread", "ShopRite_Search")
    assert first != synthesize_identifier("Store Brand Bread", "target_search")
    assert len(first) == len("SYN-") + 16


@pytest.mark.parametrize(
    "hint,deal",
    [
        ("On Sale!", "sale"),
        ("Weekly Special", "sale"),
        ("Clearance", "clearance"),
        ("Digital Coupon", "coupon"),
        ("coupon", "coupon"),
        ("Everyday low price", "regular"),
        (None, "regular"),
    ],
)
def test_deal_type_from_hint(hint, deal):
    assert deal_type_from_hint(hint) == deal


def test_deal_type_from_savings():
    assert deal_type_from_savings(30) == "clearance"
    assert deal_type_from_savings("10") == "sale"
    assert deal_type_from_savings(9.9) == "regular"
    assert deal_type_from_savings("n/a") == "regular"


class TestProductNormalizer:
    def setup_method(self):
        self.normalizer = ProductNormalizer()

    def test_barcode_wins_over_sku(self):
        product = self.normalizer.normalize(
            {"name": "Whole Milk - 1gal", "barcode": "0085239077123", "sku": "13276131", "price": "$3.89"},
            "target_search",
            sku_prefix="TGT",
        )
        assert product.identifier == "085239077123"
        assert product.identifier_kind == "barcode"
        assert not product.needs_enrichment
        assert product.price == Decimal("3.89")
        assert product.size == "1gal"

    def test_prefixed_sku_is_pseudo_identifier(self):
        product = self.normalizer.normalize(
            {"name": "Cage Free Eggs 12ct", "sku": "54321"}, "target_search", sku_prefix="TGT"
        )
        assert product.identifier == "TGT54321"
        assert product.identifier_kind == "sku"
        assert product.needs_enrichment
        assert not product.is_synthetic

    def test_unprefixed_numeric_sku_can_be_a_barcode(self):
        product = self.normalizer.normalize(
            {"name": "Bread", "sku": "041220576463"}, "shoprite_search"
        )
        assert product.identifier == "041220576463"
        assert product.identifier_kind == "barcode"

    def test_missing_identifier_is_synthesized(self):
        product = self.normalizer.normalize({"name": "Deli Turkey, Sliced"}, "shoprite_search")
        assert product.is_synthetic
        assert product.identifier.startswith("SYN-")
        assert product.brand == "Deli Turkey"
        assert product.price is None

    def test_record_without_name_is_dropped(self):
        assert self.normalizer.normalize({"name": " $2.99 ", "sku": "1"}, "shoprite_search") is None

    def test_deal_hint_then_savings(self):
        hinted = self.normalizer.normalize(
            {"name": "Juice", "deal_hint": "Digital Coupon", "savings_percent": 40}, "shoprite_search"
        )
        assert hinted.deal_type == "coupon"

        by_savings = self.normalizer.normalize(
            {"name": "Juice", "savings_percent": 15}, "shoprite_search"
        )
        assert by_savings.deal_type == "sale"
