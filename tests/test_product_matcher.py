"""Tests for cross-chain product matching."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from grocart.config import settings
from grocart.db.models import Product
from grocart.ingest.base import RawProduct
from grocart.match.product_matcher import ProductMatcher


def existing(upc, name, brand=None, size=None, created_at=None, **extra):
    return SimpleNamespace(
        upc=upc,
        name=name,
        brand=brand,
        size=size,
        category=extra.get("category"),
        image_url=extra.get("image_url"),
        created_at=created_at or datetime(2024, 1, 1),
    )


def observed(name, identifier="TGT100", brand=None, size=None):
    return RawProduct(
        name=name, identifier=identifier, source="target_search",
        identifier_kind="sku", brand=brand, size=size,
    )


# 3 shared words out of 5 distinct: 40 (brand) + 30 (name) = 70
AT_THRESHOLD = ("Creamy Peanut Butter Spread", "Creamy Peanut Butter Jar")
# 7 shared words out of 12 distinct: 40 + 29.17 -> 69
BELOW_THRESHOLD = (
    "Golden Honey Roasted Peanut Butter Crunchy Style Natural Spread",
    "Golden Honey Roasted Peanut Butter Crunchy Style Family Size Jar",
)


class TestProductMatcher:
    def setup_method(self):
        self.matcher = ProductMatcher(threshold=70)

    def test_identifier_equality_short_circuits(self):
        candidate = observed("Completely Different Name", identifier="012345678905")
        corpus = [existing("012345678905", "Whole Milk 1 gal", brand="Dairy Co")]

        result = self.matcher.best_match(candidate, corpus)

        assert result.matched
        assert result.score == 100
        assert result.method == "identifier"

    def test_score_at_threshold_matches(self):
        candidate = observed(AT_THRESHOLD[0], brand="Acme")
        corpus = [existing("111", AT_THRESHOLD[1], brand="Acme")]

        assert self.matcher.score(candidate, corpus[0]) == 70
        result = self.matcher.best_match(candidate, corpus)
        assert result.matched
        assert result.method == "fuzzy"

    def test_score_just_below_threshold_does_not_match(self):
        candidate = observed(BELOW_THRESHOLD[0], brand="Acme")
        corpus = [existing("111", BELOW_THRESHOLD[1], brand="Acme")]

        assert self.matcher.score(candidate, corpus[0]) == 69
        result = self.matcher.best_match(candidate, corpus)
        assert not result.matched
        assert result.score == 69

    def test_threshold_comes_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "match_threshold", 75)
        matcher = ProductMatcher()
        candidate = observed(AT_THRESHOLD[0], brand="Acme")

        assert not matcher.best_match(candidate, [existing("111", AT_THRESHOLD[1], brand="Acme")]).matched

    def test_partial_brand_scores_less_than_exact(self):
        assert self.matcher.brand_score("Acme", "ACME") == 40
        assert self.matcher.brand_score("Acme", "Acme Foods") == 30
        assert self.matcher.brand_score("Acme", "Other") == 0
        assert self.matcher.brand_score(None, "Acme") == 0

    def test_filler_words_are_ignored(self):
        assert self.matcher.normalize_name("Organic Chicken Noodle Soup, Can") == "chicken noodle soup"

    def test_size_closeness_across_units(self):
        assert self.matcher.size_score("16 oz", "1 lb") == 10
        assert self.matcher.size_score("1 gal", "128 fl oz") == 10
        assert self.matcher.size_score("12 ct", "16 oz") == 0
        assert self.matcher.size_score(None, "16 oz") == 0
        assert 0 < self.matcher.size_score("16 oz", "18 oz") < 10

    def test_parse_size_prefers_long_units(self):
        amount, dimension = self.matcher.parse_size("2 liters")
        assert dimension == "measure"
        assert amount == pytest.approx(2 * 33.814)

        amount, dimension = self.matcher.parse_size("500 g")
        assert dimension == "measure"
        assert amount == pytest.approx(500 * 0.035274)
        assert self.matcher.parse_size("12 ct") == (12.0, "count")

    def test_ties_prefer_more_complete_then_older(self):
        candidate = observed(AT_THRESHOLD[0], brand="Acme")
        sparse = existing("111", AT_THRESHOLD[1], brand="Acme", created_at=datetime(2023, 1, 1))
        rich = existing(
            "222", AT_THRESHOLD[1], brand="Acme",
            category="Pantry", image_url="https://img.example/pb.jpg",
            created_at=datetime(2024, 6, 1),
        )
        assert self.matcher.best_match(candidate, [sparse, rich]).product is rich

        older = existing("333", AT_THRESHOLD[1], brand="Acme", created_at=datetime(2022, 1, 1))
        assert self.matcher.best_match(candidate, [sparse, older]).product is older

    def test_no_brand_never_reaches_default_threshold(self):
        candidate = observed("Whole Milk 1 gal", size="1 gal")
        corpus = [existing("111", "Whole Milk 1 gal", size="1 gal")]
        assert self.matcher.score(candidate, corpus[0]) == 60
        assert not self.matcher.best_match(candidate, corpus).matched

    def test_select_primary_product(self):
        base = datetime(2024, 1, 1)
        plain = existing("TGT1", "Milk", created_at=base)
        barcode = existing("012345678905", "Milk", brand="Dairy Co", created_at=base + timedelta(days=3))
        assert self.matcher.select_primary_product([plain, barcode]) is barcode
        assert self.matcher.select_primary_product([]) is None


@pytest.mark.asyncio
async def test_find_match_by_identifier_and_fuzzy(db):
    db.add_all(
        [
            Product(upc="012345678905", name="Whole Milk 1 gal", brand="Dairy Co"),
            Product(upc="TGT999", name=AT_THRESHOLD[1], brand="Acme"),
        ]
    )
    await db.commit()
    matcher = ProductMatcher(threshold=70)

    by_id = await matcher.find_match(db, observed("Anything", identifier="012345678905"))
    assert by_id.method == "identifier"
    assert by_id.product.upc == "012345678905"

    fuzzy = await matcher.find_match(db, observed(AT_THRESHOLD[0], identifier="SYN-1", brand="acme"))
    assert fuzzy.method == "fuzzy"
    assert fuzzy.product.upc == "TGT999"

    none = await matcher.find_match(db, observed("Sourdough Bread", identifier="SYN-2"))
    assert not none.matched
