"""Fuzzy product matching across chains.

The same physical item shows up under different chain-specific identifiers
(a Target TCIN, a ShopRite SKU, a synthetic id). Before creating a catalog
entry for a new observation the ingestor asks the matcher whether an
existing product already covers it.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grocart import metrics
from grocart.config import settings
from grocart.db.models import Product
from grocart.normalize.processor import is_real_barcode

logger = logging.getLogger(__name__)

BRAND_EXACT_POINTS = 40
BRAND_PARTIAL_POINTS = 30
NAME_POINTS = 50
SIZE_POINTS = 10

_FILLER_RE = re.compile(
    r"\b(organic|gluten free|fat free|low sodium|condensed|microwaveable|cup|can)\b"
)
_SIZE_PARSE_RE = re.compile(
    r"(\d+(?:\.\d+)?)(?:\s*-?\s*(fl\.?\s*oz|ounces?|oz|pounds?|lbs?|kilograms?|kg|grams?|gallons?|gal|g"
    r"|milliliters?|ml|liters?|litres?|l|quarts?|qt|pints?|pt|count|ct|pack|pk)(?![a-z]))?",
    re.IGNORECASE,
)

# Everything measurable is compared in ounces (fluid ounces for volume)
_OUNCES_PER_UNIT = {
    "oz": 1.0, "ounce": 1.0, "ounces": 1.0, "floz": 1.0, "fl.oz": 1.0,
    "lb": 16.0, "lbs": 16.0, "pound": 16.0, "pounds": 16.0,
    "g": 0.035274, "gram": 0.035274, "grams": 0.035274,
    "kg": 35.274, "kilogram": 35.274, "kilograms": 35.274,
    "ml": 0.033814, "milliliter": 0.033814, "milliliters": 0.033814,
    "l": 33.814, "liter": 33.814, "liters": 33.814, "litre": 33.814, "litres": 33.814,
    "gal": 128.0, "gallon": 128.0, "gallons": 128.0,
    "qt": 32.0, "quart": 32.0, "quarts": 32.0,
    "pt": 16.0, "pint": 16.0, "pints": 16.0,
}
_COUNT_UNITS = {"ct", "count", "pk", "pack"}


@dataclass
class ProductMatchResult:
    """Outcome of matching one observation against the catalog."""

    product: Optional[Product]
    score: int
    method: str  # "identifier", "fuzzy" or "none"

    @property
    def matched(self) -> bool:
        return self.product is not None


def _identifier(item: Any) -> Optional[str]:
    return getattr(item, "identifier", None) or getattr(item, "upc", None)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ProductMatcher:
    """Composite name/brand/size similarity scoring with an accept threshold."""

    def __init__(self, threshold: Optional[int] = None, candidate_limit: Optional[int] = None):
        """
        Initialize matcher.

        Args:
            threshold: Minimum score (0-100) to treat two records as the same product
            candidate_limit: Max catalog rows scored per observation
        """
        self.threshold = threshold if threshold is not None else settings.match_threshold
        self.candidate_limit = candidate_limit or settings.match_candidate_limit

    @staticmethod
    def normalize_name(name: Optional[str]) -> str:
        if not name:
            return ""
        text = re.sub(r"[^a-z0-9\s]", " ", name.lower())
        text = _FILLER_RE.sub(" ", text)
        return " ".join(text.split())

    @staticmethod
    def normalize_brand(brand: Optional[str]) -> str:
        if not brand:
            return ""
        return re.sub(r"[^a-z0-9]", "", brand.lower())

    def name_tokens(self, name: Optional[str]) -> set[str]:
        """Significant words (longer than 2 characters) of a normalized name."""
        return {word for word in self.normalize_name(name).split() if len(word) > 2}

    @staticmethod
    def parse_size(size: Optional[str]) -> Optional[tuple[float, str]]:
        """Return (amount, dimension) with dimension "measure" (ounces) or "count"."""
        if not size:
            return None
        match = _SIZE_PARSE_RE.search(size.lower())
        if not match:
            return None

        value = float(match.group(1))
        unit = re.sub(r"\s+", "", match.group(2) or "")
        if unit in _COUNT_UNITS:
            return value, "count"
        return value * _OUNCES_PER_UNIT.get(unit, 1.0), "measure"

    def brand_score(self, brand_a: Optional[str], brand_b: Optional[str]) -> float:
        a = self.normalize_brand(brand_a)
        b = self.normalize_brand(brand_b)
        if not a or not b:
            return 0.0
        if a == b:
            return BRAND_EXACT_POINTS
        if a in b or b in a:
            return BRAND_PARTIAL_POINTS
        return 0.0

    def name_score(self, name_a: Optional[str], name_b: Optional[str]) -> float:
        words_a = self.name_tokens(name_a)
        words_b = self.name_tokens(name_b)
        union = words_a | words_b
        if not union:
            return 0.0
        return len(words_a & words_b) / len(union) * NAME_POINTS

    def size_score(self, size_a: Optional[str], size_b: Optional[str]) -> float:
        parsed_a = self.parse_size(size_a)
        parsed_b = self.parse_size(size_b)
        if not parsed_a or not parsed_b or parsed_a[1] != parsed_b[1]:
            return 0.0
        amount_a, amount_b = parsed_a[0], parsed_b[0]
        average = (amount_a + amount_b) / 2
        if average <= 0:
            return 0.0
        return max(0.0, SIZE_POINTS - abs(amount_a - amount_b) / average * SIZE_POINTS)

    def score(self, candidate: Any, existing: Any) -> int:
        """
        Similarity between two product-like records, 0-100.

        Identical identifiers score 100 outright. Otherwise: brand (40 exact,
        30 partial) + name token overlap (up to 50) + size closeness (up to 10).
        """
        candidate_id = _identifier(candidate)
        if candidate_id and candidate_id == _identifier(existing):
            return 100

        total = (
            self.brand_score(getattr(candidate, "brand", None), getattr(existing, "brand", None))
            + self.name_score(getattr(candidate, "name", None), getattr(existing, "name", None))
            + self.size_score(getattr(candidate, "size", None), getattr(existing, "size", None))
        )
        return min(100, _round_half_up(total))

    @staticmethod
    def completeness(product: Any) -> int:
        """Number of populated descriptive attributes."""
        fields = ("name", "brand", "size", "category", "image_url")
        filled = sum(1 for f in fields if getattr(product, f, None))
        if is_real_barcode(_identifier(product)):
            filled += 1
        return filled

    def best_match(
        self,
        candidate: Any,
        corpus: Iterable[Any],
        threshold: Optional[int] = None,
    ) -> ProductMatchResult:
        """
        Pick the corpus entry that best matches ``candidate``.

        Ties on score go to the most complete record, then the earliest created.

        Args:
            candidate: Observation (RawProduct or anything with name/brand/size)
            corpus: Existing products to compare against
            threshold: Override for the accept threshold

        Returns:
            ProductMatchResult; ``product`` is None when nothing reaches the threshold
        """
        threshold = self.threshold if threshold is None else threshold
        corpus = list(corpus)

        candidate_id = _identifier(candidate)
        if candidate_id:
            for existing in corpus:
                if _identifier(existing) == candidate_id:
                    return ProductMatchResult(existing, 100, "identifier")

        ranked = sorted(
            ((self.score(candidate, existing), existing) for existing in corpus),
            key=lambda pair: (
                -pair[0],
                -self.completeness(pair[1]),
                getattr(pair[1], "created_at", None) or datetime.max,
            ),
        )
        if ranked and ranked[0][0] >= threshold:
            return ProductMatchResult(ranked[0][1], ranked[0][0], "fuzzy")

        top_score = ranked[0][0] if ranked else 0
        return ProductMatchResult(None, top_score, "none")

    async def load_candidates(self, db: AsyncSession, candidate: Any) -> Sequence[Product]:
        """Cheap pre-filter: same brand, or sharing one of the longest name words."""
        conditions = []
        brand = getattr(candidate, "brand", None)
        if brand:
            conditions.append(func.lower(Product.brand) == brand.lower())

        tokens = sorted(self.name_tokens(getattr(candidate, "name", None)), key=len, reverse=True)
        for token in tokens[:3]:
            conditions.append(func.lower(Product.name).like(f"%{token}%"))

        if not conditions:
            return []

        result = await db.execute(
            select(Product)
            .where(or_(*conditions))
            .order_by(Product.created_at, Product.id)
            .limit(self.candidate_limit)
        )
        return result.scalars().all()

    async def find_match(self, db: AsyncSession, candidate: Any) -> ProductMatchResult:
        """
        Find the catalog product an observation refers to.

        Args:
            db: Database session
            candidate: RawProduct observation

        Returns:
            ProductMatchResult (identifier hit, fuzzy hit, or no match)
        """
        identifier = _identifier(candidate)
        if identifier:
            result = await db.execute(select(Product).where(Product.upc == identifier))
            existing = result.scalar_one_or_none()
            if existing is not None:
                metrics.matcher_decisions_total.labels(outcome="identifier").inc()
                return ProductMatchResult(existing, 100, "identifier")

        corpus = await self.load_candidates(db, candidate)
        match = self.best_match(candidate, corpus)
        metrics.matcher_decisions_total.labels(
            outcome="fuzzy" if match.matched else "new"
        ).inc()
        if match.matched:
            logger.debug(
                f"Matched '{candidate.name}' to product {match.product.upc} (score {match.score})"
            )
        return match

    def select_primary_product(self, products: Sequence[Any]) -> Optional[Any]:
        """Most complete record of a group of duplicates (earliest wins ties)."""
        if not products:
            return None
        return sorted(
            products,
            key=lambda p: (
                -self.completeness(p),
                getattr(p, "created_at", None) or datetime.max,
            ),
        )[0]


# Global product matcher instance
product_matcher = ProductMatcher()
