"""Extractor registry keyed by source identifier."""

from __future__ import annotations

from grocart.ingest.extractors.base import Extractor, get_path
from grocart.ingest.extractors.json_ld import JsonLdExtractor
from grocart.ingest.extractors.json_path import JsonPathExtractor
from grocart.ingest.sources import UnknownSourceError


_EXTRACTORS: dict[str, Extractor] = {
    "target_search": JsonPathExtractor(
        "target_search",
        items_paths=["data.search.products"],
        fields={
            "name": "item.product_description.title",
            "brand": "item.product_brand.name",
            "price": ["price.current_retail", "price.current_retail_min", "price.reg_retail"],
            "savings_percent": "price.save_percent",
            "barcode": "item.primary_barcode",
            "sku": "tcin",
            "image_url": "item.enrichment.images.primary_image_url",
            "category": "item.product_classification.item_type.name",
        },
        sku_prefix="TGT",
    ),
    "shoprite_search": JsonPathExtractor(
        "shoprite_search",
        items_paths=["search.searchProductItems", "search.productCardDictionary"],
        fields={
            "name": "name",
            "brand": "brand",
            "price": ["price", "priceLabel"],
            "sku": "sku",
            "image_url": "image",
            "deal_hint": ["promotion", "promoLabel"],
        },
        embedded_state="__PRELOADED_STATE__",
    ),
}


def register_extractor(extractor: Extractor) -> None:
    """Register (or replace) the extractor for ``extractor.source``."""
    _EXTRACTORS[extractor.source] = extractor


def get_extractor(source: str) -> Extractor:
    """Return the extractor for a source identifier."""
    try:
        return _EXTRACTORS[source]
    except KeyError:
        raise UnknownSourceError(f"No extractor registered for {source}") from None


__all__ = [
    "Extractor",
    "JsonLdExtractor",
    "JsonPathExtractor",
    "get_extractor",
    "get_path",
    "register_extractor",
]
