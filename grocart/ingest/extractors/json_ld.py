"""Extractor for schema.org Product data in JSON-LD blocks."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from grocart.ingest.extractors.base import Extractor, get_path
from grocart.ingest.extractors.embedded import extract_json_ld

logger = logging.getLogger(__name__)


def _type_of(obj: dict) -> str:
    obj_type = obj.get("@type", "")
    if isinstance(obj_type, list):
        return obj_type[0] if obj_type else ""
    return obj_type


class JsonLdExtractor(Extractor):
    """Fallback extractor for pages that publish Product/ItemList JSON-LD."""

    payload = "html"

    def extract_records(self, payload: str) -> Iterable[dict[str, Any]]:
        products = []
        for obj in extract_json_ld(payload):
            obj_type = _type_of(obj)
            if obj_type == "Product":
                products.append(obj)
            elif obj_type == "ItemList":
                for element in obj.get("itemListElement", []):
                    item = element.get("item", element) if isinstance(element, dict) else None
                    if isinstance(item, dict) and _type_of(item) == "Product":
                        products.append(item)

        return [self._to_record(product) for product in products]

    @staticmethod
    def _to_record(product: dict) -> dict[str, Any]:
        offers = product.get("offers") or {}
        if isinstance(offers, list):
            offers = offers[0] if offers else {}

        brand = product.get("brand")
        if isinstance(brand, dict):
            brand = brand.get("name")

        image = product.get("image")
        if isinstance(image, list):
            image = image[0] if image else None

        return {
            "name": product.get("name"),
            "brand": brand,
            "price": get_path(offers, ["price", "lowPrice"]),
            "barcode": get_path(product, ["gtin12", "gtin13", "gtin"]),
            "sku": product.get("sku"),
            "image_url": image,
            "category": product.get("category"),
        }
