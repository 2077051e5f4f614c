"""Extractor strategy base class."""

from __future__ import annotations

import html
import logging
from typing import Any, Iterable, Optional, Sequence, Union

from grocart import metrics
from grocart.ingest.base import RawProduct
from grocart.normalize.processor import ProductNormalizer, product_normalizer

logger = logging.getLogger(__name__)

FieldPath = Union[str, Sequence[str]]

_MISSING = object()


def get_path(obj: Any, path: FieldPath, default: Any = None) -> Any:
    """
    Resolve a dotted path ("price.current_retail", "items.0.name") in nested data.

    A sequence of paths is tried in order and the first non-empty value wins.
    """
    if not isinstance(path, str):
        for candidate in path:
            value = get_path(obj, candidate, _MISSING)
            if value is not _MISSING and value not in (None, "", [], {}):
                return value
        return default

    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            return default
        if current is _MISSING:
            return default
    return current


class Extractor:
    """Turns one raw payload into normalized ``RawProduct`` records.

    Subclasses implement ``extract_records`` (payload -> raw field dicts); the
    shared ``extract`` applies the normalization contract and drops records
    that repeat an identifier within the same payload.
    """

    payload: str = "json"

    def __init__(
        self,
        source: str,
        sku_prefix: str = "",
        normalizer: Optional[ProductNormalizer] = None,
    ):
        self.source = source
        self.sku_prefix = sku_prefix
        self.normalizer = normalizer or product_normalizer

    def extract_records(self, payload: str) -> Iterable[dict[str, Any]]:
        raise NotImplementedError

    def extract(self, payload: str) -> list[RawProduct]:
        products: list[RawProduct] = []
        seen: set[str] = set()

        for record in self.extract_records(payload):
            for key in ("name", "brand"):
                if isinstance(record.get(key), str):
                    record[key] = html.unescape(record[key])

            product = self.normalizer.normalize(record, self.source, self.sku_prefix)
            if product is None or product.identifier in seen:
                continue
            seen.add(product.identifier)
            products.append(product)

        metrics.products_extracted_total.labels(source=self.source).inc(len(products))
        logger.debug(f"{self.source}: extracted {len(products)} products")
        return products
