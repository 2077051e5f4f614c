"""Extractor that maps JSON fields onto product fields by path."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Optional, Sequence

from grocart.ingest.extractors.base import Extractor, FieldPath, get_path
from grocart.ingest.extractors.embedded import extract_embedded_state, extract_next_data
from grocart.normalize.processor import ProductNormalizer

logger = logging.getLogger(__name__)


class JsonPathExtractor(Extractor):
    """Reads a product list out of a JSON document (or JSON embedded in HTML).

    ``items_paths`` are tried in order; the first that resolves to a non-empty
    list (or dict, whose values are used) supplies the records. ``fields``
    maps product field names to a path or a list of fallback paths inside
    each record.
    """

    def __init__(
        self,
        source: str,
        items_paths: Sequence[str],
        fields: dict[str, FieldPath],
        sku_prefix: str = "",
        embedded_state: Optional[str] = None,
        normalizer: Optional[ProductNormalizer] = None,
    ):
        super().__init__(source, sku_prefix=sku_prefix, normalizer=normalizer)
        self.items_paths = list(items_paths)
        self.fields = fields
        self.embedded_state = embedded_state
        self.payload = "html" if embedded_state else "json"

    def load_document(self, payload: str) -> Optional[Any]:
        if self.embedded_state == "__NEXT_DATA__":
            return extract_next_data(payload)
        if self.embedded_state:
            return extract_embedded_state(payload, self.embedded_state)
        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning(f"{self.source}: payload is not valid JSON ({e})")
            return None

    def extract_records(self, payload: str) -> Iterable[dict[str, Any]]:
        document = self.load_document(payload)
        if document is None:
            logger.warning(f"{self.source}: no structured data found in payload")
            return []

        for path in self.items_paths:
            items = get_path(document, path)
            if isinstance(items, dict):
                items = list(items.values())
            if isinstance(items, list) and items:
                return [
                    {name: get_path(item, field_path) for name, field_path in self.fields.items()}
                    for item in items
                    if isinstance(item, dict)
                ]

        logger.info(f"{self.source}: no items at {self.items_paths}")
        return []
