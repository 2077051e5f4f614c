"""Shared records passed between the fetch, extract and ingest stages."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass
class RawProduct:
    """One normalized product observation produced by an extractor.

    ``name`` and ``identifier`` are always populated; everything else is
    best-effort. ``identifier_kind`` is one of "barcode", "sku" or "synthetic".
    """

    name: str
    identifier: str
    source: str
    identifier_kind: str = "barcode"
    brand: Optional[str] = None
    size: Optional[str] = None
    price: Optional[Decimal] = None
    deal_type: str = "regular"
    image_url: Optional[str] = None
    category: Optional[str] = None

    @property
    def is_synthetic(self) -> bool:
        return self.identifier_kind == "synthetic"

    @property
    def needs_enrichment(self) -> bool:
        return self.identifier_kind != "barcode"


@dataclass
class FetchRequest:
    """A single outbound request to a named source."""

    source: str
    url: str
    params: dict = field(default_factory=dict)
    headers: dict = field(default_factory=dict)
    cookies: dict = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass
class FetchResult:
    """Raw payload returned by the fetcher."""

    source: str
    url: str
    status_code: int
    text: str
    elapsed: float
    fetched_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def size(self) -> int:
        return len(self.text.encode("utf-8"))
