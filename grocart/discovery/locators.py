"""Chain-specific store locator strategies."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grocart.db.models import Store
from grocart.discovery.geo import distance_from, zip_prefixes
from grocart.ingest.extractors.base import FieldPath, get_path
from grocart.ingest.http_client import Fetcher
from grocart.ingest.sources import ROLE_LOCATOR, SourceConfig

logger = logging.getLogger(__name__)


@dataclass
class StoreRecord:
    """A store as returned by discovery (detached from any DB session)."""

    chain_name: str
    external_store_id: str
    store_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    id: Optional[int] = None
    distance: Optional[float] = None

    @property
    def key(self) -> tuple[str, str]:
        return self.chain_name.lower(), self.external_store_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoreRecord":
        known = {f: data.get(f) for f in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_model(cls, store: Store, distance: Optional[float] = None) -> "StoreRecord":
        return cls(
            chain_name=store.chain_name,
            external_store_id=store.external_store_id,
            store_name=store.store_name,
            address=store.address,
            city=store.city,
            state=store.state,
            zip_code=store.zip_code,
            latitude=store.latitude,
            longitude=store.longitude,
            id=store.id,
            distance=distance,
        )


def _clean_zip(value: Any) -> Optional[str]:
    if value is None:
        return None
    match = re.match(r"\d{5}", str(value).strip())
    return match.group(0) if match else None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class StoreLocator:
    """Base locator for one chain."""

    def __init__(self, chain: str):
        self.chain = chain


class JsonStoreLocator(StoreLocator):
    """Store locator backed by a JSON store-finder endpoint."""

    def __init__(
        self,
        chain: str,
        source: SourceConfig,
        fetcher: Fetcher,
        items_path: str,
        fields: dict[str, FieldPath],
    ):
        super().__init__(chain)
        if source.role != ROLE_LOCATOR:
            raise ValueError(f"{source.name} is not a locator source")
        self.source = source
        self.fetcher = fetcher
        self.items_path = items_path
        self.fields = fields

    async def locate(self, zip_code: str, radius: float) -> list[StoreRecord]:
        """
        Query the remote locator.

        Raises:
            FetchError: On transport/status failures
            ValueError: When the payload is not JSON
        """
        request = self.source.build_request(
            {"zip_code": zip_code, "radius": f"{float(radius):g}"}
        )
        result = await self.fetcher.fetch(request)
        document = json.loads(result.text)

        items = get_path(document, self.items_path) or []
        stores = []
        for item in items:
            external_id = get_path(item, self.fields["external_store_id"])
            if external_id is None:
                continue
            external_id = str(external_id)
            name = get_path(item, self.fields.get("store_name", "name"))
            stores.append(
                StoreRecord(
                    chain_name=self.chain,
                    external_store_id=external_id,
                    store_name=name or f"{self.chain} {external_id}",
                    address=get_path(item, self.fields.get("address", "address")),
                    city=get_path(item, self.fields.get("city", "city")),
                    state=get_path(item, self.fields.get("state", "state")),
                    zip_code=_clean_zip(get_path(item, self.fields.get("zip_code", "zip_code"))),
                    latitude=_as_float(get_path(item, self.fields.get("latitude", "latitude"))),
                    longitude=_as_float(get_path(item, self.fields.get("longitude", "longitude"))),
                    distance=_as_float(get_path(item, self.fields.get("distance", "distance"))),
                )
            )

        logger.info(f"Fetched {len(stores)} {self.chain} stores near {zip_code}")
        return stores


class DatabaseStoreLocator(StoreLocator):
    """Locator for chains whose stores are pre-loaded into the stores table."""

    def __init__(self, chain: str, scan_limit: int = 500):
        super().__init__(chain)
        self.scan_limit = scan_limit

    async def find(
        self,
        db: AsyncSession,
        zip_code: str,
        radius: float,
        origin: Optional[tuple[float, float]] = None,
    ) -> list[StoreRecord]:
        """
        Stores of this chain near ``zip_code``.

        With an origin, stores in the surrounding 2-digit ZIP area are filtered
        by haversine distance and sorted nearest first, and nothing outside the
        radius is returned. Only without one is the ZIP prefix widened
        (5, 4, then 3 digits) until something matches.
        """
        origin = origin or await self.origin_for_zip(db, zip_code)

        if origin is not None:
            stores = await self._by_prefix(db, zip_code[:2], limit=self.scan_limit)
            nearby = []
            for store in stores:
                distance = distance_from(origin, store.latitude, store.longitude)
                if distance is not None and distance <= radius:
                    nearby.append(StoreRecord.from_model(store, distance))
            if not nearby:
                logger.debug(f"No {self.chain} stores with coordinates within {radius} mi of {zip_code}")
            return sorted(nearby, key=lambda s: s.distance)

        for prefix in zip_prefixes(zip_code):
            stores = await self._by_prefix(db, prefix, limit=50)
            if stores:
                logger.debug(f"{self.chain}: {len(stores)} stores with ZIP prefix {prefix}")
                return [StoreRecord.from_model(store) for store in stores]
        return []

    async def _by_prefix(self, db: AsyncSession, prefix: str, limit: int) -> Sequence[Store]:
        result = await db.execute(
            select(Store)
            .where(
                Store.chain_name == self.chain,
                Store.active.is_(True),
                Store.zip_code.like(f"{prefix}%"),
            )
            .order_by(Store.zip_code, Store.id)
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def origin_for_zip(db: AsyncSession, zip_code: str) -> Optional[tuple[float, float]]:
        """Centroid of known stores (any chain) in the ZIP, used as the search origin."""
        result = await db.execute(
            select(Store.latitude, Store.longitude).where(
                Store.zip_code == zip_code,
                Store.latitude.is_not(None),
                Store.longitude.is_not(None),
            )
        )
        points = result.all()
        if not points:
            return None
        return (
            sum(p[0] for p in points) / len(points),
            sum(p[1] for p in points) / len(points),
        )
